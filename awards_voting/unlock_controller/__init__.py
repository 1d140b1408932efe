"""Admin-side category unlock control."""

from .controller import UnlockController

__all__ = ['UnlockController']
