"""Participant identity resolution."""

from .resolver import (
    FingerprintError,
    FingerprintProvider,
    Identity,
    IdentityResolver,
    ReportedFingerprintProvider,
    generate_browser_fingerprint,
    generate_session_id,
)

__all__ = [
    'FingerprintError',
    'FingerprintProvider',
    'Identity',
    'IdentityResolver',
    'ReportedFingerprintProvider',
    'generate_browser_fingerprint',
    'generate_session_id',
]
