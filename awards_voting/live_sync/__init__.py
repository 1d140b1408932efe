"""Live synchronization of categories and tallies with store change notifications."""

from .synchronizer import LiveViewSynchronizer, SyncState, UpdateKind, ViewUpdate

__all__ = [
    'LiveViewSynchronizer',
    'SyncState',
    'UpdateKind',
    'ViewUpdate',
]
