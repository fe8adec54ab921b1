"""Synchronization between the local entry store and the remote service.

Provides the REST client, the sync engine (stage, push, pull) and the
scheduler that decides when cycles run.
"""

from .credentials import CredentialProvider, StaticTokenCredentials
from .cursor import FileSyncCursor, StoreSyncCursor, SyncCursor
from .engine import SyncEngine, SyncResult, SyncState
from .remote_client import (
    AuthenticationError,
    MalformedResponseError,
    NetworkError,
    RemoteClientError,
    RemoteEntry,
    RemoteEntryClient,
    RequestError,
    ServerError,
)
from .scheduler import NullScheduler, SyncScheduler, SyncService

__all__ = [
    "AuthenticationError",
    "CredentialProvider",
    "FileSyncCursor",
    "MalformedResponseError",
    "NetworkError",
    "NullScheduler",
    "RemoteClientError",
    "RemoteEntry",
    "RemoteEntryClient",
    "RequestError",
    "ServerError",
    "StaticTokenCredentials",
    "StoreSyncCursor",
    "SyncCursor",
    "SyncEngine",
    "SyncResult",
    "SyncScheduler",
    "SyncService",
    "SyncState",
]
