"""
Checklist Sync - offline-first sync client

Keeps a local snapshot of categories, tasks and boards in step with the
per-user cloud copy while the user keeps editing offline.
"""

from .auth import TokenManager
from .config import SyncSettings, get_settings
from .engine import SyncEngine
from .errors import (
    AuthenticationError,
    ImportFormatError,
    NetworkError,
    RemoteError,
    SyncError,
)
from .merge import merge_records, resolve_pull
from .models import (
    AuthToken,
    ChangeEvent,
    Collection,
    ConflictResolution,
    Presence,
    RemoteSnapshot,
    Session,
    SnapshotDocument,
    SyncResult,
    SyncState,
    UserProfile,
)
from .remote import RemoteStore, RestRemoteStore, Subscription
from .session import IdentitySession
from .status import StatusIndicator, StatusPublisher
from .store import LocalStore
from .telemetry import UsageTelemetry

__version__ = "0.1.0"
__all__ = [
    # Services
    "LocalStore",
    "RemoteStore",
    "RestRemoteStore",
    "Subscription",
    "TokenManager",
    "IdentitySession",
    "SyncEngine",
    "StatusPublisher",
    "UsageTelemetry",

    # Configuration
    "SyncSettings",
    "get_settings",

    # Data models
    "AuthToken",
    "ChangeEvent",
    "Collection",
    "ConflictResolution",
    "Presence",
    "RemoteSnapshot",
    "Session",
    "SnapshotDocument",
    "StatusIndicator",
    "SyncResult",
    "SyncState",
    "UserProfile",

    # Merge policy
    "merge_records",
    "resolve_pull",

    # Exceptions
    "SyncError",
    "AuthenticationError",
    "NetworkError",
    "RemoteError",
    "ImportFormatError",
]
