"""
Data models shared by the checklist sync client.

Records are plain dicts (as they are persisted and sent over the wire);
the structures around them are dataclasses.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp, falling back to the epoch.

    Naive values are read as UTC. A trailing ``Z`` is accepted.
    """
    if not value or not isinstance(value, str):
        return EPOCH
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Enums
# =============================================================================

class Collection(str, Enum):
    """A named group of user records."""
    CATEGORIES = "categories"
    TASKS = "tasks"
    BOARDS = "boards"

    @property
    def remote_table(self) -> str:
        """Name of the backend table holding this collection."""
        return _REMOTE_TABLES[self]

    @classmethod
    def from_remote_table(cls, table: str) -> "Collection":
        for collection, name in _REMOTE_TABLES.items():
            if name == table:
                return collection
        raise ValueError(f"Unknown remote table: {table}")


_REMOTE_TABLES = {
    Collection.CATEGORIES: "categories",
    Collection.TASKS: "todos",
    Collection.BOARDS: "mindmaps",
}


class SyncState(str, Enum):
    """Sync indicator state owned by the sync engine."""
    OFFLINE = "offline"
    SYNCING = "syncing"
    ONLINE = "online"
    SYNCED = "synced"


class ConflictResolution(str, Enum):
    """How a remote change notification is applied locally."""
    CLOUD_WINS = "cloud_wins"
    NEWEST_WINS = "newest_wins"


class Presence(str, Enum):
    """Outcome of a remote fetch.

    EMPTY and ABSENT are different: an empty collection that exists in the
    cloud still overrides local data.
    """
    ABSENT = "absent"
    EMPTY = "empty"
    PRESENT = "present"


# =============================================================================
# Remote Data
# =============================================================================

@dataclass(frozen=True)
class RemoteSnapshot:
    """One collection as fetched from the remote store."""
    presence: Presence
    records: tuple = ()
    updated_at: Optional[str] = None

    @classmethod
    def absent(cls) -> "RemoteSnapshot":
        return cls(presence=Presence.ABSENT)

    @classmethod
    def from_payload(cls, data: Any, updated_at: Optional[str] = None) -> "RemoteSnapshot":
        """Build from the ``data`` field of a remote row.

        A row that exists but carries ``null`` data counts as empty.
        """
        records = tuple(coerce_records(data))
        presence = Presence.PRESENT if records else Presence.EMPTY
        return cls(presence=presence, records=records, updated_at=updated_at)

    @property
    def is_absent(self) -> bool:
        return self.presence is Presence.ABSENT


@dataclass
class ChangeEvent:
    """A change notification delivered by a remote subscription."""
    event_type: str
    table: str
    new: Optional[dict] = None
    old: Optional[dict] = None

    @property
    def row(self) -> Optional[dict]:
        """The row carried by the event (``new``, or ``old`` for deletes)."""
        return self.new or self.old

    @classmethod
    def from_dict(cls, d: dict) -> "ChangeEvent":
        return cls(
            event_type=d.get("eventType", d.get("event_type", "UPDATE")),
            table=d.get("table", ""),
            new=d.get("new") or None,
            old=d.get("old") or None,
        )


def coerce_records(data: Any) -> list[dict]:
    """Normalise a collection payload into a list of records.

    Older clients stored boards as an object keyed by board id; those are
    converted to a list, taking the key as ``id`` when a board has none.
    """
    if data is None:
        return []
    if isinstance(data, dict):
        records = []
        for key, value in data.items():
            if isinstance(value, dict):
                record = dict(value)
                record.setdefault("id", key)
                records.append(record)
        return records
    if isinstance(data, (list, tuple)):
        return [dict(r) for r in data if isinstance(r, dict)]
    return []


# =============================================================================
# Identity
# =============================================================================

DEFAULT_PROFILE_SETTINGS = {
    "theme": "light",
    "notifications": True,
    "auto_sync": True,
}


@dataclass
class UserProfile:
    """Profile row of the signed-in user."""
    id: str
    email: str = ""
    full_name: str = ""
    avatar_url: str = ""
    subscription_tier: str = "free"
    role: str = "user"
    created_at: Optional[str] = None
    last_login: Optional[str] = None
    settings: dict = field(default_factory=lambda: dict(DEFAULT_PROFILE_SETTINGS))

    @property
    def auto_sync_enabled(self) -> bool:
        return bool(self.settings.get("auto_sync", True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "avatar_url": self.avatar_url,
            "subscription_tier": self.subscription_tier,
            "role": self.role,
            "created_at": self.created_at,
            "last_login": self.last_login,
            "settings": dict(self.settings),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "UserProfile":
        settings = dict(DEFAULT_PROFILE_SETTINGS)
        settings.update(d.get("settings") or {})
        return cls(
            id=str(d["id"]),
            email=d.get("email") or "",
            full_name=d.get("full_name") or "",
            avatar_url=d.get("avatar_url") or "",
            subscription_tier=d.get("subscription_tier") or "free",
            role=d.get("role") or "user",
            created_at=d.get("created_at"),
            last_login=d.get("last_login"),
            settings=settings,
        )


@dataclass
class Session:
    """The signed-in principal, as seen by the sync engine."""
    user_id: str
    email: str = ""
    user_metadata: dict = field(default_factory=dict)
    profile: Optional[UserProfile] = None
    subscription_tier: str = "free"

    @property
    def auto_sync_enabled(self) -> bool:
        if self.profile is None:
            return False
        return self.profile.auto_sync_enabled


@dataclass
class AuthToken:
    """Bearer token pair issued by the backend."""
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_expired(self) -> bool:
        """Check if token is expired."""
        return datetime.now(timezone.utc) >= self.expires_at

    def needs_refresh(self, buffer_seconds: int = 300) -> bool:
        """Check if token needs refresh (within buffer of expiry)."""
        buffer = timedelta(seconds=buffer_seconds)
        return datetime.now(timezone.utc) >= (self.expires_at - buffer)

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AuthToken":
        return cls(
            access_token=d["access_token"],
            refresh_token=d["refresh_token"],
            token_type=d.get("token_type", "Bearer"),
            expires_at=datetime.fromisoformat(d["expires_at"]),
        )

    @classmethod
    def from_grant(cls, data: dict) -> "AuthToken":
        """Create from a token endpoint response or redirect fragment."""
        expires_in = int(data.get("expires_in", 3600))
        token_type = data.get("token_type") or "Bearer"
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            token_type=token_type.capitalize(),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )


# =============================================================================
# Local Snapshot
# =============================================================================

@dataclass
class SnapshotDocument:
    """The complete local copy of all collections."""
    categories: list = field(default_factory=list)
    tasks: list = field(default_factory=list)
    boards: list = field(default_factory=list)
    last_local_write_at: dict = field(default_factory=dict)
    last_synced_hash: Optional[str] = None

    def get(self, collection: Collection) -> list:
        return getattr(self, collection.value)

    def set(self, collection: Collection, records: list) -> None:
        setattr(self, collection.value, list(records))

    def to_dict(self) -> dict:
        """The user data, without sync metadata."""
        return {c.value: self.get(c) for c in Collection}

    def fingerprint(self) -> str:
        """SHA256 of the canonical JSON of all collections."""
        data_str = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(data_str.encode()).hexdigest()


@dataclass
class SyncResult:
    """Result of a push cycle."""
    success: bool
    skipped: bool = False
    pushed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
