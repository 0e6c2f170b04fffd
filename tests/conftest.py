"""
Shared fixtures for the checklist sync tests.

The API database and password hashing cost are configured here, before any
``api`` module is imported.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Optional

import pytest

_API_DB_DIR = Path(tempfile.mkdtemp(prefix="checklist-api-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_API_DB_DIR / 'api.db'}")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "1000")

from checklist.config import SyncSettings  # noqa: E402
from checklist.models import (  # noqa: E402
    ChangeEvent,
    Collection,
    RemoteSnapshot,
    Session,
    UserProfile,
)
from checklist.remote import RemoteStore, Subscription, dispatch_change  # noqa: E402
from checklist.status import StatusIndicator  # noqa: E402
from checklist.store import LocalStore  # noqa: E402
from checklist.errors import NetworkError  # noqa: E402

USER_ID = "user-1"


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSubscription(Subscription):
    def __init__(self, collection: Collection, user_id: str, handler):
        self.collection = collection
        self.user_id = user_id
        self.handler = handler
        self.closed = False

    @property
    def is_active(self) -> bool:
        return not self.closed

    async def close(self) -> None:
        self.closed = True


class InMemoryRemoteStore(RemoteStore):
    """Remote store kept in dicts, with knobs for failures."""

    def __init__(self):
        self.rows: dict[tuple[Collection, str], dict] = {}
        self.upserts: list[tuple[Collection, str, list]] = []
        self.subscriptions: list[FakeSubscription] = []
        self.profiles: dict[str, dict] = {}
        self.active_subscriptions: dict[str, dict] = {}
        self.events: list[dict] = []
        self.stats: dict[str, dict] = {}
        self.fail_upserts = False
        self.fail_account = False
        self.hold_upserts: Optional[asyncio.Event] = None

    # === Test helpers ===

    def seed(self, collection: Collection, user_id: str, data) -> None:
        self.rows[(collection, user_id)] = {"data": data, "updated_at": "2024-01-01T00:00:00+00:00"}

    def data(self, collection: Collection, user_id: str = USER_ID):
        row = self.rows.get((collection, user_id))
        return row["data"] if row else None

    def upsert_count(self, collection: Optional[Collection] = None) -> int:
        return len([u for u in self.upserts if collection is None or u[0] is collection])

    def active(self, collection: Collection) -> list[FakeSubscription]:
        return [s for s in self.subscriptions if s.collection is collection and s.is_active]

    async def emit(self, collection: Collection, event: ChangeEvent) -> None:
        for subscription in self.active(collection):
            await dispatch_change(subscription.handler, event)

    # === RemoteStore ===

    async def upsert(self, collection, user_id, payload, timestamp) -> None:
        if self.hold_upserts is not None:
            await self.hold_upserts.wait()
        if self.fail_upserts:
            raise NetworkError("connection refused")
        self.upserts.append((collection, user_id, list(payload)))
        self.rows[(collection, user_id)] = {"data": list(payload), "updated_at": timestamp}

    async def fetch(self, collection, user_id) -> RemoteSnapshot:
        row = self.rows.get((collection, user_id))
        if row is None:
            return RemoteSnapshot.absent()
        return RemoteSnapshot.from_payload(row["data"], row["updated_at"])

    async def subscribe(self, collection, user_id, on_change) -> Subscription:
        subscription = FakeSubscription(collection, user_id, on_change)
        self.subscriptions.append(subscription)
        return subscription

    async def fetch_profile(self, user_id):
        if self.fail_account:
            raise NetworkError("profile service down")
        return self.profiles.get(user_id)

    async def create_profile(self, profile):
        self.profiles[profile["id"]] = dict(profile)
        return dict(profile)

    async def update_profile(self, user_id, fields):
        if user_id not in self.profiles:
            return None
        self.profiles[user_id].update(fields)
        return dict(self.profiles[user_id])

    async def fetch_active_subscription(self, user_id):
        if self.fail_account:
            raise NetworkError("subscription service down")
        return self.active_subscriptions.get(user_id)

    async def insert_event(self, user_id, event_name, properties, created_at) -> None:
        if self.fail_account:
            raise NetworkError("telemetry down")
        self.events.append({
            "user_id": user_id,
            "event_name": event_name,
            "properties": properties,
            "created_at": created_at,
        })

    async def fetch_user_stats(self, user_id):
        if self.fail_account:
            raise NetworkError("stats down")
        return self.stats.get(user_id)


class StaticIdentity:
    """Stands in for IdentitySession where only ``session`` is read."""

    def __init__(self, session: Optional[Session] = None):
        self.session = session


class RecordingSurface:
    def __init__(self):
        self.rendered: list[StatusIndicator] = []

    def render(self, indicator: StatusIndicator) -> None:
        self.rendered.append(indicator)


class ReloadRecorder:
    """Snapshot listener that remembers every reload."""

    def __init__(self):
        self.reasons: list[str] = []
        self.snapshots = []

    def __call__(self, snapshot, reason: str) -> None:
        self.snapshots.append(snapshot)
        self.reasons.append(reason)


def make_session(auto_sync: bool = True) -> Session:
    profile = UserProfile(id=USER_ID, email="ada@checklist.dev")
    profile.settings["auto_sync"] = auto_sync
    return Session(user_id=USER_ID, email="ada@checklist.dev", profile=profile)


def task(task_id: str, text: str = "", updated_at: Optional[str] = None, **fields) -> dict:
    record = {"id": task_id, "text": text or task_id, "categoryId": "work", "checked": False}
    if updated_at is not None:
        record["updatedAt"] = updated_at
    record.update(fields)
    return record


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config(tmp_path):
    return SyncSettings(
        data_dir=tmp_path,
        api_base_url="http://checklist.test/api/v1",
        push_interval=60.0,
        sign_in_reload_delay=0.01,
        status_retry_delay=0.01,
        base_retry_delay=0.0,
        max_retry_delay=0.0,
        realtime_reconnect_delay=60.0,
    )


@pytest.fixture
def store(tmp_path, clock):
    return LocalStore(tmp_path / "checklist.db", clock=clock)


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def reloads(store):
    recorder = ReloadRecorder()
    store.add_listener(recorder)
    return recorder
