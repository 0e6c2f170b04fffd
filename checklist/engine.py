"""
Offline-first sync engine.

Reconciles the local snapshot with the per-user remote store:

1. On session start the cloud copy of each collection is pulled. The cloud
   wins whenever it has a row (even an empty one); local data is pushed only
   when the cloud has nothing for that collection.
2. Afterwards a periodic, fingerprint-gated push loop sends local changes.
3. Change notifications from other devices replace the local collection and
   trigger a snapshot reload, except when they arrive within the echo guard
   window after a local write (they are presumed to be our own push coming
   back).

All failures are absorbed here and reflected only through ``SyncState``.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

from .config import SyncSettings, get_settings
from .merge import merge_records, resolve_pull
from .models import (
    ChangeEvent,
    Collection,
    ConflictResolution,
    Session,
    SyncResult,
    SyncState,
    coerce_records,
    utc_now_iso,
)
from .remote import RemoteStore, Subscription
from .status import StatusPublisher
from .store import LocalStore

if TYPE_CHECKING:
    from .session import IdentitySession

logger = logging.getLogger(__name__)


class SyncEngine:
    """Reconciles the local snapshot with the remote store."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        identity: "IdentitySession",
        publisher: Optional[StatusPublisher] = None,
        config: Optional[SyncSettings] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.remote = remote
        self.identity = identity
        self.publisher = publisher
        self.config = config or get_settings()
        self.clock = clock or store.clock

        self.state = SyncState.OFFLINE
        self.last_synced_at: Optional[datetime] = None
        self._subscriptions: dict[Collection, Subscription] = {}
        self._push_task: Optional[asyncio.Task] = None

    # === State ===

    def _set_state(self, state: SyncState) -> None:
        self.state = state
        if self.publisher is not None:
            self.publisher.publish(state, self.last_synced_at)

    @property
    def is_running(self) -> bool:
        return self._push_task is not None and not self._push_task.done()

    @property
    def subscriptions(self) -> dict[Collection, Subscription]:
        return dict(self._subscriptions)

    def _current_session(self) -> Optional[Session]:
        return self.identity.session

    # === Lifecycle ===

    async def start(self) -> bool:
        """Start syncing for the current session, replacing any previous run."""
        await self._teardown()
        return await self.initialize_sync()

    async def stop(self) -> None:
        """Stop the push loop, close subscriptions and go offline."""
        await self._teardown()
        self._set_state(SyncState.OFFLINE)
        logger.info("Sync stopped")

    async def _teardown(self) -> None:
        if self._push_task:
            self._push_task.cancel()
            try:
                await self._push_task
            except asyncio.CancelledError:
                pass
            self._push_task = None

        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            await subscription.close()

    async def initialize_sync(self) -> bool:
        """Pull-merge every collection, subscribe to changes, start pushing.

        Returns True when the engine reached ``synced``.
        """
        session = self._current_session()
        if session is None:
            logger.info("User not signed in, skipping sync initialization")
            return False

        self._set_state(SyncState.SYNCING)

        try:
            snapshot = self.store.load()

            for collection in Collection:
                remote = await self.remote.fetch(collection, session.user_id)
                decision = resolve_pull(snapshot.get(collection), remote)
                snapshot.set(collection, decision.records)

                if decision.cloud_applied:
                    logger.debug(f"Using cloud {collection.value} ({len(decision.records)} records)")
                elif decision.push_local:
                    logger.info(f"No {collection.value} in cloud, uploading local data")
                    self.store.mark_local_write(collection)
                    await self.remote.upsert(
                        collection, session.user_id, decision.records, utc_now_iso()
                    )
                    self.store.mark_local_write(collection)

            self.store.save(snapshot)
            self.store.reload("initial-sync")

            for collection in Collection:
                self._subscriptions[collection] = await self.remote.subscribe(
                    collection,
                    session.user_id,
                    self._change_handler(collection),
                )

            self._set_state(SyncState.ONLINE)
            self.start_auto_sync()

            # Each session start pushes once regardless of earlier fingerprints
            self.store.clear_sync_state()
            result = await self.request_sync()
            if not result.success:
                # Offline is recoverable: the push loop and subscriptions stay up
                # and the next tick retries the push
                return False

            self._set_state(SyncState.SYNCED)
            logger.info("Sync initialized")
            return True

        except Exception as e:
            logger.error(f"Sync initialization failed: {e}")
            self._set_state(SyncState.OFFLINE)
            return False

    # === Push ===

    def start_auto_sync(self) -> None:
        """Start the periodic push loop."""
        if self.is_running:
            return
        self._push_task = asyncio.create_task(self._auto_sync_loop())

    async def _auto_sync_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.push_interval)
                session = self._current_session()
                if session is not None and session.auto_sync_enabled:
                    # An in-flight push outlives stop(); only the loop is cancelled
                    await asyncio.shield(self.request_sync())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in auto sync: {e}")

    async def request_sync(self) -> SyncResult:
        """Push every non-empty collection if local data changed since the last push."""
        session = self._current_session()
        if session is None:
            return SyncResult(success=False, skipped=True, errors=["Not signed in"])

        if self.state is SyncState.SYNCING:
            logger.debug("Sync already in progress, dropping request")
            return SyncResult(success=True, skipped=True)

        snapshot = self.store.load()
        fingerprint = snapshot.fingerprint()
        if fingerprint == snapshot.last_synced_hash:
            return SyncResult(success=True, skipped=True)

        self._set_state(SyncState.SYNCING)
        start_time = time.time()
        pushed: list[str] = []

        try:
            for collection in Collection:
                records = snapshot.get(collection)
                if not records:
                    continue
                self.store.mark_local_write(collection)
                await self.remote.upsert(collection, session.user_id, records, utc_now_iso())
                self.store.mark_local_write(collection)
                pushed.append(collection.value)

        except Exception as e:
            logger.error(f"Sync failed: {e}")
            self._set_state(SyncState.OFFLINE)
            return SyncResult(
                success=False,
                pushed=pushed,
                errors=[str(e)],
                duration_seconds=time.time() - start_time,
            )

        self.store.record_sync(fingerprint)
        self.last_synced_at = datetime.now(timezone.utc)
        self._set_state(SyncState.SYNCED)

        return SyncResult(
            success=True,
            pushed=pushed,
            duration_seconds=time.time() - start_time,
        )

    # === Remote Changes ===

    def _change_handler(self, collection: Collection):
        async def on_change(event: ChangeEvent) -> None:
            self.handle_remote_change(collection, event)
        return on_change

    def handle_remote_change(self, collection: Collection, event: ChangeEvent) -> bool:
        """Apply a change notification. Returns True if local data was replaced."""
        row = event.row
        if not row or row.get("data") is None:
            return False

        last_write = self.store.last_local_write(collection)
        if last_write is not None and self.clock() - last_write < self.config.echo_guard_window:
            logger.debug(f"Ignoring {collection.value} cloud update - just updated locally")
            return False

        logger.info(f"Received {collection.value} update from another device")

        snapshot = self.store.load()
        in_sync = snapshot.fingerprint() == snapshot.last_synced_hash

        cloud = coerce_records(row["data"])
        incoming = cloud
        if self.config.remote_apply_policy is ConflictResolution.NEWEST_WINS:
            incoming = merge_records(snapshot.get(collection), cloud)

        snapshot.set(collection, incoming)
        self.store.save(snapshot)
        if in_sync and incoming == cloud:
            # Local now equals what the cloud holds, so there is nothing to push
            self.store.record_sync(snapshot.fingerprint())

        self.store.reload("remote-change")
        if self.state is not SyncState.SYNCING:
            self._set_state(SyncState.SYNCED)
        return True

    # === Backup ===

    async def restore_backup(self) -> bool:
        """Merge the sign-out backup into local data and push the result."""
        snapshot = self.store.restore_backup()
        if snapshot is None:
            logger.info("No local backup to restore")
            return False
        self.store.reload("backup-restored")
        await self.request_sync()
        return True
