"""
Status Publisher Tests
"""

import asyncio
import logging
from datetime import datetime, timezone

from checklist.models import SyncState
from checklist.status import STATUS_LABELS, StatusPublisher, build_indicator

from conftest import RecordingSurface


def test_labels_cover_every_state():
    assert {STATUS_LABELS[s] for s in SyncState} == {"Offline", "Syncing", "Online", "Synced"}


def test_indicator_without_sync_time():
    indicator = build_indicator(SyncState.ONLINE, None)

    assert indicator.label == "Online"
    assert indicator.css_class == "sync-indicator online"
    assert indicator.title == "Last sync: Never"


def test_indicator_with_sync_time():
    indicator = build_indicator(SyncState.SYNCED, datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc))
    assert indicator.title.startswith("Last sync: ")
    assert indicator.title != "Last sync: Never"


class TestStatusPublisher:
    """Tests for publishing to a late-appearing surface."""

    def test_renders_immediately_when_surface_exists(self):
        surface = RecordingSurface()
        publisher = StatusPublisher(lambda: surface)

        publisher.publish(SyncState.SYNCING)

        assert [i.state for i in surface.rendered] == [SyncState.SYNCING]
        assert not publisher.pending

    def test_retries_until_surface_appears(self):
        holder = {"surface": None}
        publisher = StatusPublisher(lambda: holder["surface"], retry_delay=0.01)

        async def scenario():
            publisher.publish(SyncState.SYNCED)
            pending = publisher.pending
            await asyncio.sleep(0.03)
            holder["surface"] = RecordingSurface()
            await asyncio.sleep(0.05)
            return pending

        pending = asyncio.run(scenario())

        assert pending
        assert [i.label for i in holder["surface"].rendered] == ["Synced"]
        assert not publisher.pending

    def test_newer_state_replaces_pending_retry(self):
        holder = {"surface": None}
        publisher = StatusPublisher(lambda: holder["surface"], retry_delay=0.01)

        async def scenario():
            publisher.publish(SyncState.SYNCING)
            publisher.publish(SyncState.OFFLINE)
            holder["surface"] = RecordingSurface()
            await asyncio.sleep(0.05)

        asyncio.run(scenario())

        assert [i.label for i in holder["surface"].rendered] == ["Offline"]

    def test_no_event_loop_gives_up_quietly(self):
        publisher = StatusPublisher(lambda: None)

        indicator = publisher.publish(SyncState.ONLINE)

        assert indicator.label == "Online"
        assert not publisher.pending

    def test_keeps_last_sync_time(self):
        surface = RecordingSurface()
        publisher = StatusPublisher(lambda: surface)
        synced_at = datetime.now(timezone.utc)

        publisher.publish(SyncState.SYNCED, synced_at)
        publisher.publish(SyncState.SYNCING)

        assert publisher.last_synced_at == synced_at
        assert surface.rendered[-1].title != "Last sync: Never"

    def test_offline_is_logged_at_info(self, caplog):
        publisher = StatusPublisher(lambda: RecordingSurface())

        with caplog.at_level(logging.INFO, logger="checklist.status"):
            publisher.publish(SyncState.OFFLINE)

        assert "offline" in caplog.text

    def test_close_cancels_retry(self):
        publisher = StatusPublisher(lambda: None, retry_delay=10)

        async def scenario():
            publisher.publish(SyncState.SYNCING)
            pending = publisher.pending
            publisher.close()
            return pending

        assert asyncio.run(scenario())
        assert not publisher.pending
