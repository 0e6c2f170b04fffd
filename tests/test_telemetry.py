"""
Usage Telemetry Tests
"""

import asyncio

import pytest

from checklist.telemetry import DEFAULT_USER_STATS, UsageTelemetry

from conftest import USER_ID, StaticIdentity, make_session


@pytest.fixture
def identity():
    return StaticIdentity(make_session())


@pytest.fixture
def telemetry(identity, remote):
    return UsageTelemetry(identity, remote)


class TestTrackEvent:
    """Tests for fire-and-forget event tracking."""

    def test_event_is_inserted(self, telemetry, remote):
        async def scenario():
            task = telemetry.track_event("task_created", {"category": "work"})
            await telemetry.flush()
            return task

        task = asyncio.run(scenario())

        assert task is not None
        assert remote.events[0]["user_id"] == USER_ID
        assert remote.events[0]["event_name"] == "task_created"
        assert remote.events[0]["properties"] == {"category": "work"}

    def test_page_view(self, telemetry, remote):
        async def scenario():
            telemetry.track_page_view("boards")
            await telemetry.flush()

        asyncio.run(scenario())

        assert remote.events[0]["event_name"] == "page_view"
        assert remote.events[0]["properties"] == {"page": "boards"}

    def test_signed_out_is_a_no_op(self, telemetry, identity, remote):
        identity.session = None

        async def scenario():
            return telemetry.track_event("task_created")

        assert asyncio.run(scenario()) is None
        assert remote.events == []

    def test_failure_is_only_logged(self, telemetry, remote, caplog):
        remote.fail_account = True

        async def scenario():
            telemetry.track_event("task_created")
            await telemetry.flush()

        asyncio.run(scenario())

        assert remote.events == []
        assert "Failed to record event" in caplog.text


class TestUserStats:
    """Tests for usage statistics."""

    def test_stats_from_remote(self, telemetry, remote):
        remote.stats[USER_ID] = {**DEFAULT_USER_STATS, "total_todos": 7}

        stats = asyncio.run(telemetry.get_user_stats())

        assert stats["total_todos"] == 7

    def test_missing_stats_are_defaults(self, telemetry):
        assert asyncio.run(telemetry.get_user_stats()) == DEFAULT_USER_STATS

    def test_failed_lookup_is_defaults(self, telemetry, remote):
        remote.fail_account = True
        assert asyncio.run(telemetry.get_user_stats()) == DEFAULT_USER_STATS

    def test_signed_out(self, telemetry, identity):
        identity.session = None
        assert asyncio.run(telemetry.get_user_stats()) is None
