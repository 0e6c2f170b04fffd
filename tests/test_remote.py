"""
Remote Store Client Tests

RestRemoteStore against an httpx mock transport: wire format, retry,
token refresh, absent rows, and the WebSocket change channel against a
local server.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from websockets.asyncio.server import serve

from checklist.auth import TokenManager
from checklist.errors import AuthenticationError, NetworkError, RemoteError
from checklist.models import AuthToken, ChangeEvent, Collection, Presence
from checklist.remote import RestRemoteStore, dispatch_change, parse_change_frame, realtime_url

from conftest import USER_ID, task


class Recorder:
    """Mock transport handler that replays scripted responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def make_client(store, config, handler):
    transport = httpx.MockTransport(handler)
    tokens = TokenManager(store, config, transport=transport)
    tokens.set_token(AuthToken(
        "access-1",
        "refresh-1",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    ))
    return RestRemoteStore(config, tokens, transport=transport), tokens


def refreshing_handler(calls, accept_refreshed=True):
    """Rejects the stale token; the refresh endpoint hands out ``access-2``."""

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path.endswith("/auth/refresh"):
            return httpx.Response(200, json={
                "access_token": "access-2",
                "refresh_token": "refresh-2",
                "expires_in": 3600,
            })
        if accept_refreshed and request.headers["Authorization"] == "Bearer access-2":
            return httpx.Response(200, json={"data": []})
        return httpx.Response(401)

    return handler


class TestCollections:
    """Tests for collection fetch and upsert."""

    def test_fetch_absent(self, store, config):
        remote, _ = make_client(store, config, Recorder(httpx.Response(404, json={"error": "none"})))

        snapshot = asyncio.run(remote.fetch(Collection.TASKS, USER_ID))

        assert snapshot.presence is Presence.ABSENT

    def test_fetch_empty_is_not_absent(self, store, config):
        handler = Recorder(httpx.Response(200, json={"user_id": USER_ID, "data": [], "updated_at": "x"}))
        remote, _ = make_client(store, config, handler)

        snapshot = asyncio.run(remote.fetch(Collection.TASKS, USER_ID))

        assert snapshot.presence is Presence.EMPTY
        assert handler.requests[0].url.path == "/api/v1/collections/todos"
        assert handler.requests[0].url.params["user_id"] == USER_ID

    def test_fetch_legacy_boards(self, store, config):
        handler = Recorder(httpx.Response(200, json={"data": {"b1": {"title": "Plan"}}}))
        remote, _ = make_client(store, config, handler)

        snapshot = asyncio.run(remote.fetch(Collection.BOARDS, USER_ID))

        assert snapshot.presence is Presence.PRESENT
        assert snapshot.records == ({"title": "Plan", "id": "b1"},)
        assert handler.requests[0].url.path.endswith("/collections/mindmaps")

    def test_upsert_wire_format(self, store, config):
        handler = Recorder(httpx.Response(200, json={}))
        remote, _ = make_client(store, config, handler)

        asyncio.run(remote.upsert(Collection.TASKS, USER_ID, [task("a")], "2024-05-01T10:00:00+00:00"))

        request = handler.requests[0]
        assert request.method == "PUT"
        assert request.headers["Authorization"] == "Bearer access-1"
        assert json.loads(request.content) == {
            "data": [task("a")],
            "updated_at": "2024-05-01T10:00:00+00:00",
        }


class TestRetries:
    """Tests for retry and error mapping."""

    def test_server_error_is_retried(self, store, config):
        handler = Recorder(
            httpx.Response(503),
            httpx.Response(200, json={"data": [task("a")]}),
        )
        remote, _ = make_client(store, config, handler)

        snapshot = asyncio.run(remote.fetch(Collection.TASKS, USER_ID))

        assert len(handler.requests) == 2
        assert snapshot.records == (task("a"),)

    def test_persistent_server_error(self, store, config):
        handler = Recorder(httpx.Response(500))
        remote, _ = make_client(store, config, handler)

        with pytest.raises(RemoteError) as exc_info:
            asyncio.run(remote.fetch(Collection.TASKS, USER_ID))

        assert exc_info.value.status_code == 500
        assert len(handler.requests) == config.max_retries

    def test_client_error_is_not_retried(self, store, config):
        handler = Recorder(httpx.Response(422, json={"error": "Validation Error"}))
        remote, _ = make_client(store, config, handler)

        with pytest.raises(RemoteError):
            asyncio.run(remote.upsert(Collection.TASKS, USER_ID, [], "now"))

        assert len(handler.requests) == 1

    def test_network_error(self, store, config):
        handler = Recorder(httpx.ConnectError("connection refused"))
        remote, _ = make_client(store, config, handler)

        with pytest.raises(NetworkError):
            asyncio.run(remote.fetch(Collection.TASKS, USER_ID))

    @pytest.mark.parametrize("max_retries", [1, 3])
    def test_unauthorized_refreshes_once(self, store, config, max_retries):
        config.max_retries = max_retries
        calls = []
        remote, tokens = make_client(store, config, refreshing_handler(calls))

        snapshot = asyncio.run(remote.fetch(Collection.TASKS, USER_ID))

        assert snapshot.presence is Presence.EMPTY
        assert calls.count("/api/v1/auth/refresh") == 1
        assert store.get_token().access_token == "access-2"

    def test_unauthorized_after_refresh(self, store, config):
        calls = []
        remote, tokens = make_client(store, config, refreshing_handler(calls, accept_refreshed=False))

        with pytest.raises(AuthenticationError):
            asyncio.run(remote.fetch(Collection.TASKS, USER_ID))

        assert calls.count("/api/v1/auth/refresh") == 1
        assert calls.count("/api/v1/collections/todos") == 2

    def test_rejected_refresh_clears_token(self, store, config):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401)

        remote, tokens = make_client(store, config, handler)

        with pytest.raises(AuthenticationError):
            asyncio.run(remote.fetch(Collection.TASKS, USER_ID))

        assert store.get_token() is None

    def test_no_token(self, store, config):
        remote, tokens = make_client(store, config, Recorder(httpx.Response(200)))
        tokens.clear()

        with pytest.raises(AuthenticationError):
            asyncio.run(remote.fetch(Collection.TASKS, USER_ID))


class TestAccount:
    """Tests for profile, subscription and telemetry calls."""

    def test_missing_profile_is_none(self, store, config):
        remote, _ = make_client(store, config, Recorder(httpx.Response(404)))
        assert asyncio.run(remote.fetch_profile(USER_ID)) is None

    def test_no_active_subscription_is_none(self, store, config):
        handler = Recorder(httpx.Response(404))
        remote, _ = make_client(store, config, handler)

        assert asyncio.run(remote.fetch_active_subscription(USER_ID)) is None
        assert handler.requests[0].url.path == f"/api/v1/subscriptions/{USER_ID}/active"

    def test_insert_event_body(self, store, config):
        handler = Recorder(httpx.Response(201, json={}))
        remote, _ = make_client(store, config, handler)

        asyncio.run(remote.insert_event(USER_ID, "page_view", {"page": "home"}, "2024-05-01T00:00:00Z"))

        assert json.loads(handler.requests[0].content) == {
            "user_id": USER_ID,
            "event_name": "page_view",
            "properties": {"page": "home"},
            "created_at": "2024-05-01T00:00:00Z",
        }


class ChangeServer:
    """Local WebSocket handler that sends scripted frames on every connection."""

    def __init__(self, *frames, close_code=None, hold_open=True):
        self.frames = frames
        self.close_code = close_code
        self.hold_open = hold_open
        self.requests = []

    async def __call__(self, connection):
        self.requests.append(connection.request)
        for frame in self.frames:
            await connection.send(frame)
        if self.close_code is not None:
            await connection.close(self.close_code, "rejected")
        elif self.hold_open:
            await connection.wait_closed()


def change_frame(data) -> str:
    return json.dumps({
        "eventType": "UPDATE",
        "table": "todos",
        "new": {"user_id": USER_ID, "data": data},
        "old": {},
    })


async def serve_changes(config, handler):
    server = await serve(handler, "127.0.0.1", 0)
    port = next(iter(server.sockets)).getsockname()[1]
    config.api_base_url = f"http://127.0.0.1:{port}/api/v1"
    config.realtime_reconnect_delay = 0.01
    return server


class TestRealtimeChannel:
    """Tests for the WebSocket change channel and subscriptions."""

    def test_realtime_url(self):
        assert realtime_url("http://host:8000/api/v1", Collection.TASKS, "u 1") == (
            "ws://host:8000/api/v1/realtime/todos?user_id=u+1"
        )
        assert realtime_url("https://host/api/v1", Collection.BOARDS, "u").startswith(
            "wss://host/api/v1/realtime/mindmaps?"
        )

    def test_parse_change_frame(self):
        assert parse_change_frame("not json") is None
        assert parse_change_frame("[1, 2]") is None
        assert parse_change_frame(change_frame([task("a")])).row["data"] == [task("a")]

    def test_change_event_from_wire(self):
        event = ChangeEvent.from_dict({
            "eventType": "DELETE",
            "table": "todos",
            "new": {},
            "old": {"user_id": USER_ID},
        })
        assert event.new is None
        assert event.row == {"user_id": USER_ID}

    def test_dispatch_handles_sync_and_async_handlers(self):
        seen = []

        def sync_handler(event):
            seen.append(("sync", event.table))

        async def async_handler(event):
            seen.append(("async", event.table))

        def broken(event):
            raise RuntimeError("boom")

        async def scenario():
            event = ChangeEvent(event_type="UPDATE", table="todos")
            await dispatch_change(sync_handler, event)
            await dispatch_change(async_handler, event)
            await dispatch_change(broken, event)

        asyncio.run(scenario())

        assert seen == [("sync", "todos"), ("async", "todos")]

    def test_subscription_delivers_changes(self, store, config):
        handler = ChangeServer("not json", json.dumps([1, 2]), change_frame([task("a")]))
        remote, _ = make_client(store, config, Recorder(httpx.Response(200)))

        async def scenario():
            server = await serve_changes(config, handler)
            try:
                received = asyncio.Queue()
                subscription = await remote.subscribe(Collection.TASKS, USER_ID, received.put)
                event = await asyncio.wait_for(received.get(), timeout=2)
                extra = received.qsize()
                active = subscription.is_active
                await subscription.close()
                return event, extra, active, subscription.is_active
            finally:
                server.close()
                await server.wait_closed()

        event, extra, active_before, active_after = asyncio.run(scenario())

        assert event.row["data"] == [task("a")]
        assert extra == 0
        assert active_before
        assert not active_after
        request = handler.requests[0]
        assert request.path == f"/api/v1/realtime/todos?user_id={USER_ID}"
        assert request.headers["Authorization"] == "Bearer access-1"

    def test_reconnects_after_close(self, store, config):
        handler = ChangeServer(change_frame([task("a")]), hold_open=False)
        remote, _ = make_client(store, config, Recorder(httpx.Response(200)))

        async def scenario():
            server = await serve_changes(config, handler)
            try:
                received = asyncio.Queue()
                subscription = await remote.subscribe(Collection.TASKS, USER_ID, received.put)
                first = await asyncio.wait_for(received.get(), timeout=2)
                second = await asyncio.wait_for(received.get(), timeout=2)
                await subscription.close()
                return first, second
            finally:
                server.close()
                await server.wait_closed()

        first, second = asyncio.run(scenario())

        assert first.row == second.row
        assert len(handler.requests) >= 2

    def test_rejected_channel_keeps_retrying(self, store, config):
        handler = ChangeServer(close_code=4001)
        remote, _ = make_client(store, config, Recorder(httpx.Response(200)))

        async def scenario():
            server = await serve_changes(config, handler)
            try:
                subscription = await remote.subscribe(Collection.TASKS, USER_ID, lambda event: None)
                for _ in range(200):
                    if len(handler.requests) >= 2:
                        break
                    await asyncio.sleep(0.01)
                active = subscription.is_active
                await subscription.close()
                return active
            finally:
                server.close()
                await server.wait_closed()

        assert asyncio.run(scenario())
        assert len(handler.requests) >= 2
