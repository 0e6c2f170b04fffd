"""
Remote store client.

``RemoteStore`` is the contract the sync engine and identity session depend
on: one JSON blob per (user, collection) plus change notifications, and the
account rows (profile, subscription, telemetry). ``RestRemoteStore`` talks to
the HTTP backend in ``api/`` and follows changes over its WebSocket channel.
"""

import asyncio
import inspect
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Union
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import WebSocketException

from .auth import TokenManager
from .config import SyncSettings
from .errors import AuthenticationError, NetworkError, RemoteError, SyncError
from .models import ChangeEvent, Collection, RemoteSnapshot

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


async def dispatch_change(handler: ChangeHandler, event: ChangeEvent) -> None:
    """Invoke a sync or async change handler, logging its failures."""
    try:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Change handler failed for {event.table}: {e}")


# =============================================================================
# Contract
# =============================================================================

class Subscription(ABC):
    """Handle of an open change subscription."""

    collection: Collection

    @property
    @abstractmethod
    def is_active(self) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class RemoteStore(ABC):
    """Per-user remote storage used by the sync core."""

    @abstractmethod
    async def upsert(
        self,
        collection: Collection,
        user_id: str,
        payload: list,
        timestamp: str,
    ) -> None:
        """Replace the user's row for a collection (conflict target: user_id)."""

    @abstractmethod
    async def fetch(self, collection: Collection, user_id: str) -> RemoteSnapshot:
        """Fetch the user's row; ``RemoteSnapshot.absent()`` when there is none."""

    @abstractmethod
    async def subscribe(
        self,
        collection: Collection,
        user_id: str,
        on_change: ChangeHandler,
    ) -> Subscription:
        """Deliver every change to the user's row for a collection."""

    @abstractmethod
    async def fetch_profile(self, user_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def create_profile(self, profile: dict) -> dict:
        ...

    @abstractmethod
    async def update_profile(self, user_id: str, fields: dict) -> Optional[dict]:
        ...

    @abstractmethod
    async def fetch_active_subscription(self, user_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def insert_event(
        self,
        user_id: str,
        event_name: str,
        properties: dict,
        created_at: str,
    ) -> None:
        ...

    @abstractmethod
    async def fetch_user_stats(self, user_id: str) -> Optional[dict]:
        ...

    async def close(self) -> None:
        """Release network resources."""


# =============================================================================
# Realtime Channel
# =============================================================================

def realtime_url(api_base_url: str, collection: Collection, user_id: str) -> str:
    """WebSocket address of a collection's change channel."""
    base = api_base_url
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/realtime/{collection.remote_table}?{urlencode({'user_id': user_id})}"


def parse_change_frame(raw: Union[str, bytes]) -> Optional[ChangeEvent]:
    """Decode one channel frame; None for frames that are not JSON objects."""
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning(f"Dropping malformed change event: {raw[:80]!r}")
        return None
    if not isinstance(payload, dict):
        return None
    return ChangeEvent.from_dict(payload)


class ChannelSubscription(Subscription):
    """Subscription backed by a reconnecting WebSocket listener task."""

    def __init__(self, collection: Collection, task_factory: Callable[["ChannelSubscription"], Awaitable[None]]):
        self.collection = collection
        self.connected = asyncio.Event()
        self._closed = False
        self._task = asyncio.create_task(task_factory(self))

    @property
    def is_active(self) -> bool:
        return not self._closed and not self._task.done()

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._closed = True
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


# =============================================================================
# HTTP Client
# =============================================================================

class RestRemoteStore(RemoteStore):
    """Remote store backed by the checklist HTTP API."""

    def __init__(
        self,
        config: SyncSettings,
        token_manager: TokenManager,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.token_manager = token_manager
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.api_timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        absent_ok: bool = False,
        **kwargs,
    ) -> Optional[httpx.Response]:
        """Make an authenticated API request with retry logic.

        A single token refresh after a 401 does not use up a retry attempt.
        Returns None for a 404 when ``absent_ok`` is set.
        """
        client = await self._get_http_client()
        url = f"{self.config.api_base_url}{endpoint}"

        token = await self.token_manager.get_valid_token()
        headers = kwargs.pop("headers", {})
        headers.update(self.token_manager.get_auth_header())

        last_exception: Optional[Exception] = None
        max_attempts = max(1, self.config.max_retries)
        attempt = 0
        refreshed = False

        while attempt < max_attempts:
            try:
                response = await client.request(method, url, headers=headers, **kwargs)

                if response.status_code == 401:
                    if not refreshed:
                        refreshed = True
                        token = await self.token_manager.refresh(token)
                        headers.update(self.token_manager.get_auth_header())
                        continue
                    raise AuthenticationError("Authentication failed")

                if response.status_code == 404 and absent_ok:
                    return None

                response.raise_for_status()
                return response

            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500:
                    wait_time = self._calculate_backoff(attempt)
                    logger.warning(f"Server error {e.response.status_code}, retry in {wait_time:.1f}s")
                    await asyncio.sleep(wait_time)
                    last_exception = RemoteError(
                        f"Server error {e.response.status_code}",
                        status_code=e.response.status_code,
                    )
                else:
                    raise RemoteError(
                        f"API error: {e.response.status_code} - {e.response.text}",
                        status_code=e.response.status_code,
                    )

            except httpx.RequestError as e:
                wait_time = self._calculate_backoff(attempt)
                logger.warning(f"Network error: {e!r}, retry in {wait_time:.1f}s")
                await asyncio.sleep(wait_time)
                last_exception = NetworkError(str(e) or repr(e))

            attempt += 1

        raise last_exception or SyncError("Max retries exceeded")

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff delay."""
        delay = self.config.base_retry_delay * (2 ** attempt)
        # Add jitter (0-25% of delay)
        jitter = delay * 0.25 * (hash(time.time()) % 100) / 100
        return min(delay + jitter, self.config.max_retry_delay)

    # === Collections ===

    async def upsert(
        self,
        collection: Collection,
        user_id: str,
        payload: list,
        timestamp: str,
    ) -> None:
        await self._request(
            "PUT",
            f"/collections/{collection.remote_table}",
            params={"user_id": user_id},
            json={"data": payload, "updated_at": timestamp},
        )
        logger.debug(f"Pushed {len(payload)} {collection.value} to cloud")

    async def fetch(self, collection: Collection, user_id: str) -> RemoteSnapshot:
        response = await self._request(
            "GET",
            f"/collections/{collection.remote_table}",
            absent_ok=True,
            params={"user_id": user_id},
        )
        if response is None:
            return RemoteSnapshot.absent()
        row = response.json()
        return RemoteSnapshot.from_payload(row.get("data"), row.get("updated_at"))

    async def subscribe(
        self,
        collection: Collection,
        user_id: str,
        on_change: ChangeHandler,
    ) -> Subscription:
        url = realtime_url(self.config.api_base_url, collection, user_id)

        async def listen(subscription: ChannelSubscription) -> None:
            while not subscription.closed:
                try:
                    await self._receive_changes(url, subscription, on_change)
                except asyncio.CancelledError:
                    raise
                except (WebSocketException, OSError, asyncio.TimeoutError, SyncError) as e:
                    logger.warning(f"Change channel for {collection.value} dropped: {e!r}")
                subscription.connected.clear()
                await asyncio.sleep(self.config.realtime_reconnect_delay)

        logger.debug(f"Subscribing to {collection.value} changes")
        return ChannelSubscription(collection, listen)

    async def _receive_changes(
        self,
        url: str,
        subscription: ChannelSubscription,
        on_change: ChangeHandler,
    ) -> None:
        await self.token_manager.get_valid_token()
        async with websockets.connect(
            url,
            additional_headers=self.token_manager.get_auth_header(),
            open_timeout=self.config.api_timeout,
            ping_interval=self.config.realtime_ping_interval,
            ping_timeout=self.config.realtime_ping_interval,
        ) as websocket:
            subscription.connected.set()
            async for raw in websocket:
                event = parse_change_frame(raw)
                if event is not None:
                    await dispatch_change(on_change, event)

    # === Account ===

    async def fetch_profile(self, user_id: str) -> Optional[dict]:
        response = await self._request("GET", f"/profiles/{user_id}", absent_ok=True)
        return response.json() if response is not None else None

    async def create_profile(self, profile: dict) -> dict:
        response = await self._request("POST", "/profiles", json=profile)
        return response.json()

    async def update_profile(self, user_id: str, fields: dict) -> Optional[dict]:
        response = await self._request(
            "PATCH", f"/profiles/{user_id}", absent_ok=True, json=fields
        )
        return response.json() if response is not None else None

    async def fetch_active_subscription(self, user_id: str) -> Optional[dict]:
        response = await self._request(
            "GET", f"/subscriptions/{user_id}/active", absent_ok=True
        )
        return response.json() if response is not None else None

    async def insert_event(
        self,
        user_id: str,
        event_name: str,
        properties: dict,
        created_at: str,
    ) -> None:
        await self._request(
            "POST",
            "/events",
            json={
                "user_id": user_id,
                "event_name": event_name,
                "properties": properties,
                "created_at": created_at,
            },
        )

    async def fetch_user_stats(self, user_id: str) -> Optional[dict]:
        response = await self._request("GET", f"/stats/{user_id}", absent_ok=True)
        return response.json() if response is not None else None
