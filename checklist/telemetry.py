"""
Fire-and-forget usage telemetry.

Events are inserted in background tasks so tracking never blocks or fails
the caller; errors only reach the log.
"""

import asyncio
import logging
from typing import Optional

from .errors import SyncError
from .models import utc_now_iso
from .remote import RemoteStore
from .session import IdentitySession

logger = logging.getLogger(__name__)

DEFAULT_USER_STATS = {
    "total_todos": 0,
    "completed_todos": 0,
    "total_mindmaps": 0,
    "total_nodes": 0,
    "streak_days": 0,
}


class UsageTelemetry:
    """Logs usage events for the signed-in user."""

    def __init__(self, session: IdentitySession, remote: RemoteStore):
        self.session = session
        self.remote = remote
        self._pending: set[asyncio.Task] = set()

    def track_event(self, event_name: str, properties: Optional[dict] = None) -> Optional[asyncio.Task]:
        """Schedule an event insert; returns the task, or None when signed out."""
        current = self.session.session
        if current is None:
            return None

        task = asyncio.create_task(
            self._send(current.user_id, event_name, dict(properties or {}), utc_now_iso())
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def track_page_view(self, page_name: str) -> Optional[asyncio.Task]:
        return self.track_event("page_view", {"page": page_name})

    async def _send(self, user_id: str, event_name: str, properties: dict, created_at: str) -> None:
        try:
            await self.remote.insert_event(user_id, event_name, properties, created_at)
        except SyncError as e:
            logger.warning(f"Failed to record event '{event_name}': {e}")

    async def flush(self) -> None:
        """Wait for every scheduled insert to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def get_user_stats(self) -> Optional[dict]:
        """Usage statistics, or defaults for a new user. None when signed out."""
        current = self.session.session
        if current is None:
            return None

        try:
            stats = await self.remote.fetch_user_stats(current.user_id)
        except SyncError as e:
            logger.error(f"Failed to get user stats: {e}")
            return dict(DEFAULT_USER_STATS)

        if stats is None:
            logger.info("User stats not found (expected for a new user)")
            return dict(DEFAULT_USER_STATS)
        return stats
