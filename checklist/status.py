"""
Sync status indicator.

Projects the engine's ``SyncState`` onto a display surface. The surface may
not exist yet when the first status arrives (the UI is still being built),
so rendering is retried on a short delay until it succeeds once.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from .models import SyncState

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    SyncState.OFFLINE: "Offline",
    SyncState.SYNCING: "Syncing",
    SyncState.ONLINE: "Online",
    SyncState.SYNCED: "Synced",
}


@dataclass(frozen=True)
class StatusIndicator:
    """What the display surface shows."""
    state: SyncState
    label: str
    css_class: str
    title: str


class StatusSurface(Protocol):
    def render(self, indicator: StatusIndicator) -> None:
        ...


def build_indicator(state: SyncState, last_synced_at: Optional[datetime]) -> StatusIndicator:
    synced = last_synced_at.astimezone().strftime("%H:%M:%S") if last_synced_at else "Never"
    return StatusIndicator(
        state=state,
        label=STATUS_LABELS[state],
        css_class=f"sync-indicator {state.value}",
        title=f"Last sync: {synced}",
    )


class StatusPublisher:
    """Publishes sync state to a surface that may appear later."""

    def __init__(
        self,
        surface_provider: Callable[[], Optional[StatusSurface]],
        retry_delay: float = 0.5,
    ):
        self.surface_provider = surface_provider
        self.retry_delay = retry_delay
        self.state = SyncState.OFFLINE
        self.last_synced_at: Optional[datetime] = None
        self.current: Optional[StatusIndicator] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        """True while waiting for the surface to appear."""
        return self._retry_handle is not None

    def publish(self, state: SyncState, last_synced_at: Optional[datetime] = None) -> StatusIndicator:
        """Record the new state and try to render it."""
        self.state = state
        if last_synced_at is not None:
            self.last_synced_at = last_synced_at
        if state is SyncState.OFFLINE:
            logger.info("Sync status: offline")

        self.current = build_indicator(state, self.last_synced_at)
        self._cancel_retry()
        self._try_render()
        return self.current

    def _try_render(self) -> None:
        self._retry_handle = None
        surface = self.surface_provider()
        if surface is not None:
            surface.render(self.current)
            logger.debug(f"Sync indicator updated: {self.current.label}")
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Sync indicator not available and no event loop to retry on")
            return
        logger.debug("Sync indicator not found, retrying...")
        self._retry_handle = loop.call_later(self.retry_delay, self._try_render)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def close(self) -> None:
        self._cancel_retry()
