"""
Identity session for the checklist sync client.

Tracks the signed-in user and drives the sync engine: signing in loads the
profile and subscription and starts syncing; signing out backs up local
data, stops syncing and clears identity. Sign-out never fails visibly.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from .auth import TokenManager
from .config import SyncSettings, get_settings
from .errors import AuthenticationError, SyncError
from .models import Session, UserProfile, utc_now_iso
from .remote import RemoteStore
from .store import LocalStore

if TYPE_CHECKING:
    from .engine import SyncEngine

logger = logging.getLogger(__name__)


class IdentitySession:
    """Signed-in principal and session lifecycle."""

    def __init__(
        self,
        tokens: TokenManager,
        remote: RemoteStore,
        store: LocalStore,
        config: Optional[SyncSettings] = None,
    ):
        self.tokens = tokens
        self.remote = remote
        self.store = store
        self.config = config or get_settings()
        self.sync_engine: Optional["SyncEngine"] = None

        self._session: Optional[Session] = None
        self.user_profile: Optional[UserProfile] = None
        self.subscription: Optional[dict] = None
        self._reload_task: Optional[asyncio.Task] = None

    def bind_engine(self, engine: "SyncEngine") -> None:
        self.sync_engine = engine

    # === Read Access ===

    @property
    def session(self) -> Optional[Session]:
        """The current session, or None when signed out."""
        return self._session

    @property
    def is_signed_in(self) -> bool:
        return self._session is not None

    @property
    def is_premium(self) -> bool:
        return bool(self.subscription) and self.subscription.get("tier", "free") != "free"

    @property
    def is_admin(self) -> bool:
        return self.user_profile is not None and self.user_profile.role == "admin"

    @property
    def pending_reload(self) -> Optional[asyncio.Task]:
        """The delayed reload scheduled after sign-in, if any."""
        if self._reload_task is not None and not self._reload_task.done():
            return self._reload_task
        return None

    async def get_session(self) -> Optional[Session]:
        """Ask the backend who the stored token belongs to."""
        user = await self.tokens.fetch_user()
        if user is None:
            return None
        return Session(
            user_id=str(user["id"]),
            email=user.get("email") or "",
            user_metadata=user.get("user_metadata") or {},
        )

    # === Sign In ===

    async def initialize(self) -> Optional[Session]:
        """Restore an existing session at process start."""
        try:
            session = await self.get_session()
        except SyncError as e:
            logger.warning(f"Could not restore session: {e}")
            return None

        if session is not None:
            await self._on_signed_in(session, reload_after_sync=False)
        return self._session

    def sign_in(self, provider: str) -> str:
        """Begin the redirect-based sign-in. Returns the URL to open."""
        url = self.tokens.authorize_url(provider)
        logger.info(f"Starting {provider} sign in")
        return url

    async def complete_sign_in(self, callback_url: str) -> Session:
        """Finish a redirect sign-in with the URL the provider sent us back to."""
        self.tokens.accept_redirect(callback_url)
        return await self._after_token()

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        await self.tokens.login(email, password)
        return await self._after_token()

    async def _after_token(self) -> Session:
        session = await self.get_session()
        if session is None:
            raise AuthenticationError("Backend rejected the new session")
        await self._on_signed_in(session, reload_after_sync=True)
        return self._session

    async def _on_signed_in(self, session: Session, reload_after_sync: bool) -> None:
        self._session = session
        await self.load_user_profile()
        await self.check_subscription()

        if self.sync_engine is not None:
            await self.sync_engine.start()

        if reload_after_sync:
            self._schedule_reload("signed-in", self.config.sign_in_reload_delay)

    async def load_user_profile(self) -> Optional[UserProfile]:
        """Load the profile row, creating it with defaults for a new user."""
        session = self._session
        if session is None:
            return None

        try:
            row = await self.remote.fetch_profile(session.user_id)
        except SyncError as e:
            logger.error(f"Profile load error: {e}")
            return None

        now = utc_now_iso()
        if row is None:
            profile = UserProfile(
                id=session.user_id,
                email=session.email,
                full_name=session.user_metadata.get("full_name") or "",
                avatar_url=session.user_metadata.get("avatar_url") or "",
                created_at=now,
                last_login=now,
            )
            try:
                created = await self.remote.create_profile(profile.to_dict())
                profile = UserProfile.from_dict(created)
            except SyncError as e:
                logger.error(f"Profile creation error: {e}")
                return None
        else:
            profile = UserProfile.from_dict(row)
            try:
                await self.remote.update_profile(session.user_id, {"last_login": now})
                profile.last_login = now
            except SyncError as e:
                logger.warning(f"Failed to update last login: {e}")

        self.user_profile = profile
        session.profile = profile
        session.subscription_tier = profile.subscription_tier
        return profile

    async def check_subscription(self) -> Optional[dict]:
        """Look up an active subscription; having none is normal."""
        session = self._session
        if session is None:
            return None

        try:
            subscription = await self.remote.fetch_active_subscription(session.user_id)
        except SyncError as e:
            logger.warning(f"Subscription check failed: {e}")
            subscription = None

        if subscription is None:
            logger.info("No active subscription (expected for free users)")
        else:
            session.subscription_tier = subscription.get("tier") or session.subscription_tier

        self.subscription = subscription
        return subscription

    # === Sign Out ===

    async def sign_out(self) -> None:
        """Back up local data, sign out and reload. Never raises."""
        try:
            if self.tokens.load_token() is None and self._session is None:
                logger.info("No active session to sign out")
                await self._on_signed_out()
                return

            self.store.write_backup()

            if not await self.tokens.logout():
                logger.warning("Backend sign out failed, clearing local session anyway")

            await self._on_signed_out()

        except Exception as e:
            logger.error(f"Sign out failed: {e}")
            self._clear_identity()
            self.store.reload("signed-out")

    async def _on_signed_out(self) -> None:
        if self.sync_engine is not None:
            await self.sync_engine.stop()
        self._clear_identity()
        self.store.reload("signed-out")

    def _clear_identity(self) -> None:
        self._cancel_reload()
        self.tokens.clear()
        self._session = None
        self.user_profile = None
        self.subscription = None

    # === Reload ===

    def _schedule_reload(self, reason: str, delay: float) -> None:
        self._cancel_reload()
        self._reload_task = asyncio.create_task(self._reload_later(reason, delay))

    async def _reload_later(self, reason: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self.store.reload(reason)

    def _cancel_reload(self) -> None:
        if self._reload_task is not None and not self._reload_task.done():
            self._reload_task.cancel()
        self._reload_task = None
