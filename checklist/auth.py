"""
Token handling for the checklist sync client.

Issues and refreshes bearer tokens against the backend auth endpoints and
keeps the current token in the local store.
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from .config import SyncSettings
from .errors import AuthenticationError, NetworkError
from .models import AuthToken
from .store import LocalStore

logger = logging.getLogger(__name__)


class TokenManager:
    """Manages authentication tokens for the signed-in user."""

    def __init__(
        self,
        store: LocalStore,
        config: SyncSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.config = config
        self._transport = transport
        self._token: Optional[AuthToken] = None
        self._refresh_lock = asyncio.Lock()
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.api_timeout),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def load_token(self) -> Optional[AuthToken]:
        """Load token from the store."""
        if self._token is None:
            self._token = self.store.get_token()
        return self._token

    def set_token(self, token: AuthToken) -> None:
        self.store.save_token(token)
        self._token = token

    def clear(self) -> None:
        self.store.clear_token()
        self._token = None

    async def get_valid_token(self) -> AuthToken:
        """Get a valid (non-expired) token, refreshing if necessary."""
        token = self.load_token()

        if token is None:
            raise AuthenticationError("No authentication token available. Please sign in.")

        if token.needs_refresh(self.config.token_refresh_buffer):
            async with self._refresh_lock:
                # Double-check after acquiring lock
                token = self.load_token()
                if token and token.needs_refresh(self.config.token_refresh_buffer):
                    token = await self.refresh(token)

        return token

    async def refresh(self, token: AuthToken) -> AuthToken:
        """Exchange the refresh token for a new token pair."""
        logger.info("Refreshing authentication token...")

        client = await self._get_http_client()

        try:
            response = await client.post(
                f"{self.config.api_base_url}/auth/refresh",
                json={"refresh_token": token.refresh_token},
            )

            if response.status_code == 401:
                self.clear()
                raise AuthenticationError("Refresh token expired. Please sign in again.")

            response.raise_for_status()
            data = response.json()
            data.setdefault("refresh_token", token.refresh_token)

            new_token = AuthToken.from_grant(data)
            self.set_token(new_token)
            logger.info("Token refreshed successfully")
            return new_token

        except httpx.HTTPStatusError as e:
            raise AuthenticationError(f"Token refresh failed: {e}")
        except httpx.RequestError as e:
            raise NetworkError(f"Network error during token refresh: {e}")

    async def login(self, email: str, password: str) -> AuthToken:
        """Authenticate with email and password."""
        logger.info(f"Signing in user: {email}")

        client = await self._get_http_client()

        try:
            response = await client.post(
                f"{self.config.api_base_url}/auth/login",
                json={"email": email, "password": password},
            )

            if response.status_code == 401:
                raise AuthenticationError("Invalid email or password")

            response.raise_for_status()
            token = AuthToken.from_grant(response.json())
            self.set_token(token)
            logger.info("Sign in successful")
            return token

        except httpx.HTTPStatusError as e:
            raise AuthenticationError(f"Sign in failed: {e}")
        except httpx.RequestError as e:
            raise NetworkError(f"Network error during sign in: {e}")

    def authorize_url(self, provider: str, redirect_to: Optional[str] = None) -> str:
        """URL that starts the redirect-based sign-in with a provider."""
        query = urlencode({
            "provider": provider,
            "redirect_to": redirect_to or self.config.redirect_url,
        })
        return f"{self.config.api_base_url}/auth/authorize?{query}"

    def accept_redirect(self, callback_url: str) -> AuthToken:
        """Store the token carried in the fragment of a sign-in redirect."""
        parts = urlsplit(callback_url)
        params = {k: v[0] for k, v in parse_qs(parts.fragment or parts.query).items()}

        if "error" in params:
            raise AuthenticationError(
                f"Sign in failed: {params.get('error_description', params['error'])}"
            )
        if "access_token" not in params:
            raise AuthenticationError("Redirect does not carry an access token")

        token = AuthToken.from_grant(params)
        self.set_token(token)
        return token

    async def fetch_user(self) -> Optional[dict]:
        """Return the user the stored token belongs to, or None.

        A rejected token is cleared. Network failures raise ``NetworkError``.
        """
        try:
            token = await self.get_valid_token()
        except AuthenticationError:
            return None

        client = await self._get_http_client()
        try:
            response = await client.get(
                f"{self.config.api_base_url}/auth/user",
                headers=self._header_for(token),
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Network error while checking session: {e}")

        if response.status_code in (401, 403, 404):
            logger.info("Stored token was rejected, clearing it")
            self.clear()
            return None

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NetworkError(f"Session check failed: {e}")
        return response.json()

    async def logout(self) -> bool:
        """Sign out on the backend and clear stored tokens.

        Returns False when the backend call failed; tokens are cleared anyway.
        """
        acknowledged = True
        if self._token or self.load_token():
            try:
                client = await self._get_http_client()
                response = await client.post(
                    f"{self.config.api_base_url}/auth/logout",
                    headers=self.get_auth_header(),
                )
                response.raise_for_status()
            except (httpx.HTTPError, AuthenticationError) as e:
                logger.warning(f"Error during sign out: {e}")
                acknowledged = False

        self.clear()
        logger.info("Signed out")
        return acknowledged

    @staticmethod
    def _header_for(token: AuthToken) -> dict[str, str]:
        return {"Authorization": f"{token.token_type} {token.access_token}"}

    def get_auth_header(self) -> dict[str, str]:
        """Get authorization header for API requests."""
        token = self.load_token()
        if token is None:
            raise AuthenticationError("Not authenticated")
        return self._header_for(token)
