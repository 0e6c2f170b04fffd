"""
Configuration settings for the checklist sync client.

Values come from environment variables prefixed with ``CHECKLIST_`` (or a
``.env`` file) with defaults suitable for a local development backend.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ConflictResolution


class SyncSettings(BaseSettings):
    """Client settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CHECKLIST_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API settings
    api_base_url: str = "http://localhost:8000/api/v1"
    api_timeout: float = 30.0
    redirect_url: str = "http://localhost:3000/index.html"

    # Local storage
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".checklist")
    store_db_name: str = "checklist.db"

    # Sync timing (seconds)
    push_interval: float = 10.0  # Periodic push check
    echo_guard_window: float = 2.0  # Remote events this soon after a local write are echoes
    sign_in_reload_delay: float = 1.5  # Let the initial pull finish before reloading
    status_retry_delay: float = 0.5
    realtime_reconnect_delay: float = 5.0
    realtime_ping_interval: float = 20.0  # WebSocket keepalive ping

    # Retry settings
    max_retries: int = 3
    base_retry_delay: float = 1.0
    max_retry_delay: float = 30.0

    # Auth settings
    token_refresh_buffer: int = 300  # Refresh token 5 min before expiry

    remote_apply_policy: ConflictResolution = ConflictResolution.CLOUD_WINS

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("echo_guard_window", "push_interval")
    @classmethod
    def non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @property
    def store_path(self) -> Path:
        """Full path to the local store database."""
        return Path(self.data_dir) / self.store_db_name


@lru_cache
def get_settings() -> SyncSettings:
    """Get cached settings instance."""
    return SyncSettings()
