"""Runtime configuration loaded from the environment / .env file."""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

from receiptsync.errors import ConfigurationError

DEFAULT_STORE_PATH = Path.home() / ".receiptsync" / "store.json"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


class Settings(BaseModel):
    """Settings shared by the gateway, synchronizer and containers."""

    model_config = ConfigDict(frozen=True)

    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    anthropic_api_key: str | None = None
    stripe_publishable_key: str | None = None

    storage_bucket: str = "receipts"
    max_upload_mb: int = 5
    min_upload_bytes: int = 1024
    store_path: Path = DEFAULT_STORE_PATH
    exchange_rate_url: str = "https://open.er-api.com/v6/latest/{base}"
    vision_model: str = "claude-haiku-4-5"

    notification_page_size: int = 50
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 1.0  # seconds, multiplied by the attempt number

    log_level: str = "WARNING"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """Build settings from environment variables.

        Args:
            dotenv: Load a .env file from the working directory first

        Returns:
            Settings populated from the environment, defaults elsewhere
        """
        if dotenv:
            load_dotenv()
        store_path = os.getenv("RECEIPTSYNC_STORE_PATH")
        return cls(
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            stripe_publishable_key=os.getenv("STRIPE_PUBLISHABLE_KEY"),
            storage_bucket=os.getenv("RECEIPTSYNC_STORAGE_BUCKET", "receipts"),
            max_upload_mb=_env_int("RECEIPTSYNC_MAX_UPLOAD_MB", 5),
            store_path=Path(store_path) if store_path else DEFAULT_STORE_PATH,
            exchange_rate_url=os.getenv(
                "EXCHANGE_RATE_API_URL", "https://open.er-api.com/v6/latest/{base}"
            ),
            vision_model=os.getenv("RECEIPTSYNC_VISION_MODEL", "claude-haiku-4-5"),
            max_reconnect_attempts=_env_int("RECEIPTSYNC_MAX_RECONNECT_ATTEMPTS", 5),
            reconnect_delay=_env_float("RECEIPTSYNC_RECONNECT_DELAY", 1.0),
            log_level=os.getenv("RECEIPTSYNC_LOG_LEVEL", "WARNING"),
        )

    def require_backend(self) -> tuple[str, str]:
        """Return (url, anon key) or raise if either is missing."""
        if not self.supabase_url or not self.supabase_anon_key:
            raise ConfigurationError(
                "SUPABASE_URL and SUPABASE_ANON_KEY must be set to reach the backend"
            )
        return self.supabase_url, self.supabase_anon_key
