import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


class Settings:
    """Centralised application configuration sourced from environment variables."""

    def __init__(self) -> None:
        load_dotenv()
        self.database_path = Path(os.getenv("DATABASE_PATH", "data/billing.db")).resolve()
        self.store_lock_timeout = self._get_float("STORE_LOCK_TIMEOUT_SECONDS", default=5.0)
        self.webhook_secret = os.getenv("WEBHOOK_SECRET") or None
        self.webhook_signature_header = os.getenv("WEBHOOK_SIGNATURE_HEADER", "verif-hash")
        self.admin_api_token = os.getenv("ADMIN_API_TOKEN", "change-me")
        self.scheduler_enabled = self._get_bool("SCHEDULER_ENABLED", default=False)
        self.scheduler_interval_seconds = self._get_float("SCHEDULER_INTERVAL_SECONDS", default=86400.0)
        self.scheduler_batch_size = self._get_int("SCHEDULER_BATCH_SIZE", default=100)
        self.scheduler_concurrency = self._get_int("SCHEDULER_CONCURRENCY", default=4)
        self.renewal_grace_hours = self._get_int("RENEWAL_GRACE_HOURS", default=72)
        self.max_renewal_attempts = self._get_int("MAX_RENEWAL_ATTEMPTS", default=3)
        self.retry_max_retries = self._get_int("RETRY_MAX_RETRIES", default=3)
        self.retry_delay_seconds = self._get_float("RETRY_DELAY_SECONDS", default=1.0)
        self.retry_max_delay_seconds = self._get_float("RETRY_MAX_DELAY_SECONDS", default=10.0)
        self.gateway_base_url = os.getenv("GATEWAY_BASE_URL")
        self.gateway_secret_key = os.getenv("GATEWAY_SECRET_KEY")
        origins = os.getenv("CORS_ALLOW_ORIGINS")
        if origins:
            self.cors_allow_origins = [item.strip() for item in origins.split(",") if item.strip()]
        else:
            self.cors_allow_origins = ["*"]

    @staticmethod
    def _get_int(key: str, default: Optional[int] = None) -> int:
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise RuntimeError(f"Missing required environment variable: {key}")
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be an integer") from exc

    @staticmethod
    def _get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be a number") from exc

    @staticmethod
    def _get_bool(key: str, default: bool) -> bool:
        value = os.getenv(key)
        if value is None:
            return default
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise RuntimeError(f"Environment variable {key} must be a boolean")
