# vamo/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Database (recipients, positions, preferences live in the main backend DB)
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 10
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 15000

    # Security
    dispatch_api_token: str | None = None  # Bearer token for the request-handling layer
    metrics_token: str | None = None  # Separate token for /metrics (falls back to dispatch_api_token)
    allowed_origins: list[str] = ["*"]

    # Expo Push API
    expo_push_send_url: str = "https://exp.host/--/api/v2/push/send"
    expo_push_receipts_url: str = "https://exp.host/--/api/v2/push/getReceipts"
    expo_access_token: str | None = None  # Optional: enables "enhanced push security" on the Expo project

    # Gateway limits (Expo: 100 messages per send, 300 ids per receipt lookup)
    push_send_chunk_limit: int = 100
    push_receipt_chunk_limit: int = 300
    push_request_timeout_seconds: float = 25.0

    # Dispatch defaults
    dispatch_max_candidates: int = 5
    dispatch_freshness_window_seconds: int = 600  # 10 minutes since last GPS fix
    dispatch_deadline_seconds: float = 20.0  # Chunks still in flight after this are reported as timeout
    receipt_window_seconds: int = 86400  # Expo keeps receipts for ~24h

    # Retry policy defaults (applied only when a caller asks for a retry)
    retry_max_attempts: int = 1
    retry_backoff_seconds: str = "5,15"  # Comma-separated; last value repeats

    # Monitoring
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def retry_backoff_schedule(self) -> tuple[float, ...]:
        """Parsed ``retry_backoff_seconds`` (empty entries ignored)."""
        return tuple(
            float(part) for part in self.retry_backoff_seconds.split(",") if part.strip()
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("dispatch_api_token", self.dispatch_api_token),
            ("database_url or pghost", self.database_url or self.pghost),
        ]

        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.dispatch_api_token:
        warnings.append("dispatch_api_token is not set (notification endpoints will refuse requests).")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if not s.expo_access_token:
        warnings.append("expo_access_token is not set (fine unless push security is enabled on the Expo project).")

    if s.push_send_chunk_limit > 100:
        warnings.append(
            f"push_send_chunk_limit={s.push_send_chunk_limit} exceeds the Expo limit of 100; "
            "whole chunks will be rejected."
        )
    if s.push_receipt_chunk_limit > 1000:
        warnings.append(
            f"push_receipt_chunk_limit={s.push_receipt_chunk_limit} exceeds the Expo limit of 1000."
        )

    if s.dispatch_deadline_seconds <= 0:
        warnings.append(
            f"dispatch_deadline_seconds={s.dispatch_deadline_seconds} is not positive; "
            "every dispatch and receipt check will be rejected."
        )

    try:
        s.retry_backoff_schedule
    except ValueError:
        warnings.append(f"retry_backoff_seconds is not a list of numbers: {s.retry_backoff_seconds!r}")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    # Logging is not configured yet at import time.
    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
