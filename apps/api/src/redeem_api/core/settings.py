from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./redeem.db"
    database_echo: bool = False

    # Application URLs
    api_base_url: str = "http://localhost:8000"

    # Internal API security
    admin_api_key: str = ""

    # Currency ledger (settlement gateway)
    currency_ledger_url: str = ""
    currency_ledger_api_key: str = ""
    currency_ledger_timeout_seconds: float = 20.0
    currency_ledger_max_attempts: int = 3

    # Redemption behavior
    redeem_custom_default_message: str = "Redeemed successfully"
    redeem_address_hex_length: int = 64

    # User sessions for the public redeem route
    redeem_user_auth_required: bool = True
    user_session_ttl_hours: int = 168

    # Pending record reconciliation
    redeem_reconciliation_worker_enabled: bool = False
    redeem_reconciliation_interval_seconds: int = 5 * 60
    redeem_reconciliation_pending_timeout_seconds: int = 15 * 60
    redeem_reconciliation_limit: int = 50
    redeem_reconciliation_trigger_label: str = "scheduler"

    # Job scheduler
    job_scheduler_enabled: bool = False
    job_schedule_path: str = "config/schedules.toml"

    @field_validator("currency_ledger_url", mode="before")
    @classmethod
    def _strip_ledger_url(cls, value: object) -> str:
        if value is None:
            return ""
        return str(value).strip().rstrip("/")

    @field_validator("currency_ledger_max_attempts", mode="before")
    @classmethod
    def _clamp_attempts(cls, value: object) -> int:
        try:
            attempts = int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 1
        return max(attempts, 1)


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
