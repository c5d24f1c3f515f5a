# backend/mathbridge/core/config.py
import logging
import os
from datetime import time
from pathlib import Path
from typing import Annotated, Any, List

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


_BACKEND_ROOT = Path(__file__).resolve().parents[2]

logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = _BACKEND_ROOT / ".env"
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


def _default_reschedule_start_times() -> List[time]:
    return [time(16, 0), time(17, 30), time(19, 0), time(20, 30)]


class Settings(BaseSettings):
    environment: str = Field(default="development", description="Deployment environment")
    log_level: str = Field(default="INFO", description="Root log level used by configure_logging")

    # Database
    database_url: str = Field(
        default=f"sqlite:///{_BACKEND_ROOT / 'mathbridge.db'}",
        description="SQLAlchemy URL of the scheduling store",
    )
    db_pool_size: int = Field(default=5, ge=1)
    db_max_overflow: int = Field(default=5, ge=0)
    db_pool_timeout: int = Field(default=5, ge=1, description="Seconds to wait for a pooled connection")
    db_statement_timeout_ms: int = Field(
        default=15000, ge=0, description="Postgres statement_timeout; 0 disables it"
    )

    # Matching
    default_max_distance_km: float = Field(
        default=15.0,
        ge=0,
        description="Fallback radius for offline searches that do not carry their own limit",
    )
    max_concurrent_bookings_limit: int = Field(default=10, ge=1)

    # Reschedule rules
    session_duration_minutes: int = Field(default=90, ge=1)
    reschedule_start_times: Annotated[List[time], NoDecode] = Field(
        default_factory=_default_reschedule_start_times,
        description="Allowed start times for parent reschedules; empty list disables the rule",
    )

    # Refunds
    twin_contract_price_multiplier: float = Field(default=1.6, gt=0)

    # Monitoring
    slow_operation_threshold_s: float = Field(default=1.0, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("reschedule_start_times", mode="before")
    @classmethod
    def _parse_start_times(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [token.strip() for token in value.split(",") if token.strip()]
        return value

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


settings = Settings()
