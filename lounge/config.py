"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared across the lounge services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./lounge.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )
    display_timezone: str = Field(
        default="UTC",
        description="IANA timezone used to interpret naive instants coming from lounge terminals.",
    )
    booking_start_grace_minutes: int = Field(
        default=5, ge=0, description="How far in the past (minutes) a new booking may start"
    )
    store_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Default bound on lock waits and store I/O per operation"
    )
    availability_cache_ttl: int = Field(
        default=5, ge=0, description="TTL (s) for cached per-machine reservation snapshots"
    )
    next_booking_lookahead_minutes: Optional[int] = Field(
        default=None, gt=0, description="Only report a 'next' booking starting within this many minutes"
    )

    notifications_enabled: bool = Field(default=False, description="Publish reservation events to RabbitMQ")
    rabbitmq_host: str = Field(default="rabbitmq", description="RabbitMQ broker host")
    notification_queue: str = Field(default="reservations", description="Durable queue for reservation events")
    notification_failure_threshold: int = Field(default=5, description="Publish failures before the circuit opens")
    notification_recovery_timeout: int = Field(default=60, description="Seconds the notification circuit stays open")

    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="60/minute", description="Global rate limiting rule")
    booking_rate_limit: str = Field(default="20/minute", description="Rate limit for booking writes")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")

    machines_service_port: int = 8001
    reservations_service_port: int = 8002


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()
