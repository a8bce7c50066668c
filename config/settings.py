"""Pydantic Settings: typed configuration with .env auto-loading."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    service_port: int = 5000
    cors_origins: list[str] = ["*"]
    debug: bool = False
    log_level: str = "INFO"

    # ── Document API ─────────────────────────────────────────
    documents_api_base_url: str = "http://localhost:3333"
    documents_api_prefix: str = "/api/v1"
    documents_api_timeout: int = 15  # seconds, transport default for every request
    documents_access_token: str = ""  # service-account bearer token

    # Transport retry budget (network errors / 5xx). Fixed delay, no backoff.
    transport_max_attempts: int = 3
    transport_retry_delay: float = 0.5

    # ── Status polling ───────────────────────────────────────
    status_poll_interval: float = 10.0  # seconds between polls while PENDING/PROCESSING
    status_poll_max_polls: int = 0  # 0 = poll until terminal or teardown

    # COMPLETED status results are cached per protection level (seconds)
    status_ttl_none: int = 60
    status_ttl_watermark: int = 1800
    status_ttl_full: int = 3000  # aligned with signed URL lifetime

    # ── Access grants ────────────────────────────────────────
    access_ttl_watermark: int = 1800
    access_ttl_full: int = 3000  # always clamped by the grant's expiresAt

    # ── Access cache backend ─────────────────────────────────
    access_cache_type: str = "memory"  # "memory" or "redis"
    redis_url: str = ""  # e.g. redis://:password@host:6379/0


@lru_cache
def get_settings() -> Settings:
    """Singleton accessor for application settings."""
    return Settings()
