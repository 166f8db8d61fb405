"""Application settings loaded from environment variables.

Uses Pydantic Settings v2 for validated, type-safe configuration.
All credentials and secrets are accessed exclusively through this module;
never call ``os.getenv`` directly elsewhere in the codebase.

Usage::

    from stream_speculator.config.settings import get_settings

    settings = get_settings()
    redis_url = settings.redis_url
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide configuration backed by environment variables and an optional .env file.

    Every field has a development-friendly default so that the local stack
    (in-memory store, local timer backend) starts with no environment at all.
    Production deployments must supply the Twitch secrets and switch both
    backends to their Redis / Celery implementations.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Redis
    # ------------------------------------------------------------------

    redis_url: str = "redis://localhost:6379/0"
    """Redis connection URL for the document store (chain records, channels, predictions)."""

    # ------------------------------------------------------------------
    # Celery task queue
    # ------------------------------------------------------------------

    celery_broker_url: str = "redis://localhost:6379/1"
    """Redis URL used as Celery's message broker (database 1 to isolate from the store)."""

    celery_result_backend: str = "redis://localhost:6379/2"
    """Redis URL used to store Celery task results (database 2)."""

    # ------------------------------------------------------------------
    # Backend selection
    # ------------------------------------------------------------------

    scheduler_backend: Literal["local", "celery"] = "local"
    """Delivery backend for scheduled tasks.

    ``"local"`` fires tasks from in-process timers (development only; pending
    timers are lost on restart).  ``"celery"`` enqueues delayed messages on the
    Celery broker.
    """

    store_backend: Literal["redis", "memory"] = "redis"
    """Document store implementation.  ``"memory"`` is for development and tests."""

    is_offline: bool = False
    """Skip calls that need a publicly reachable webhook callback (EventSub registration)."""

    # ------------------------------------------------------------------
    # Twitch
    # ------------------------------------------------------------------

    twitch_client_id: str = ""
    """Twitch application Client ID."""

    twitch_client_secret: str = ""
    """Twitch application Client Secret, used for the client-credentials grant."""

    twitch_webhook_secret: str = ""
    """Shared secret for EventSub HMAC signatures.  10-100 ASCII characters."""

    twitch_webhook_callback: str = ""
    """Public HTTPS URL of ``POST /webhooks/twitch`` registered with EventSub."""

    twitch_pubsub_token: str = ""
    """OAuth token sent with PubSub ``LISTEN`` frames.  Falls back to the app access token."""

    webhook_max_age_seconds: int = 600
    """Notifications whose message timestamp is older than this are rejected as replays."""

    # ------------------------------------------------------------------
    # Prediction lifecycle
    # ------------------------------------------------------------------

    create_prediction_delay_minutes: int = 10
    """Minutes after a stream goes online before the internal prediction is created."""

    prediction_lock_minutes: int = 5
    """Minutes an internal prediction stays open for bets before it locks."""

    # ------------------------------------------------------------------
    # Application behaviour
    # ------------------------------------------------------------------

    app_name: str = "Stream Speculator"
    """Human-readable application name shown in the OpenAPI docs."""

    debug: bool = False
    """Enable FastAPI debug mode and verbose error responses.  Never True in production."""

    log_level: str = "INFO"
    """Logging verbosity.  One of: DEBUG, INFO, WARNING, ERROR, CRITICAL."""


@lru_cache
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    Uses ``functools.lru_cache`` so that Pydantic Settings reads the environment
    and .env file exactly once per process lifetime.  In tests, call
    ``get_settings.cache_clear()`` after patching environment variables.

    Returns:
        Settings: The validated settings object.
    """
    return Settings()
