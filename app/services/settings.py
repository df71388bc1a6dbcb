from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os

from app.domain.lifecycle import LyricsLifecycle, RetryQueueLifecycle

DEFAULT_LLM_MODEL = "gpt-4o-mini"
DEFAULT_SYNTHESIS_MODEL = "V4_5PLUS"
DEFAULT_CALLBACK_URL = "http://localhost:8000/callbacks/synthesis"

logger = logging.getLogger("runtime")


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclass(frozen=True)
class ProviderSettings:
    url: str | None = None
    api_key: str | None = None

    @property
    def enabled(self) -> bool:
        return self.url is not None


@dataclass(frozen=True)
class AppSettings:
    database_url: str | None = None
    payment_webhook_secret: str | None = None
    internal_service_secret: str | None = None
    llm: ProviderSettings = field(default_factory=ProviderSettings)
    llm_model: str = DEFAULT_LLM_MODEL
    synthesis: ProviderSettings = field(default_factory=ProviderSettings)
    synthesis_model: str = DEFAULT_SYNTHESIS_MODEL
    synthesis_callback_url: str = DEFAULT_CALLBACK_URL
    email: ProviderSettings = field(default_factory=ProviderSettings)
    email_sender: str = "no-reply@localhost"
    storage: ProviderSettings = field(default_factory=ProviderSettings)
    media_bucket_url: str = "memory://media"
    release_delay_days: int = 7
    retry_queue: RetryQueueLifecycle = field(default_factory=RetryQueueLifecycle)
    lyrics: LyricsLifecycle = field(default_factory=LyricsLifecycle)


def app_settings_from_env() -> AppSettings:
    settings = AppSettings(
        database_url=_env_str("DATABASE_URL"),
        payment_webhook_secret=_env_str("PAYMENT_WEBHOOK_SECRET"),
        internal_service_secret=_env_str("INTERNAL_SERVICE_SECRET"),
        llm=ProviderSettings(url=_env_str("LLM_API_URL"), api_key=_env_str("LLM_API_KEY")),
        llm_model=_env_str("LLM_MODEL", DEFAULT_LLM_MODEL) or DEFAULT_LLM_MODEL,
        synthesis=ProviderSettings(url=_env_str("SYNTHESIS_API_URL"), api_key=_env_str("SYNTHESIS_API_KEY")),
        synthesis_model=_env_str("SYNTHESIS_MODEL", DEFAULT_SYNTHESIS_MODEL) or DEFAULT_SYNTHESIS_MODEL,
        synthesis_callback_url=_env_str("SYNTHESIS_CALLBACK_URL", DEFAULT_CALLBACK_URL) or DEFAULT_CALLBACK_URL,
        email=ProviderSettings(url=_env_str("EMAIL_API_URL"), api_key=_env_str("EMAIL_API_KEY")),
        email_sender=_env_str("EMAIL_SENDER", "no-reply@localhost") or "no-reply@localhost",
        storage=ProviderSettings(url=_env_str("STORAGE_API_URL"), api_key=_env_str("STORAGE_API_KEY")),
        media_bucket_url=_env_str("MEDIA_BUCKET_URL", "memory://media") or "memory://media",
        release_delay_days=env_int("SONG_RELEASE_DELAY_DAYS", 7),
        retry_queue=RetryQueueLifecycle(
            batch_size=env_int("RETRY_QUEUE_BATCH_SIZE", 50),
            lease_seconds=env_int("RETRY_QUEUE_LEASE_SECONDS", 300),
            item_delay_ms=env_int("RETRY_QUEUE_ITEM_DELAY_MS", 100),
        ),
    )
    if settings.payment_webhook_secret is None:
        logger.error(
            "PAYMENT_WEBHOOK_SECRET is not configured",
            extra={"component": "services.settings", "error_code": "fatal_configuration"},
        )
    return settings
