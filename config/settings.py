"""Pydantic Settings: typed configuration with .env auto-loading."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from config.llm_config import LLMConfig


class Settings(BaseSettings):
    """Application configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    service_port: int = 8000
    cors_origins: list[str] = ["*"]
    debug: bool = False
    log_level: str = "INFO"

    # ── Persistence ──────────────────────────────────────────
    store_backend: str = "memory"  # "memory" or "supabase"
    supabase_url: str = ""
    supabase_service_key: str = ""
    supabase_timeout: int = 15  # seconds

    # ── Auth ─────────────────────────────────────────────────
    jwt_secret: str = "dev-secret"
    jwt_algorithm: str = "HS256"
    principal_cache_ttl: int = 300  # seconds

    # ── Realtime ─────────────────────────────────────────────
    realtime_backend: str = "local"  # "local" or "redis"
    redis_url: str = ""  # e.g. redis://:password@host:6379/0
    realtime_channel_prefix: str = "doubts:rt:"

    # ── AI answers ───────────────────────────────────────────
    ai_model: str = "anthropic/claude-3-sonnet-20240229"
    ai_max_tokens: int = 2000
    ai_temperature: float | None = None
    ai_timeout: float = 30.0
    # The model gives no native confidence signal; this is attached as-is.
    ai_confidence_score: float = 0.85
    max_concurrent_llm: int = 10
    anthropic_api_key: str = ""
    openai_api_key: str = ""

    # ── Auto-assignment ──────────────────────────────────────
    auto_assign_timeout: float = 5.0

    # ── Notifications ────────────────────────────────────────
    notification_retention_days: int = 30
    notification_purge_interval: int = 3600  # seconds

    # ── Helpers ───────────────────────────────────────────────

    def get_ai_llm_config(self) -> LLMConfig:
        """Build an :class:`LLMConfig` for doubt answers from .env defaults."""
        return LLMConfig(
            model=self.ai_model,
            max_tokens=self.ai_max_tokens,
            temperature=self.ai_temperature,
        )


@lru_cache
def get_settings() -> Settings:
    """Singleton accessor for application settings."""
    return Settings()
