"""Application settings loaded from environment variables."""

import sys
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
ENV_CANDIDATES = [BASE_DIR / ".env", BASE_DIR.parent / ".env"]
DEFAULT_ADMIN_KEY = "change_me"


def _load_env_file() -> None:
    """Load the optional .env file when present."""
    for env_path in ENV_CANDIDATES:
        if env_path.exists():
            load_dotenv(env_path, override=False)


_load_env_file()


class DatabaseSettings(BaseModel):
    """Configuration for the transcript and profile database."""

    url: str = "postgresql+asyncpg://postgres:postgres@db:5432/postgres"
    echo: bool = False


class RedisSettings(BaseModel):
    """Configuration for the Redis counter store."""

    url: str = "redis://redis:6379/0"
    health_check_interval: int = 30


class QuotaSettings(BaseModel):
    """Message ceilings and counter store behaviour."""

    daily_limit: int = Field(200, gt=0)
    hourly_limit: int = Field(50, gt=0)
    cache_ttl_seconds: float = Field(3.0, ge=0)
    store_timeout_seconds: float = Field(0.5, gt=0)
    store_retry_seconds: float = Field(30.0, ge=0)


class PersonaSettings(BaseModel):
    """Who the assistant speaks for."""

    name: str = "Alex"
    profile: str = ""
    contact_email: Optional[str] = None


class Settings(BaseSettings):
    """Top-level API configuration."""

    model_config = SettingsConfigDict(env_prefix="", env_file=None, extra="ignore")

    environment: str = Field("development", alias="APP_ENV")
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8008, alias="API_PORT")
    log_level: str = Field("INFO", alias="APP_LOG_LEVEL")
    admin_api_key: str = Field(DEFAULT_ADMIN_KEY, alias="ADMIN_API_KEY")

    database_url: Optional[str] = Field(None, alias="DATABASE_URL")
    redis_url: Optional[str] = Field(None, alias="REDIS_URL")
    database: DatabaseSettings = DatabaseSettings()
    redis: RedisSettings = RedisSettings()

    openai_api_key: Optional[str] = Field(None, alias="OPENAI_API_KEY")
    openai_model: str = Field("gpt-4o-mini", alias="OPENAI_MODEL")
    openai_timeout_seconds: float = Field(30.0, gt=0, alias="OPENAI_TIMEOUT_SECONDS")
    max_tool_rounds: int = Field(5, gt=0, alias="MAX_TOOL_ROUNDS")

    daily_message_limit: int = Field(200, gt=0, alias="DAILY_MESSAGE_LIMIT")
    hourly_message_limit: int = Field(50, gt=0, alias="HOURLY_MESSAGE_LIMIT")
    quota_cache_ttl_seconds: float = Field(3.0, ge=0, alias="QUOTA_CACHE_TTL_SECONDS")
    counter_store_timeout_seconds: float = Field(0.5, gt=0, alias="COUNTER_STORE_TIMEOUT_SECONDS")
    counter_store_retry_seconds: float = Field(30.0, ge=0, alias="COUNTER_STORE_RETRY_SECONDS")
    quota: QuotaSettings = QuotaSettings()

    persona_name: str = Field("Alex", alias="PERSONA_NAME")
    persona_profile: str = Field("", alias="PERSONA_PROFILE")
    persona_contact_email: Optional[str] = Field(None, alias="PERSONA_CONTACT_EMAIL")
    persona: PersonaSettings = PersonaSettings()

    geoip_database_path: Optional[str] = Field(None, alias="GEOIP_DATABASE_PATH")

    @model_validator(mode="after")
    def _apply_overrides(self) -> "Settings":
        if self.database_url:
            self.database = DatabaseSettings(url=self.database_url, echo=self.database.echo)

        if self.redis_url:
            self.redis = RedisSettings(
                url=self.redis_url,
                health_check_interval=self.redis.health_check_interval,
            )

        self.quota = QuotaSettings(
            daily_limit=self.daily_message_limit,
            hourly_limit=self.hourly_message_limit,
            cache_ttl_seconds=self.quota_cache_ttl_seconds,
            store_timeout_seconds=self.counter_store_timeout_seconds,
            store_retry_seconds=self.counter_store_retry_seconds,
        )
        self.persona = PersonaSettings(
            name=self.persona_name,
            profile=self.persona_profile,
            contact_email=self.persona_contact_email,
        )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    try:
        settings_obj = Settings()
    except ValidationError as exc:
        logger.error(
            "configuration_validation_failed",
            error="validation_error",
            details=exc.errors(),
        )
        sys.exit(1)

    missing = _collect_missing_env(settings_obj)
    if missing:
        logger.error(
            "configuration_validation_failed",
            error="missing_environment",
            missing_envs=missing,
        )
        sys.exit(1)

    return settings_obj


def _collect_missing_env(settings_obj: Settings) -> list[str]:
    # Development and test runs work against fakes; only production is strict.
    if not settings_obj.is_production:
        return []

    missing: list[str] = []
    if not settings_obj.openai_api_key:
        missing.append("OPENAI_API_KEY")
    if settings_obj.admin_api_key == DEFAULT_ADMIN_KEY:
        missing.append("ADMIN_API_KEY")
    if not settings_obj.database_url:
        missing.append("DATABASE_URL")
    if not settings_obj.redis_url:
        missing.append("REDIS_URL")
    return missing


settings = get_settings()
