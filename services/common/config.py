from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_NAME = "pricing-service"


class ServiceSettings(BaseSettings):
    """Settings for the pricing service.

    Every field can be set through a ``SERVICE_``-prefixed environment variable
    or an ``.env`` file, e.g. ``SERVICE_PRICING_PREDICTION_URL``.
    """

    app_name: str = Field(default=DEFAULT_APP_NAME)
    environment: Literal["local", "dev", "staging", "prod"] = Field(default="local")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=8000)

    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)
    tracing_endpoint: str | None = Field(default=None)
    tracing_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)

    database_url: str | None = Field(default=None)
    redis_url: str | None = Field(default=None)
    kafka_bootstrap_servers: str | None = Field(default=None)

    # Optimal-price prediction backing the dynamic_ai strategy.
    pricing_prediction_url: str | None = Field(default=None)
    pricing_prediction_timeout_seconds: float = Field(default=2.0, gt=0.0)
    pricing_prediction_cache_ttl_seconds: int = Field(default=3600, ge=0)

    pricing_max_batch_size: int = Field(default=100, ge=1)
    pricing_default_currency: str = Field(default="USD", min_length=3, max_length=3)

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_prefix="SERVICE_", extra="ignore"
    )

    @field_validator("pricing_default_currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError("currency must be a three-letter ISO code")
        return value.upper()

    @field_validator("pricing_prediction_url", "redis_url", "tracing_endpoint")
    @classmethod
    def blank_as_unset(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @property
    def prediction_enabled(self) -> bool:
        return self.pricing_prediction_url is not None


@lru_cache
def get_settings() -> ServiceSettings:
    """Return cached service settings."""

    return ServiceSettings()
