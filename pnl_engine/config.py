"""Engine configuration and environment helpers."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import PnLMethod

DEFAULT_TIMEZONE = "UTC"
DEFAULT_COINGECKO_BASE_URL = "https://api.coingecko.com/api/v3"


class EngineSettings(BaseSettings):
    """Configuration options for the P&L engine and its price gateway."""

    timezone: str = Field(default=DEFAULT_TIMEZONE, description="Timezone that defines calendar days.")
    default_method: PnLMethod = Field(default=PnLMethod.FIFO)
    include_fees: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    history_exact_lots: bool = Field(
        default=False,
        description="Value history with per-lot FIFO/LIFO positions instead of the running average cost.",
    )
    history_max_concurrency: int = Field(default=1, ge=1)

    coingecko_base_url: str = Field(default=DEFAULT_COINGECKO_BASE_URL)
    coingecko_api_key: str | None = Field(default=None)
    vs_currency: str = Field(default="usd")
    price_batch_size: int = Field(default=5, ge=1)
    price_batch_delay_seconds: float = Field(default=1.0, ge=0.0)
    rate_limit_backoff_seconds: float = Field(default=60.0, ge=0.0)
    rate_limit_max_retries: int = Field(default=3, ge=0)
    request_timeout_seconds: float = Field(default=10.0, gt=0.0)
    price_cache_ttl_seconds: float = Field(default=300.0, ge=0.0)

    telemetry_enabled: bool = Field(default=False)
    telemetry_service_name: str = Field(default="pnl-engine")
    telemetry_otlp_endpoint: str | None = Field(default=None)
    telemetry_otlp_insecure: bool = Field(default=True)
    telemetry_sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)

    model_config = SettingsConfigDict(env_prefix="PNL_ENGINE_", env_file=".env", env_file_encoding="utf-8")

    def dict_for_logging(self) -> dict[str, Any]:
        """Return a sanitized dict for logging purposes."""

        hidden = {"coingecko_api_key"}
        return {k: ("***" if k in hidden and v else v) for k, v in self.model_dump().items()}


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> EngineSettings:
    """Return cached engine settings with optional overrides."""

    if overrides:
        return EngineSettings(**overrides)
    return EngineSettings()


__all__ = [
    "EngineSettings",
    "DEFAULT_TIMEZONE",
    "DEFAULT_COINGECKO_BASE_URL",
    "get_settings",
]
