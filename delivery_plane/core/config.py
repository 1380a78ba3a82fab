"""Runtime settings for the control plane."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Flag document (JSON or YAML); empty means start with no flags
    FLAG_CONFIG_PATH: str = ""

    # Canary control loop
    CANARY_TICK_INTERVAL_SECONDS: float = 30.0
    METRICS_QUERY_TIMEOUT_SECONDS: float = 5.0
    METRICS_HISTORY_LIMIT: int = 100
    # Finished executions kept for lookup; oldest evicted first
    CANARY_ARCHIVE_LIMIT: int = 100

    # Circuit breaker defaults applied to every (dependency, variant) pair
    BREAKER_FAILURE_THRESHOLD: int = 5
    BREAKER_OPEN_TIMEOUT_MS: int = 30000
    BREAKER_HALF_OPEN_TRIAL_LIMIT: int = 1

    ROUTING_STRATEGY: str = "sticky"  # sticky|random

    # Collaborators (optional)
    NOTIFICATION_WEBHOOK_URL: str = ""
    PROMETHEUS_URL: str = ""

    model_config = SettingsConfigDict(
        env_prefix="DELIVERY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
