import os
from datetime import datetime, timedelta, timezone

import pytest

from delivery_plane.core.config import reset_settings_cache


# List of environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "DELIVERY_LOG_LEVEL",
    "DELIVERY_LOG_JSON",
    "DELIVERY_FLAG_CONFIG_PATH",
    "DELIVERY_CANARY_TICK_INTERVAL_SECONDS",
    "DELIVERY_METRICS_QUERY_TIMEOUT_SECONDS",
    "DELIVERY_BREAKER_FAILURE_THRESHOLD",
    "DELIVERY_BREAKER_OPEN_TIMEOUT_MS",
    "DELIVERY_ROUTING_STRATEGY",
    "DELIVERY_NOTIFICATION_WEBHOOK_URL",
    "DELIVERY_PROMETHEUS_URL",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables and cached settings between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    reset_settings_cache()
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        reset_settings_cache()


class FakeClock:
    """Manually advanced clock; ``monotonic()`` in seconds, ``now()`` in UTC."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self._now = start
        self._mono = 1000.0

    def monotonic(self) -> float:
        return self._mono

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0.0, ms: float = 0.0) -> None:
        delta = seconds + ms / 1000.0
        self._mono += delta
        self._now += timedelta(seconds=delta)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def flag_document() -> dict:
    return {
        "flags": [
            {
                "key": "new-checkout",
                "enabled": False,
                "rollout_percentage": 25,
                "allowed_environments": ["staging", "production"],
                "user_segments": ["beta"],
                "explicit_user_ids": ["qa-1"],
                "variants": {"control": 50, "treatment": 50},
            },
            {"key": "search-v2", "enabled": True, "allowed_environments": ["*"]},
            {"key": "dark-mode", "enabled": False, "allowed_environments": ["development"]},
        ]
    }
