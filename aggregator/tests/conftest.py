"""
Shared test fixtures for aggregator tests.

Provides environment variable fixtures for AggregatorSettings tests and a
few small builders for engine-level tests. All aggregator env vars are
cleaned before each test to ensure isolation.

CHANGELOG:
- 2026-10-09: Add engine builders for accrual tests (STORY-106)
- 2026-10-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal

import pytest

from aggregator.src.attributes import AttributeStore
from aggregator.src.engine import AccrualEngine
from aggregator.src.price import FixedPriceSource

# All AggregatorSettings environment variable names, used for cleanup.
_ALL_AGGREGATOR_ENV_VARS = (
    "HA_BASE_URL",
    "HA_TOKEN",
    "READ_TIMEOUT_S",
    "DEVICES_FILE",
    "CURRENCY",
    "PRICE_MODE",
    "FIXED_PRICE",
    "PRICE_DEVICE",
    "PRICE_ATTRIBUTE",
    "EXTRA_COST_PER_KWH",
    "TICK_MINUTES",
    "DAILY_ROLLOVER_AT",
    "MONTHLY_ROLLOVER_DAY",
    "MONTHLY_ROLLOVER_AT",
    "TIMEZONE",
    "DECIMALS_KWH",
    "DECIMALS_COST",
    "ALSO_TRACK_POWER",
    "PUSH_ON_TICK",
    "SUMMARY_LABEL",
    "SUMMARY_PATH",
    "STATE_PATH",
    "HEALTH_PATH",
    "SINK_URL",
    "SINK_TOKEN",
    "API_HOST",
    "API_PORT",
    "API_TOKENS",
    "MAX_EVENTS_PER_REQUEST",
    "LOG_LEVEL",
)



@pytest.fixture(autouse=True)
def _clean_aggregator_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all aggregator env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_AGGREGATOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set every AggregatorSettings environment variable."""
    env = {
        "HA_BASE_URL": "http://homeassistant.local:8123/",
        "HA_TOKEN": "ha-long-lived-token",
        "READ_TIMEOUT_S": "3",
        "DEVICES_FILE": "/tmp/devices.json",
        "CURRENCY": "EUR",
        "PRICE_MODE": "device",
        "FIXED_PRICE": "1.25",
        "PRICE_DEVICE": "sensor.nordpool",
        "PRICE_ATTRIBUTE": "current_price",
        "EXTRA_COST_PER_KWH": "0.45",
        "TICK_MINUTES": "5",
        "DAILY_ROLLOVER_AT": "00:00",
        "MONTHLY_ROLLOVER_DAY": "15",
        "MONTHLY_ROLLOVER_AT": "00:05",
        "TIMEZONE": "Europe/Stockholm",
        "DECIMALS_KWH": "2",
        "DECIMALS_COST": "3",
        "ALSO_TRACK_POWER": "true",
        "PUSH_ON_TICK": "false",
        "SUMMARY_LABEL": "House",
        "SUMMARY_PATH": "/tmp/summary.json",
        "STATE_PATH": "/tmp/state.db",
        "HEALTH_PATH": "/tmp/health.json",
        "SINK_URL": "https://energy.example.com/",
        "SINK_TOKEN": "sink-token",
        "API_HOST": "127.0.0.1",
        "API_PORT": "9000",
        "API_TOKENS": "tok-a:bridge",
        "MAX_EVENTS_PER_REQUEST": "50",
        "LOG_LEVEL": "DEBUG",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones)."""
    env = {
        "HA_BASE_URL": "http://homeassistant.local:8123",
        "HA_TOKEN": "ha-token",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def attributes() -> AttributeStore:
    return AttributeStore()


@pytest.fixture()
def make_engine(attributes: AttributeStore) -> Callable[..., AccrualEngine]:
    """Factory for an AccrualEngine reading from the shared attribute store.

    ``price`` may be a Decimal, a string or None; ``price_source`` overrides it.
    """

    def _make(price: Decimal | str | None = "1.0", **kwargs: object) -> AccrualEngine:
        source = kwargs.pop("price_source", None)
        if source is None:
            source = FixedPriceSource(None if price is None else Decimal(price))
        return AccrualEngine(price_source=source, reader=attributes, **kwargs)

    return _make
