"""
Aggregator daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Scalar settings come from environment variables or a .env file; the device
catalog (which meters and which estimated bulbs/switches to track) lives in
a JSON file whose path is configured here.

CHANGELOG:
- 2026-10-10: Add read API and sink settings (STORY-113)
- 2026-10-08: Add rollover schedule and rounding settings (STORY-108)
- 2026-10-02: Initial creation (STORY-101)

TODO:
- None
"""

import logging
from datetime import time
from decimal import Decimal
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from aggregator.src.models import DeviceCatalog
from aggregator.src.schedule import ALLOWED_TICK_MINUTES, MAX_MONTHLY_DAY

logger = logging.getLogger(__name__)

PRICE_MODES = ("fixed", "device")


class AggregatorSettings(BaseSettings):
    """Energy aggregator configuration.

    All values are loaded from environment variables. Required variables
    must be set; optional variables have sensible defaults.

    Attributes:
        ha_base_url: Base URL of the live-read state API.
        ha_token: Bearer token for the live-read state API.
        read_timeout_s: Timeout in seconds for one live read.
        devices_file: JSON device catalog path.
        currency: Currency code shown with costs.
        price_mode: ``fixed`` or ``device``; anything else means ``fixed``.
        fixed_price: Price per kWh in fixed mode.
        price_device: Entity id of the price device (device mode).
        price_attribute: Attribute of the price device carrying the price;
            ``state`` (the default) uses the entity state, where REST price
            sensors report the price; attribute names such as
            ``currentPrice`` read that attribute instead.
        extra_cost_per_kwh: Surcharge (taxes, fees) added to every price.
        tick_minutes: Periodic accrual interval (1, 5 or 15).
        daily_rollover_at: Local time of the daily reset.
        monthly_rollover_day: Day of month (1..28) of the monthly reset.
        monthly_rollover_at: Local time of the monthly reset.
        timezone: IANA time zone for rollover times.
        decimals_kwh: Published energy decimals (0..6).
        decimals_cost: Published cost decimals (0..4).
        also_track_power: Follow meters' instantaneous power.
        push_on_tick: Publish totals after every tick, not only on events.
        summary_label: Label carried by published totals.
        summary_path: File the summary sink writes.
        state_path: SQLite database holding the persisted engine state.
        health_path: Health JSON file.
        sink_url: Optional HTTPS endpoint receiving totals.
        sink_token: Bearer token for the HTTPS sink.
        api_host: Bind address of the event/read API.
        api_port: Port of the event/read API.
        api_tokens: Comma-separated ``token:client`` pairs accepted by the API.
        max_events_per_request: Largest accepted event batch.
        log_level: Root log level (DEBUG, INFO, WARNING, ...).
    """

    ha_base_url: str
    ha_token: str
    read_timeout_s: float = 5.0
    devices_file: str = "/data/devices.json"

    currency: str = "SEK"
    price_mode: str = "fixed"
    fixed_price: Decimal | None = Decimal("1.0")
    price_device: str = ""
    price_attribute: str = "state"
    extra_cost_per_kwh: Decimal = Decimal("0")

    tick_minutes: int = 1
    daily_rollover_at: time = time(0, 0)
    monthly_rollover_day: int = 1
    monthly_rollover_at: time = time(0, 5)
    timezone: str = "UTC"

    decimals_kwh: int = 3
    decimals_cost: int = 2

    also_track_power: bool = False
    push_on_tick: bool = True
    summary_label: str = "Energy Summary"

    summary_path: str = "/data/summary.json"
    state_path: str = "/data/state.db"
    health_path: str = "/data/health.json"

    sink_url: str = ""
    sink_token: str = ""

    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_tokens: str = ""
    max_events_per_request: int = 1000

    log_level: str = "INFO"

    @field_validator("ha_base_url")
    @classmethod
    def ha_base_url_must_be_http(cls, v: str) -> str:
        """Validate the live-read URL scheme and drop a trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"HA_BASE_URL must start with http:// or https:// (got: '{v[:20]}...')")
        return v.rstrip("/")

    @field_validator("read_timeout_s")
    @classmethod
    def read_timeout_must_be_positive(cls, v: float) -> float:
        """Validate the live-read timeout is positive."""
        if v <= 0:
            raise ValueError("READ_TIMEOUT_S must be > 0")
        return v

    @field_validator("price_mode", mode="before")
    @classmethod
    def normalize_price_mode(cls, v: object) -> str:
        """Lower-case the price mode; unknown modes fall back to ``fixed``."""
        mode = str(v).strip().lower()
        if mode not in PRICE_MODES:
            logger.warning("Unknown PRICE_MODE %r; falling back to 'fixed'", v)
            return "fixed"
        return mode

    @field_validator("tick_minutes")
    @classmethod
    def tick_minutes_must_be_allowed(cls, v: int) -> int:
        """Validate the tick interval is one of 1, 5 or 15 minutes."""
        if v not in ALLOWED_TICK_MINUTES:
            raise ValueError(f"TICK_MINUTES must be one of {ALLOWED_TICK_MINUTES}")
        return v

    @field_validator("monthly_rollover_day")
    @classmethod
    def monthly_day_must_exist_every_month(cls, v: int) -> int:
        """Validate the monthly rollover day exists in every month."""
        if v < 1 or v > MAX_MONTHLY_DAY:
            raise ValueError(f"MONTHLY_ROLLOVER_DAY must be between 1 and {MAX_MONTHLY_DAY}")
        return v

    @field_validator("timezone")
    @classmethod
    def timezone_must_be_known(cls, v: str) -> str:
        """Validate the time zone is a known IANA name."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"TIMEZONE '{v}' is not a known IANA time zone") from None
        return v

    @field_validator("decimals_kwh")
    @classmethod
    def decimals_kwh_must_be_valid(cls, v: int) -> int:
        """Validate energy decimals are between 0 and 6."""
        if v < 0 or v > 6:
            raise ValueError("DECIMALS_KWH must be between 0 and 6")
        return v

    @field_validator("decimals_cost")
    @classmethod
    def decimals_cost_must_be_valid(cls, v: int) -> int:
        """Validate cost decimals are between 0 and 4."""
        if v < 0 or v > 4:
            raise ValueError("DECIMALS_COST must be between 0 and 4")
        return v

    @field_validator("sink_url")
    @classmethod
    def sink_url_must_be_https(cls, v: str) -> str:
        """Validate that the sink URL, when set, uses HTTPS."""
        if v and not v.startswith("https://"):
            raise ValueError(f"SINK_URL must use HTTPS (got: '{v[:20]}...')")
        return v.rstrip("/")

    @field_validator("api_port")
    @classmethod
    def api_port_must_be_valid(cls, v: int) -> int:
        """Validate API port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("API_PORT must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def _device_mode_needs_price_device(self) -> "AggregatorSettings":
        """Device price mode requires a price device."""
        if self.price_mode == "device" and not self.price_device:
            raise ValueError("PRICE_DEVICE must be set when PRICE_MODE is 'device'")
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def load_catalog(path: str) -> DeviceCatalog:
    """Load and validate the JSON device catalog.

    A missing file yields an empty catalog so the daemon can start before
    any device is configured.

    Raises:
        pydantic.ValidationError: If the file content is not a valid catalog.
    """
    catalog_path = Path(path)
    if not catalog_path.exists():
        logger.warning("Device catalog %s not found; tracking no devices", path)
        return DeviceCatalog()
    return DeviceCatalog.model_validate_json(catalog_path.read_text(encoding="utf-8"))
