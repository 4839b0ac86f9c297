"""
Pydantic models for device configuration, engine state and published totals.

Defines the device catalog loaded at startup (real meters and estimated
bulbs/switches), the per-device DeviceRecord the accrual engine keeps, the
AppliedDelta returned by every accrual, the Totals snapshot pushed to sinks,
and EngineState, the full serialisable state used for restart durability.

All energy values are Decimal kWh, all power values Decimal watts, and all
timestamps timezone-aware datetimes. Decimals serialise as JSON strings so
state round-trips through the store without loss.

CHANGELOG:
- 2026-10-10: Add EventResult for the event ingest API (STORY-113)
- 2026-10-09: Add DeviceBreakdown for the per-device report (STORY-112)
- 2026-10-03: Add EngineState for persistence (STORY-106)
- 2026-10-02: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

ZERO = Decimal("0")

# ---------------------------------------------------------------------------
# Device catalog (configuration)
# ---------------------------------------------------------------------------


class DeviceKind(StrEnum):
    """How a device's energy is obtained."""

    METERED = "metered"
    ESTIMATED = "estimated"


class MeterConfig(BaseModel):
    """A device reporting a cumulative energy counter.

    Attributes:
        device_id: Stable identifier (entity id on the live-read source).
        energy_unit: Unit of the reported counter; Wh readings are
            converted to kWh at the boundary.
    """

    device_id: str = Field(min_length=1)
    energy_unit: Literal["kWh", "Wh"] = "kWh"


class EstimatedConfig(BaseModel):
    """A bulb or switch whose power is estimated from configuration.

    Attributes:
        device_id: Stable identifier (entity id on the live-read source).
        standby_w: Power drawn while off, in watts.
        max_w: Power drawn while fully on, in watts. ``None`` means the
            device has not been configured and contributes nothing.
        scale_with_level: Interpolate between standby and max using the
            device's dimming level when on.
    """

    device_id: str = Field(min_length=1)
    standby_w: Decimal = Decimal("0.5")
    max_w: Decimal | None = None
    scale_with_level: bool = False


class DeviceCatalog(BaseModel):
    """Every tracked device, split by how its energy is obtained."""

    meters: list[MeterConfig] = Field(default_factory=list)
    estimated: list[EstimatedConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_device_ids(self) -> DeviceCatalog:
        """Reject a device id that appears more than once."""
        seen: set[str] = set()
        for device_id in [m.device_id for m in self.meters] + [
            e.device_id for e in self.estimated
        ]:
            if device_id in seen:
                raise ValueError(f"Duplicate device_id in catalog: '{device_id}'")
            seen.add(device_id)
        return self

    def device_ids(self) -> list[str]:
        """Return all configured device ids, meters first."""
        return [m.device_id for m in self.meters] + [e.device_id for e in self.estimated]


# ---------------------------------------------------------------------------
# Engine state
# ---------------------------------------------------------------------------


class DeviceRecord(BaseModel):
    """Per-device accrual state.

    Metered devices use ``last_cumulative_reading`` (``None`` until the first
    reading has been seen) and ``last_power_w``. Estimated devices use the
    configured standby/max powers and ``last_estimated_power_w``, the
    estimate valid for the interval that started at ``last_observation_ts``.
    """

    device_id: str
    kind: DeviceKind
    last_observation_ts: datetime | None = None

    last_cumulative_reading: Decimal | None = None
    energy_unit: Literal["kWh", "Wh"] = "kWh"
    last_power_w: Decimal = ZERO

    standby_power_w: Decimal = ZERO
    max_power_w: Decimal | None = None
    scale_with_level: bool = False
    last_estimated_power_w: Decimal = ZERO


class EngineState(BaseModel):
    """Everything the accrual engine must keep across a restart."""

    version: int = 1
    devices: dict[str, DeviceRecord] = Field(default_factory=dict)
    today_energy: dict[str, Decimal] = Field(default_factory=dict)
    month_energy: dict[str, Decimal] = Field(default_factory=dict)
    today_cost: Decimal = ZERO
    month_cost: Decimal = ZERO
    last_known_price: Decimal | None = None
    last_price_observed_at: datetime | None = None


class AppliedDelta(BaseModel):
    """Result of a single accrual call.

    Attributes:
        device_id: Device the delta was attributed to.
        energy_kwh: Energy added to the today/month buckets (never negative).
        price: Price applied to the delta, or ``None`` when no price was
            resolvable (no cost accrued).
        cost: Cost added to the today/month totals.
        reset: True when a regressing counter was treated as a reset.
    """

    device_id: str
    energy_kwh: Decimal = ZERO
    price: Decimal | None = None
    cost: Decimal = ZERO
    reset: bool = False


# ---------------------------------------------------------------------------
# Inbound events and outbound snapshots
# ---------------------------------------------------------------------------


class DeviceEvent(BaseModel):
    """A single attribute change delivered by the device event source.

    ``value`` is kept raw here; it is decoded by the normalizer when the
    service applies the event.
    """

    device_id: str = Field(min_length=1)
    attribute: str = Field(min_length=1)
    value: Any = None
    ts: datetime | None = None


class Totals(BaseModel):
    """Rounded, read-only view of the current totals."""

    today_energy: Decimal
    month_energy: Decimal
    today_energy_meters: Decimal
    today_energy_estimated: Decimal
    today_cost: Decimal
    month_cost: Decimal
    current_price: Decimal | None
    instantaneous_power: Decimal
    power_meters_w: Decimal
    power_estimated_w: Decimal
    currency: str
    label: str
    timestamp: datetime


class DeviceBreakdown(BaseModel):
    """One row of the per-device breakdown report."""

    device_id: str
    kind: DeviceKind
    today_energy: Decimal
    month_energy: Decimal
    power_w: Decimal
    standby_power_w: Decimal | None = None
    max_power_w: Decimal | None = None


class EventResult(BaseModel):
    """Outcome counts of one batch of inbound device events.

    Attributes:
        accepted: Events applied to the engine or the attribute store.
        ignored: Well-formed events for untracked devices, or carrying a
            value that could not be used.
        rejected: Malformed events (missing device id or attribute).
    """

    accepted: int = 0
    ignored: int = 0
    rejected: int = 0
