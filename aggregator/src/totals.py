"""
Totals aggregator: read-only, rounded views of the engine state.

``snapshot`` produces the Totals published to sinks and served by the read
API; ``breakdown`` produces the per-device report. Neither mutates the
engine, so calling them twice without intervening accruals gives identical
results.

Rounding happens here and only here, half-up:
- energy to ``decimals_kwh`` places
- cost to ``decimals_cost`` places
- price to ``max(decimals_cost, 3)`` places
- power to 1 place

Cost totals are read from the engine's running accumulators. They are never
recomputed from energy, which would price past consumption at today's rate.

CHANGELOG:
- 2026-10-09: Add per-device breakdown (STORY-112)
- 2026-10-07: Split today's energy and power into meters vs estimated
- 2026-10-06: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from aggregator.src.models import ZERO, DeviceBreakdown, DeviceKind, DeviceRecord, Totals

if TYPE_CHECKING:
    from aggregator.src.engine import AccrualEngine

MIN_PRICE_DECIMALS = 3
POWER_DECIMALS = 1


def quantize(value: Decimal, places: int) -> Decimal:
    """Round *value* half-up to *places* decimal places."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def _power_w(record: DeviceRecord) -> Decimal:
    if record.kind == DeviceKind.METERED:
        return record.last_power_w
    return record.last_estimated_power_w


def snapshot(
    engine: AccrualEngine,
    *,
    now: datetime,
    decimals_kwh: int = 3,
    decimals_cost: int = 2,
    currency: str = "SEK",
    label: str = "Energy Summary",
) -> Totals:
    """Build the current Totals from *engine*.

    The current price is resolved fresh from the engine's price source, not
    taken from the cache used for estimated intervals.
    """
    state = engine.state

    today_meters = ZERO
    today_estimated = ZERO
    for device_id, energy in state.today_energy.items():
        record = state.devices.get(device_id)
        if record is not None and record.kind == DeviceKind.ESTIMATED:
            today_estimated += energy
        else:
            today_meters += energy

    power_meters = ZERO
    power_estimated = ZERO
    for record in state.devices.values():
        if record.kind == DeviceKind.METERED:
            power_meters += record.last_power_w
        else:
            power_estimated += record.last_estimated_power_w

    price = engine.price_source.resolve_effective_price()
    price_places = max(decimals_cost, MIN_PRICE_DECIMALS)

    return Totals(
        today_energy=quantize(today_meters + today_estimated, decimals_kwh),
        month_energy=quantize(sum(state.month_energy.values(), ZERO), decimals_kwh),
        today_energy_meters=quantize(today_meters, decimals_kwh),
        today_energy_estimated=quantize(today_estimated, decimals_kwh),
        today_cost=quantize(state.today_cost, decimals_cost),
        month_cost=quantize(state.month_cost, decimals_cost),
        current_price=None if price is None else quantize(price, price_places),
        instantaneous_power=quantize(power_meters + power_estimated, POWER_DECIMALS),
        power_meters_w=quantize(power_meters, POWER_DECIMALS),
        power_estimated_w=quantize(power_estimated, POWER_DECIMALS),
        currency=currency,
        label=label,
        timestamp=now,
    )


def breakdown(engine: AccrualEngine, *, decimals_kwh: int = 3) -> list[DeviceBreakdown]:
    """Per-device energy and power, sorted by device id.

    Only tracked devices are listed; energy of a device removed earlier in
    the day still counts in ``snapshot`` but has no row here.
    """
    state = engine.state
    rows: list[DeviceBreakdown] = []
    for device_id in sorted(state.devices):
        record = state.devices[device_id]
        estimated = record.kind == DeviceKind.ESTIMATED
        rows.append(
            DeviceBreakdown(
                device_id=device_id,
                kind=record.kind,
                today_energy=quantize(state.today_energy.get(device_id, ZERO), decimals_kwh),
                month_energy=quantize(state.month_energy.get(device_id, ZERO), decimals_kwh),
                power_w=quantize(_power_w(record), POWER_DECIMALS),
                standby_power_w=record.standby_power_w if estimated else None,
                max_power_w=record.max_power_w if estimated else None,
            )
        )
    return rows
