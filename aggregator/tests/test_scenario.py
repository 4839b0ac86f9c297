"""
End-to-end accrual scenarios through EnergyService.

Each test drives the service with device events, ticks and rollovers the
way the daemon does, then checks the published numbers computed by hand:
- TOU pricing of successive meter deltas.
- Counter reset tolerance.
- Level-scaled estimated power over one hour.
- Daily rollover isolation.
- Snapshot idempotence.
- Accrual while no price is available.
- Non-negative, non-decreasing totals between rollovers.
- One simulated hour with a meter, an on/off bulb and a dimmable bulb.

CHANGELOG:
- 2026-10-13: Initial creation (STORY-115)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from aggregator.src.attributes import AttributeStore
from aggregator.src.engine import AccrualEngine
from aggregator.src.models import DeviceCatalog, EstimatedConfig, MeterConfig
from aggregator.src.price import DevicePriceSource, FixedPriceSource
from aggregator.src.service import EnergyService

T0 = datetime(2026, 10, 14, 18, 0, tzinfo=UTC)
PRICE_DEVICE = "sensor.price"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Clock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now

    def at(self, **kwargs: float) -> None:
        self.now = T0 + timedelta(**kwargs)


def _service(
    clock: _Clock,
    catalog: DeviceCatalog,
    *,
    fixed_price: str | None = None,
    attributes: AttributeStore | None = None,
) -> EnergyService:
    attributes = attributes or AttributeStore()
    if fixed_price is not None:
        source: Any = FixedPriceSource(Decimal(fixed_price))
        price_device = ""
    else:
        source = DevicePriceSource(attributes, PRICE_DEVICE, "state")
        price_device = PRICE_DEVICE
    engine = AccrualEngine(price_source=source, reader=attributes)
    return EnergyService(
        engine=engine,
        attributes=attributes,
        catalog=catalog,
        price_device=price_device,
        clock=clock,
    )


def _meter_only() -> DeviceCatalog:
    return DeviceCatalog(meters=[MeterConfig(device_id="meterA")])


async def _send(service: EnergyService, device_id: str, attribute: str, value: Any) -> None:
    result = await service.handle_events([{"device_id": device_id, "attribute": attribute, "value": value}])
    assert result.accepted == 1


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_each_delta_priced_at_its_own_time() -> None:
    clock = _Clock()
    service = _service(clock, _meter_only())
    await service.start()

    await _send(service, PRICE_DEVICE, "state", "1.00")
    await _send(service, "meterA", "energy", "10.000")
    clock.at(minutes=30)
    await _send(service, "meterA", "energy", "10.500")
    clock.at(minutes=31)
    await _send(service, PRICE_DEVICE, "state", "2.00")
    clock.at(hours=1)
    await _send(service, "meterA", "energy", "11.000")

    totals = await service.totals()
    assert totals.today_cost == Decimal("1.50")
    assert totals.today_energy == Decimal("1.000")


@pytest.mark.asyncio
async def test_counter_reset_then_resume() -> None:
    service = _service(_Clock(), _meter_only(), fixed_price="1.0")
    await service.start()

    for reading in ("100.0", "3.0", "3.5"):
        await _send(service, "meterA", "energy", reading)

    assert service.engine.state.today_energy["meterA"] == Decimal("0.5")
    assert service.engine.device("meterA").last_cumulative_reading == Decimal("3.5")


@pytest.mark.asyncio
async def test_dimmed_bulb_for_one_hour() -> None:
    clock = _Clock()
    catalog = DeviceCatalog(
        estimated=[
            EstimatedConfig(
                device_id="bulbC",
                standby_w=Decimal("0.5"),
                max_w=Decimal("60"),
                scale_with_level=True,
            )
        ]
    )
    service = _service(clock, catalog, fixed_price="2.0")
    await service.start()

    await _send(service, "bulbC", "level", 50)
    await _send(service, "bulbC", "switch", "on")
    clock.at(hours=1)
    await service.on_tick()

    assert service.engine.state.today_energy["bulbC"] == Decimal("0.03025")
    assert service.engine.state.today_cost == Decimal("0.0605")


@pytest.mark.asyncio
async def test_daily_rollover_isolates_today() -> None:
    clock = _Clock()
    service = _service(clock, _meter_only(), fixed_price="1.0")
    await service.start()

    await _send(service, "meterA", "energy", 0)
    await _send(service, "meterA", "energy", 1)
    clock.at(hours=6)
    await service.on_daily_rollover()
    await _send(service, "meterA", "energy", "1.25")

    totals = await service.totals()
    assert totals.today_energy == Decimal("0.250")
    assert totals.month_energy == Decimal("1.250")
    assert totals.today_cost == Decimal("0.25")
    assert totals.month_cost == Decimal("1.25")


@pytest.mark.asyncio
async def test_snapshot_is_idempotent() -> None:
    service = _service(_Clock(), _meter_only(), fixed_price="1.2345")
    await service.start()
    await _send(service, "meterA", "energy", 0)
    await _send(service, "meterA", "energy", "0.3333")

    first = await service.totals()
    second = await service.totals()

    assert first == second
    assert first.current_price == Decimal("1.235")


@pytest.mark.asyncio
async def test_no_price_accrues_energy_only() -> None:
    clock = _Clock()
    catalog = DeviceCatalog(
        meters=[MeterConfig(device_id="meterA")],
        estimated=[EstimatedConfig(device_id="bulbB", max_w=Decimal("100"))],
    )
    service = _service(clock, catalog)
    await service.start()

    await _send(service, "meterA", "energy", 0)
    await _send(service, "bulbB", "switch", "on")
    clock.at(hours=1)
    await _send(service, "meterA", "energy", 2)
    await service.on_tick()

    totals = await service.totals()
    assert totals.current_price is None
    assert totals.today_energy == Decimal("2.100")
    assert totals.today_cost == Decimal("0.00")
    assert totals.month_cost == Decimal("0.00")


@pytest.mark.asyncio
async def test_totals_never_negative_or_decreasing() -> None:
    clock = _Clock()
    service = _service(clock, _meter_only(), fixed_price="1.5")
    await service.start()

    previous_cost = Decimal(0)
    readings = ["5", "6", "2", "2.5", "0", "0", "1", "0.5", "4"]
    for minute, reading in enumerate(readings):
        clock.at(minutes=minute)
        await _send(service, "meterA", "energy", reading)
        state = service.engine.state
        assert all(energy >= 0 for energy in state.today_energy.values())
        assert state.today_cost >= previous_cost
        assert state.month_cost >= state.today_cost
        previous_cost = state.today_cost

    # 1 + 0.5 + 1 + 3.5 kWh of forward steps
    assert service.engine.state.today_energy["meterA"] == Decimal("6.0")


@pytest.mark.asyncio
async def test_one_hour_three_devices() -> None:
    clock = _Clock()
    catalog = DeviceCatalog(
        meters=[MeterConfig(device_id="meterA")],
        estimated=[
            EstimatedConfig(device_id="bulbB", standby_w=Decimal("0.5"), max_w=Decimal("10")),
            EstimatedConfig(
                device_id="bulbC",
                standby_w=Decimal("1"),
                max_w=Decimal("60"),
                scale_with_level=True,
            ),
        ],
    )
    service = _service(clock, catalog, fixed_price="2.0")
    await service.start()

    await _send(service, "meterA", "energy", "100")
    await _send(service, "bulbB", "switch", "on")
    await _send(service, "bulbC", "switch", "on")
    await _send(service, "bulbC", "level", 50)

    # bulbB 10 W, bulbC 30.5 W from here on.
    clock.at(minutes=30)
    await service.on_tick()
    clock.at(minutes=45)
    await _send(service, "bulbB", "switch", "off")
    clock.at(minutes=50)
    await _send(service, "meterA", "energy", "100.4")
    clock.at(minutes=60)
    await service.on_tick()

    state = service.engine.state
    assert state.today_energy["meterA"] == Decimal("0.4")
    # 10 W x 0.75 h + 0.5 W x 0.25 h
    assert state.today_energy["bulbB"] == Decimal("0.007625")
    # 30.5 W x 1 h
    assert state.today_energy["bulbC"] == Decimal("0.0305")
    assert state.today_cost == Decimal("0.87625")

    totals = await service.totals()
    assert totals.today_energy == Decimal("0.438")
    assert totals.today_energy_meters == Decimal("0.400")
    assert totals.today_energy_estimated == Decimal("0.038")
    assert totals.today_cost == Decimal("0.88")
    assert totals.power_estimated_w == Decimal("31.0")
    assert totals.instantaneous_power == Decimal("31.0")
