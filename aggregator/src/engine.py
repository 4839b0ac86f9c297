"""
Time-of-use accrual engine.

Converts device readings and elapsed time into energy deltas, prices each
delta at the rate valid when the energy was consumed, and folds it into the
per-device today/month buckets and the scalar today/month cost totals.

Metered devices report a cumulative counter: the delta is the difference to
the previous reading, priced at the price resolved at the moment of the call.
A regressing counter is treated as a reset: nothing is attributed and the
baseline resyncs to the new, lower reading.

Estimated devices have no counter: energy is ``power x elapsed time`` for
the interval since their last observation, using the power estimate that
was valid during that interval, and priced at the cached price that was in
effect when the interval started. Whenever the price changes every
estimated interval is closed at the old price before the new one is cached.

Costs are always accumulated delta by delta (``sum(delta_i x price_i)``),
never recomputed from total energy, and nothing is rounded here.

The engine is synchronous and does no I/O: device values come from an
attribute reader that the service refreshes outside its lock. It keeps all
state in one :class:`EngineState` so it can be exported and restored as a
whole. Callers serialise access (see ``service.EnergyService``).

CHANGELOG:
- 2026-10-12: Skip meters whose live read failed; add resume() for restarts
- 2026-10-11: Close estimated intervals before applying a config change
- 2026-10-07: Track instantaneous meter power (STORY-111)
- 2026-10-06: Tick adopts the freshly resolved price after closing intervals
- 2026-10-03: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from aggregator.src.estimator import PowerEstimator
from aggregator.src.models import (
    ZERO,
    AppliedDelta,
    DeviceKind,
    DeviceRecord,
    EngineState,
)
from aggregator.src.normalizer import ENERGY, POWER, parse_decimal, to_kwh

if TYPE_CHECKING:
    from collections.abc import Collection

    from aggregator.src.attributes import AttributeReader
    from aggregator.src.models import DeviceCatalog, EstimatedConfig
    from aggregator.src.price import PriceSource

logger = logging.getLogger(__name__)

_MICROSECONDS_PER_HOUR = Decimal(3_600_000_000)
_W_PER_KW = Decimal(1000)


class UnknownDeviceError(KeyError):
    """Accrual requested for a device id that has no DeviceRecord."""


def elapsed_hours(start: datetime, end: datetime) -> Decimal:
    """Exact elapsed time between two instants, in hours."""
    delta: timedelta = end - start
    microseconds = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
    return Decimal(microseconds) / _MICROSECONDS_PER_HOUR


class AccrualEngine:
    """Stateful TOU energy and cost accumulator.

    Args:
        price_source: Resolves the effective price per kWh.
        reader: Latest known device attribute values.
        estimator: Power estimator for estimated devices. Defaults to one
            reading from *reader*.
        track_meter_power: Refresh meters' instantaneous power on every tick.
    """

    def __init__(
        self,
        *,
        price_source: PriceSource,
        reader: AttributeReader,
        estimator: PowerEstimator | None = None,
        track_meter_power: bool = False,
    ) -> None:
        self._price_source = price_source
        self._reader = reader
        self._estimator = estimator or PowerEstimator(reader)
        self._track_meter_power = track_meter_power
        self._state = EngineState()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        """Live engine state. Treat as read-only; use export_state() to copy."""
        return self._state

    @property
    def price_source(self) -> PriceSource:
        return self._price_source

    def has_device(self, device_id: str) -> bool:
        return device_id in self._state.devices

    def device(self, device_id: str) -> DeviceRecord:
        """Return the record for *device_id*.

        Raises:
            UnknownDeviceError: If the device is not tracked.
        """
        try:
            return self._state.devices[device_id]
        except KeyError:
            raise UnknownDeviceError(device_id) from None

    def records(self, kind: DeviceKind | None = None) -> list[DeviceRecord]:
        """Return tracked records, optionally filtered by kind."""
        return [
            record
            for record in self._state.devices.values()
            if kind is None or record.kind == kind
        ]

    # ------------------------------------------------------------------
    # Device lifecycle
    # ------------------------------------------------------------------

    def sync_devices(self, catalog: DeviceCatalog, now: datetime) -> None:
        """Create, update and drop records so they match *catalog*.

        New meters are seeded with their current reading when one is known.
        New estimated devices start an interval at *now* with a fresh
        estimate. A changed estimated config closes the running interval
        with the old settings before the new ones apply. Devices no longer
        in the catalog lose their record; energy they already accrued stays
        in the current day/month buckets.
        """
        configured = set(catalog.device_ids())
        for device_id in list(self._state.devices):
            if device_id not in configured:
                self.remove_device(device_id)

        for meter in catalog.meters:
            record = self._state.devices.get(meter.device_id)
            if record is None or record.kind != DeviceKind.METERED:
                record = DeviceRecord(
                    device_id=meter.device_id,
                    kind=DeviceKind.METERED,
                    energy_unit=meter.energy_unit,
                    last_observation_ts=now,
                )
                record.last_cumulative_reading = self._read_meter(record)
                self._state.devices[meter.device_id] = record
                logger.info(
                    "Tracking meter %s (baseline=%s kWh)",
                    meter.device_id,
                    record.last_cumulative_reading,
                )
            else:
                record.energy_unit = meter.energy_unit

        for config in catalog.estimated:
            record = self._state.devices.get(config.device_id)
            if record is None or record.kind != DeviceKind.ESTIMATED:
                record = DeviceRecord(
                    device_id=config.device_id,
                    kind=DeviceKind.ESTIMATED,
                    last_observation_ts=now,
                )
                _apply_estimated_config(record, config)
                self._state.devices[config.device_id] = record
                self.refresh_estimate(config.device_id)
                logger.info(
                    "Tracking estimated device %s (standby=%sW, max=%sW, scale=%s)",
                    config.device_id,
                    record.standby_power_w,
                    record.max_power_w,
                    record.scale_with_level,
                )
            elif _estimated_config_changed(record, config):
                self.accrue_estimated(config.device_id, now)
                _apply_estimated_config(record, config)
                self.refresh_estimate(config.device_id)
                logger.info("Updated config for estimated device %s", config.device_id)

    def remove_device(self, device_id: str) -> bool:
        """Drop a device's record. Returns False if it was not tracked."""
        removed = self._state.devices.pop(device_id, None)
        if removed is not None:
            logger.info("Stopped tracking %s device %s", removed.kind, device_id)
        return removed is not None

    # ------------------------------------------------------------------
    # Price
    # ------------------------------------------------------------------

    def prime_price(self, now: datetime) -> Decimal | None:
        """Resolve the price now and cache it for the next intervals."""
        price = self._price_source.resolve_effective_price()
        if price is None and self._state.last_known_price is not None:
            logger.warning("Price became unavailable; estimated cost accrual paused")
        self._state.last_known_price = price
        self._state.last_price_observed_at = now
        return price

    def on_price_changed(self, now: datetime) -> list[AppliedDelta]:
        """Close every estimated interval at the old price, then cache the new one."""
        deltas = self.accrue_all_estimated(now)
        price = self.prime_price(now)
        logger.info("Price updated to %s", price)
        return deltas

    # ------------------------------------------------------------------
    # Metered devices
    # ------------------------------------------------------------------

    def accrue_metered(
        self,
        device_id: str,
        reading: Decimal,
        now: datetime,
    ) -> AppliedDelta:
        """Attribute the energy between the previous and the new cumulative reading.

        Args:
            device_id: Metered device id.
            reading: New cumulative reading in kWh.
            now: Instant of the reading.

        Returns:
            The applied delta. Zero for the very first reading of a device
            (it only seeds the baseline) and for a regressing counter.

        Raises:
            UnknownDeviceError: If the device is not a tracked meter.
        """
        record = self._require(device_id, DeviceKind.METERED)
        _advance(record, now)

        previous = record.last_cumulative_reading
        record.last_cumulative_reading = reading
        if previous is None:
            logger.info("Seeded baseline for meter %s at %s kWh", device_id, reading)
            return AppliedDelta(device_id=device_id)

        delta = reading - previous
        reset = False
        if delta < ZERO:
            logger.warning(
                "Meter %s went backwards (%s -> %s kWh); treating as counter reset",
                device_id,
                previous,
                reading,
            )
            delta = ZERO
            reset = True

        price = self._price_source.resolve_effective_price()
        applied = self._apply(device_id, delta, price, reset=reset)
        logger.debug(
            "Accrued meter %s: +%s kWh @ %s -> cost %s",
            device_id,
            applied.energy_kwh,
            price,
            applied.cost,
        )
        return applied

    def record_meter_power(self, device_id: str, raw: Any) -> Decimal:
        """Store a meter's instantaneous power. Non-numeric values count as 0 W."""
        record = self._require(device_id, DeviceKind.METERED)
        value = parse_decimal(raw)
        if value is None:
            logger.warning("Non-numeric power %r from %s; using 0 W", raw, device_id)
            value = ZERO
        record.last_power_w = max(value, ZERO)
        return record.last_power_w

    # ------------------------------------------------------------------
    # Estimated devices
    # ------------------------------------------------------------------

    def accrue_estimated(self, device_id: str, now: datetime) -> AppliedDelta:
        """Close the device's running interval at the cached price.

        Energy is the estimate valid during the interval times its length.
        If *now* is not after the last observation (duplicate call or clock
        skew) nothing is attributed and the timestamp is left where it is.

        Raises:
            UnknownDeviceError: If the device is not a tracked estimated device.
        """
        record = self._require(device_id, DeviceKind.ESTIMATED)
        last = record.last_observation_ts
        if last is None or now <= last:
            _advance(record, now)
            return AppliedDelta(device_id=device_id, price=self._state.last_known_price)

        hours = elapsed_hours(last, now)
        energy = record.last_estimated_power_w * hours / _W_PER_KW
        record.last_observation_ts = now

        applied = self._apply(device_id, energy, self._state.last_known_price)
        logger.debug(
            "Accrued estimated %s: +%s kWh (%sh at %sW) @ %s",
            device_id,
            applied.energy_kwh,
            hours,
            record.last_estimated_power_w,
            applied.price,
        )
        return applied

    def accrue_all_estimated(self, now: datetime) -> list[AppliedDelta]:
        """Close the running interval of every estimated device."""
        return [
            self.accrue_estimated(record.device_id, now)
            for record in self.records(DeviceKind.ESTIMATED)
        ]

    def refresh_estimate(self, device_id: str) -> Decimal:
        """Re-estimate a device's power for the interval starting now."""
        record = self._require(device_id, DeviceKind.ESTIMATED)
        record.last_estimated_power_w = self._estimator.estimate(record)
        return record.last_estimated_power_w

    def on_switch_or_level(self, device_id: str, now: datetime) -> AppliedDelta:
        """Handle a switch or level change of an estimated device.

        The interval that just ended is closed with the estimate that was
        valid before the change; the new estimate applies from *now*. The
        attribute store must already hold the new switch/level value.
        """
        applied = self.accrue_estimated(device_id, now)
        self.refresh_estimate(device_id)
        return applied

    # ------------------------------------------------------------------
    # Periodic tick
    # ------------------------------------------------------------------

    def on_tick(
        self,
        now: datetime,
        *,
        readable_meters: Collection[str] | None = None,
    ) -> list[AppliedDelta]:
        """Accrue every tracked device so energy is attributed between events.

        Meters are re-read from the attribute store and accrued at the
        current price. A meter without a readable value is skipped this
        cycle, and so is any meter not in *readable_meters* when that is
        given (its live read failed). Estimated intervals are closed at the
        cached price, the freshly resolved price is cached, and every
        estimate is refreshed for the next interval.
        """
        deltas: list[AppliedDelta] = []

        for record in self.records(DeviceKind.METERED):
            if readable_meters is not None and record.device_id not in readable_meters:
                logger.debug("No live value for meter %s this cycle; skipping", record.device_id)
                continue
            reading = self._read_meter(record)
            if reading is None:
                logger.debug("No current reading for meter %s; skipping", record.device_id)
            else:
                deltas.append(self.accrue_metered(record.device_id, reading, now))
            if self._track_meter_power:
                raw_power = self._reader.read_current_value(record.device_id, POWER)
                if raw_power is not None:
                    self.record_meter_power(record.device_id, raw_power)

        deltas.extend(self.accrue_all_estimated(now))
        self.prime_price(now)
        for record in self.records(DeviceKind.ESTIMATED):
            self.refresh_estimate(record.device_id)

        return deltas

    def resume(self, now: datetime) -> None:
        """Restart every estimated interval at *now* after a restore.

        Time the daemon was not running is not attributed to estimated
        devices; their on/off state during the gap is unknown. Meters need
        nothing here since their next reading covers the gap.
        """
        for record in self.records(DeviceKind.ESTIMATED):
            _advance(record, now)

    # ------------------------------------------------------------------
    # Rollover
    # ------------------------------------------------------------------

    def reset_today(self) -> None:
        """Zero today's energy buckets and cost."""
        self._state.today_energy = {}
        self._state.today_cost = ZERO

    def reset_month(self) -> None:
        """Zero this month's energy buckets and cost."""
        self._state.month_energy = {}
        self._state.month_cost = ZERO

    def on_daily_rollover(self) -> None:
        """Start a new day. Baselines, estimates and timestamps are untouched."""
        logger.info(
            "Daily rollover (closing today_cost=%s, today_energy=%s kWh)",
            self._state.today_cost,
            sum(self._state.today_energy.values(), ZERO),
        )
        self.reset_today()

    def on_monthly_rollover(self) -> None:
        """Start a new month. Baselines, estimates and timestamps are untouched."""
        logger.info(
            "Monthly rollover (closing month_cost=%s, month_energy=%s kWh)",
            self._state.month_cost,
            sum(self._state.month_energy.values(), ZERO),
        )
        self.reset_month()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_state(self) -> EngineState:
        """Return a deep copy of the full engine state."""
        return self._state.model_copy(deep=True)

    def import_state(self, state: EngineState) -> None:
        """Replace the engine state with a copy of *state*."""
        self._state = state.model_copy(deep=True)
        logger.info(
            "Restored state: %d device(s), today_cost=%s, month_cost=%s",
            len(self._state.devices),
            self._state.today_cost,
            self._state.month_cost,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, device_id: str, kind: DeviceKind) -> DeviceRecord:
        record = self.device(device_id)
        if record.kind != kind:
            raise UnknownDeviceError(f"{device_id} is not a {kind} device")
        return record

    def _read_meter(self, record: DeviceRecord) -> Decimal | None:
        value = parse_decimal(self._reader.read_current_value(record.device_id, ENERGY))
        if value is None:
            return None
        return to_kwh(value, record.energy_unit)

    def _apply(
        self,
        device_id: str,
        energy: Decimal,
        price: Decimal | None,
        *,
        reset: bool = False,
    ) -> AppliedDelta:
        state = self._state
        state.today_energy[device_id] = state.today_energy.get(device_id, ZERO) + energy
        state.month_energy[device_id] = state.month_energy.get(device_id, ZERO) + energy

        cost = ZERO
        if price is not None:
            cost = energy * price
            state.today_cost += cost
            state.month_cost += cost

        return AppliedDelta(
            device_id=device_id,
            energy_kwh=energy,
            price=price,
            cost=cost,
            reset=reset,
        )


def _advance(record: DeviceRecord, now: datetime) -> None:
    """Move the observation timestamp forward, never backward."""
    if record.last_observation_ts is None or now > record.last_observation_ts:
        record.last_observation_ts = now


def _apply_estimated_config(record: DeviceRecord, config: EstimatedConfig) -> None:
    record.standby_power_w = max(config.standby_w, ZERO)
    record.max_power_w = None if config.max_w is None else max(config.max_w, ZERO)
    record.scale_with_level = config.scale_with_level


def _estimated_config_changed(record: DeviceRecord, config: EstimatedConfig) -> bool:
    max_w = None if config.max_w is None else max(config.max_w, ZERO)
    return (
        record.standby_power_w != max(config.standby_w, ZERO)
        or record.max_power_w != max_w
        or record.scale_with_level != config.scale_with_level
    )
