"""
EnergyService: the single owner of the accrual engine.

Every way into the engine goes through this class: inbound device events,
periodic ticks, daily and monthly rollovers, manual resets and manual
pushes. Each entry point follows the same shape:

1. Slow I/O that feeds the engine (live reads over HTTP) happens first,
   without holding any lock.
2. Under one ``asyncio.Lock`` the service stamps the operation with its
   clock, mutates the engine, exports the resulting state and builds the
   totals snapshot. Nothing inside the lock awaits anything but the lock
   itself, so a rollover can never interleave with an accrual.
3. Outside the state lock the exported state is persisted and the snapshot
   published. A sequence number makes sure an older state or snapshot never
   overwrites a newer one when two operations finish out of order.

Events are applied strictly in arrival order and stamped with the service
clock at processing time; an event's own timestamp is kept for logs only,
so a late or skewed device clock can never move a device's observation
time backward.

CHANGELOG:
- 2026-10-20: Live reads never overwrite values events wrote during the read
- 2026-10-12: Mark meters absent for a tick when their live read fails
- 2026-10-10: Add manual resets and push (STORY-113)
- 2026-10-09: Initial creation (STORY-110)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from aggregator.src.models import (
    DeviceBreakdown,
    DeviceKind,
    EngineState,
    EventResult,
    Totals,
)
from aggregator.src.normalizer import (
    ENERGY,
    LEVEL,
    POWER,
    SWITCH,
    brightness_to_level,
    entity_attributes,
    normalize_event,
    parse_decimal,
    to_kwh,
)
from aggregator.src.totals import breakdown, snapshot

if TYPE_CHECKING:
    from aggregator.src.attributes import AttributeStore
    from aggregator.src.engine import AccrualEngine
    from aggregator.src.health import HealthWriter
    from aggregator.src.models import DeviceCatalog, DeviceEvent
    from aggregator.src.poller import StatePoller
    from aggregator.src.sink import SnapshotSink
    from aggregator.src.store import StateStore

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class Presentation:
    """How snapshots are rounded and labelled."""

    decimals_kwh: int = 3
    decimals_cost: int = 2
    currency: str = "SEK"
    label: str = "Energy Summary"


class EnergyService:
    """Serialises all engine access and fans results out to store and sinks.

    Args:
        engine: The accrual engine this service owns.
        attributes: Attribute store the engine, estimator and price source
            read from.
        catalog: Devices to track.
        poller: Live-read client; ``None`` means the attribute store is fed
            by events only.
        store: Durable state store; ``None`` disables persistence.
        sinks: Snapshot sinks receiving every published snapshot.
        health: Health file writer.
        presentation: Rounding and labelling of snapshots.
        push_on_tick: Publish after ticks, not only after events.
        price_device: Entity id of the price device, if prices come from one.
        price_attribute: Attribute of the price device carrying the price.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        *,
        engine: AccrualEngine,
        attributes: AttributeStore,
        catalog: DeviceCatalog,
        poller: StatePoller | None = None,
        store: StateStore | None = None,
        sinks: Sequence[SnapshotSink] = (),
        health: HealthWriter | None = None,
        presentation: Presentation | None = None,
        push_on_tick: bool = True,
        price_device: str = "",
        price_attribute: str = "state",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._attributes = attributes
        self._catalog = catalog
        self._poller = poller
        self._store = store
        self._sinks = list(sinks)
        self._health = health
        self._presentation = presentation or Presentation()
        self._push_on_tick = push_on_tick
        self._price_device = price_device
        self._price_attribute = price_attribute
        self._clock = clock

        self._lock = asyncio.Lock()
        self._io_lock = asyncio.Lock()
        self._seq = 0
        self._saved_seq = 0
        self._published_seq = 0

    @property
    def engine(self) -> AccrualEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore persisted state, sync with the catalog and publish once.

        A persisted state that cannot be decoded is logged and discarded;
        the daemon then starts with empty totals.
        """
        restored = await self._load_state()
        read_since = self._attributes.generation
        documents = await self._live_read()

        async with self._lock:
            now = self._clock()
            self._merge_documents(documents, since=read_since)
            if restored is not None:
                self._engine.import_state(restored)
                self._engine.resume(now)
            self._engine.sync_devices(self._catalog, now)
            price = self._engine.prime_price(now)
            seq, state, totals = self._commit(now)

        logger.info(
            "Service started: %d device(s), price=%s",
            len(state.devices),
            price,
        )
        if self._health is not None:
            self._health.set_device_count(len(state.devices))
        await self._persist(seq, state)
        await self._publish(seq, totals)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_events(self, raw_events: Iterable[Any]) -> EventResult:
        """Apply a batch of raw device events in order.

        Returns:
            Counts of accepted, ignored and rejected events.
        """
        result = EventResult()
        async with self._lock:
            for raw in raw_events:
                event = normalize_event(raw)
                if event is None:
                    result.rejected += 1
                elif self._apply_event(event, self._clock()):
                    result.accepted += 1
                else:
                    result.ignored += 1
            seq, state, totals = self._commit(self._clock())

        logger.debug(
            "Events: accepted=%d ignored=%d rejected=%d",
            result.accepted,
            result.ignored,
            result.rejected,
        )
        if result.accepted:
            await self._persist(seq, state)
            await self._publish(seq, totals)
        return result

    def _apply_event(self, event: DeviceEvent, now: datetime) -> bool:
        """Route one validated event. Must be called under the state lock."""
        device_id = event.device_id
        attribute = event.attribute

        if self._price_device and device_id == self._price_device:
            self._attributes.update(device_id, attribute, event.value)
            if attribute == self._price_attribute:
                self._engine.on_price_changed(now)
            return True

        if not self._engine.has_device(device_id):
            logger.warning("Ignoring event for untracked device %s", device_id)
            return False

        record = self._engine.device(device_id)
        if record.kind == DeviceKind.METERED:
            return self._apply_meter_event(event, record.energy_unit, now)
        return self._apply_estimated_event(event, now)

    def _apply_meter_event(self, event: DeviceEvent, unit: str, now: datetime) -> bool:
        device_id = event.device_id
        if event.attribute == ENERGY:
            reading = parse_decimal(event.value)
            if reading is None:
                logger.warning(
                    "Ignoring non-numeric energy %r from %s (ts=%s)",
                    event.value,
                    device_id,
                    event.ts,
                )
                return False
            self._attributes.update(device_id, ENERGY, event.value)
            self._engine.accrue_metered(device_id, to_kwh(reading, unit), now)
            return True

        self._attributes.update(device_id, event.attribute, event.value)
        if event.attribute == POWER:
            self._engine.record_meter_power(device_id, event.value)
        return True

    def _apply_estimated_event(self, event: DeviceEvent, now: datetime) -> bool:
        device_id = event.device_id
        attribute = event.attribute
        self._attributes.update(device_id, attribute, event.value)
        if attribute == "brightness":
            self._attributes.update(device_id, LEVEL, brightness_to_level(event.value))
            attribute = LEVEL
        if attribute in (SWITCH, LEVEL):
            self._engine.on_switch_or_level(device_id, now)
        return True

    # ------------------------------------------------------------------
    # Scheduled jobs
    # ------------------------------------------------------------------

    async def on_tick(self) -> None:
        """Refresh live values, then accrue every device.

        The live read happens before the state lock is taken. When it fails
        every meter is treated as absent for this cycle; estimated devices
        keep their last known switch and level. Values that events wrote
        while the read was in flight win over the read.
        """
        read_since = self._attributes.generation
        documents = await self._live_read()
        readable: set[str] | None = None
        if self._poller is not None:
            readable = set(documents) if documents is not None else set()

        async with self._lock:
            now = self._clock()
            self._merge_documents(documents, since=read_since)
            deltas = self._engine.on_tick(now, readable_meters=readable)
            seq, state, totals = self._commit(now)

        logger.debug("Tick at %s: %d accrual(s)", now.isoformat(), len(deltas))
        await self._persist(seq, state)
        if self._push_on_tick:
            await self._publish(seq, totals)
        if self._health is not None:
            self._health.record_tick()

    async def on_daily_rollover(self) -> None:
        """Start a new day."""
        async with self._lock:
            self._engine.on_daily_rollover()
            seq, state, totals = self._commit(self._clock())
        await self._after_rollover(seq, state, totals)

    async def on_monthly_rollover(self) -> None:
        """Start a new month."""
        async with self._lock:
            self._engine.on_monthly_rollover()
            seq, state, totals = self._commit(self._clock())
        await self._after_rollover(seq, state, totals)

    # ------------------------------------------------------------------
    # Manual actions and reads
    # ------------------------------------------------------------------

    async def reset_today(self) -> Totals:
        """Zero today's totals on demand."""
        async with self._lock:
            self._engine.reset_today()
            seq, state, totals = self._commit(self._clock())
        logger.info("Today's totals reset manually")
        await self._after_rollover(seq, state, totals)
        return totals

    async def reset_month(self) -> Totals:
        """Zero this month's totals on demand."""
        async with self._lock:
            self._engine.reset_month()
            seq, state, totals = self._commit(self._clock())
        logger.info("Month totals reset manually")
        await self._after_rollover(seq, state, totals)
        return totals

    async def push(self) -> Totals:
        """Publish the current totals immediately."""
        async with self._lock:
            seq, _, totals = self._commit(self._clock())
        await self._publish(seq, totals)
        return totals

    async def totals(self) -> Totals:
        """Current snapshot without publishing it."""
        async with self._lock:
            return self._snapshot(self._clock())

    async def breakdown(self) -> list[DeviceBreakdown]:
        """Current per-device breakdown."""
        async with self._lock:
            return breakdown(self._engine, decimals_kwh=self._presentation.decimals_kwh)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _entity_ids(self) -> list[str]:
        ids = self._catalog.device_ids()
        if self._price_device and self._price_device not in ids:
            ids.append(self._price_device)
        return ids

    async def _live_read(self) -> dict[str, dict[str, Any]] | None:
        if self._poller is None:
            return None
        return await self._poller.poll(self._entity_ids())

    def _merge_documents(
        self,
        documents: dict[str, dict[str, Any]] | None,
        *,
        since: int,
    ) -> None:
        """Fold live-read documents into the attribute store. Under the lock.

        Attributes written by events after generation *since* are newer than
        the documents and are not overwritten.
        """
        if not documents:
            return
        kinds = {meter.device_id: DeviceKind.METERED for meter in self._catalog.meters}
        kinds.update({device.device_id: DeviceKind.ESTIMATED for device in self._catalog.estimated})
        for entity_id, document in documents.items():
            stale = self._attributes.merge(
                entity_id,
                entity_attributes(document, kind=kinds.get(entity_id)),
                since=since,
            )
            if stale:
                logger.debug(
                    "Kept newer event values for %s over live read: %s",
                    entity_id,
                    ", ".join(stale),
                )

    def _snapshot(self, now: datetime) -> Totals:
        p = self._presentation
        return snapshot(
            self._engine,
            now=now,
            decimals_kwh=p.decimals_kwh,
            decimals_cost=p.decimals_cost,
            currency=p.currency,
            label=p.label,
        )

    def _commit(self, now: datetime) -> tuple[int, EngineState, Totals]:
        """Export state and snapshot after a mutation. Under the lock."""
        self._seq += 1
        return self._seq, self._engine.export_state(), self._snapshot(now)

    async def _after_rollover(self, seq: int, state: EngineState, totals: Totals) -> None:
        await self._persist(seq, state)
        await self._publish(seq, totals)
        if self._health is not None:
            self._health.record_rollover()

    async def _load_state(self) -> EngineState | None:
        if self._store is None:
            return None
        payload = await self._store.load()
        if payload is None:
            logger.info("No persisted state; starting with empty totals")
            return None
        try:
            return EngineState.model_validate_json(payload)
        except ValidationError:
            logger.error("Persisted state is unreadable; starting with empty totals", exc_info=True)
            return None

    async def _persist(self, seq: int, state: EngineState) -> None:
        if self._store is None:
            return
        async with self._io_lock:
            if seq <= self._saved_seq:
                return
            try:
                await self._store.save(state.model_dump_json())
            except Exception:
                logger.error("Failed to persist engine state", exc_info=True)
                return
            self._saved_seq = seq

    async def _publish(self, seq: int, totals: Totals) -> None:
        async with self._io_lock:
            if seq <= self._published_seq:
                return
            self._published_seq = seq
            for sink in self._sinks:
                try:
                    await sink.publish(totals)
                except Exception:
                    logger.error("Sink %s failed", type(sink).__name__, exc_info=True)
        if self._health is not None and self._sinks:
            self._health.record_publish()
