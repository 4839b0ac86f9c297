"""
Aggregator daemon main loop.

Runs two concurrent asyncio tasks around one EnergyService:
1. **Schedule loop**: sleeps until the next trigger computed by the
   RolloverSchedule, then runs every job due at that instant in a fixed
   order: daily rollover, monthly rollover, tick.
2. **API server**: a uvicorn server hosting the FastAPI app that receives
   device events and serves totals, breakdown and manual actions.

The schedule loop is resilient: an exception in one job is logged and does
not stop the loop or affect the API. Graceful shutdown on SIGTERM/SIGINT
sets a shared asyncio.Event; the server is asked to exit, the loop finishes
its current iteration, and the latest totals are published one last time.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-10-11: Serve the API from the daemon's own event loop (STORY-113)
- 2026-10-09: Initial creation (STORY-110)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import uvicorn

from aggregator.src.api.app import create_app
from aggregator.src.api.auth import BearerAuth, parse_api_tokens
from aggregator.src.attributes import AttributeStore
from aggregator.src.config import AggregatorSettings, load_catalog
from aggregator.src.engine import AccrualEngine
from aggregator.src.health import HealthWriter
from aggregator.src.poller import StatePoller
from aggregator.src.price import build_price_source
from aggregator.src.schedule import Job, RolloverSchedule
from aggregator.src.service import EnergyService, Presentation
from aggregator.src.sink import HttpSink, SnapshotSink, SummaryFileSink
from aggregator.src.store import StateStore

if TYPE_CHECKING:
    from aggregator.src.models import DeviceCatalog

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(level: str = "INFO") -> None:
    """Send every log record to stderr as JSON at *level*."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def mask_secret(value: str) -> str:
    """Describe a secret by length and a short sha256 fingerprint."""
    if not value:
        return "<unset>"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]
    return f"<{len(value)} chars, sha256:{digest}>"


def log_config_summary(settings: AggregatorSettings, catalog: DeviceCatalog) -> None:
    """Log a config summary at startup with every token masked."""
    logger.info(
        "Aggregator starting with config: "
        "ha_base_url=%s, ha_token=%s, price_mode=%s, fixed_price=%s, "
        "price_device=%s, price_attribute=%s, extra_cost_per_kwh=%s, currency=%s, "
        "tick_minutes=%s, daily_rollover_at=%s, monthly_rollover=%s@%s, timezone=%s, "
        "decimals_kwh=%s, decimals_cost=%s, also_track_power=%s, push_on_tick=%s, "
        "state_path=%s, summary_path=%s, sink_url=%s, sink_token=%s, "
        "api=%s:%s, api_tokens=%s, meters=%d, estimated=%d",
        settings.ha_base_url,
        mask_secret(settings.ha_token),
        settings.price_mode,
        settings.fixed_price,
        settings.price_device or "-",
        settings.price_attribute,
        settings.extra_cost_per_kwh,
        settings.currency,
        settings.tick_minutes,
        settings.daily_rollover_at,
        settings.monthly_rollover_day,
        settings.monthly_rollover_at,
        settings.timezone,
        settings.decimals_kwh,
        settings.decimals_cost,
        settings.also_track_power,
        settings.push_on_tick,
        settings.state_path,
        settings.summary_path,
        settings.sink_url or "-",
        mask_secret(settings.sink_token),
        settings.api_host,
        settings.api_port,
        mask_secret(settings.api_tokens),
        len(catalog.meters),
        len(catalog.estimated),
    )


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def build_schedule(settings: AggregatorSettings) -> RolloverSchedule:
    return RolloverSchedule(
        daily_at=settings.daily_rollover_at,
        monthly_day=settings.monthly_rollover_day,
        monthly_at=settings.monthly_rollover_at,
        tz=settings.tz,
        tick_minutes=settings.tick_minutes,
    )


def build_service(
    settings: AggregatorSettings,
    catalog: DeviceCatalog,
    *,
    store: StateStore | None = None,
    health: HealthWriter | None = None,
) -> EnergyService:
    """Wire engine, price source, poller and sinks from *settings*."""
    attributes = AttributeStore()
    price_source = build_price_source(
        mode=settings.price_mode,
        reader=attributes,
        fixed_price=settings.fixed_price,
        price_device=settings.price_device,
        price_attribute=settings.price_attribute,
        surcharge=settings.extra_cost_per_kwh,
    )
    engine = AccrualEngine(
        price_source=price_source,
        reader=attributes,
        track_meter_power=settings.also_track_power,
    )
    poller = StatePoller(
        base_url=settings.ha_base_url,
        token=settings.ha_token,
        timeout_s=settings.read_timeout_s,
    )

    sinks: list[SnapshotSink] = [SummaryFileSink(settings.summary_path)]
    if settings.sink_url:
        sinks.append(HttpSink(settings.sink_url, settings.sink_token))

    return EnergyService(
        engine=engine,
        attributes=attributes,
        catalog=catalog,
        poller=poller,
        store=store,
        sinks=sinks,
        health=health,
        presentation=Presentation(
            decimals_kwh=settings.decimals_kwh,
            decimals_cost=settings.decimals_cost,
            currency=settings.currency,
            label=settings.summary_label,
        ),
        push_on_tick=settings.push_on_tick,
        price_device=settings.price_device if settings.price_mode == "device" else "",
        price_attribute=settings.price_attribute,
    )


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


async def _run_job(service: EnergyService, job: Job) -> bool:
    """Run one scheduled job. Catches all exceptions so the loop keeps going.

    Returns:
        True if the job completed, False if it raised.
    """
    try:
        if job is Job.DAILY_ROLLOVER:
            await service.on_daily_rollover()
        elif job is Job.MONTHLY_ROLLOVER:
            await service.on_monthly_rollover()
        else:
            await service.on_tick()
        return True
    except Exception:
        logger.error("Scheduled job %s failed", job, exc_info=True)
        return False


async def _run_due_jobs(
    service: EnergyService,
    schedule: RolloverSchedule,
    now: datetime,
) -> list[Job]:
    """Run every job due at *now* in schedule order and return them."""
    jobs = schedule.due_jobs(now)
    for job in jobs:
        await _run_job(service, job)
    return jobs


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _schedule_loop(
    *,
    service: EnergyService,
    schedule: RolloverSchedule,
    shutdown_event: asyncio.Event,
    clock: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
) -> None:
    """Sleep until the next trigger, run due jobs, repeat until shutdown."""
    schedule.prime(clock())
    logger.info("Schedule loop started")
    while not shutdown_event.is_set():
        delay = (schedule.next_wakeup() - clock()).total_seconds()
        if delay > 0:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
            if shutdown_event.is_set():
                break
        await _run_due_jobs(service, schedule, clock())
    logger.info("Schedule loop stopped")


async def _serve_api(server: uvicorn.Server, shutdown_event: asyncio.Event) -> None:
    """Run the API server; stop it on shutdown and shut down if it stops."""

    async def _stop_on_shutdown() -> None:
        await shutdown_event.wait()
        server.should_exit = True

    watcher = asyncio.create_task(_stop_on_shutdown())
    try:
        await server.serve()
    finally:
        watcher.cancel()
        if not shutdown_event.is_set():
            logger.warning("API server stopped; shutting down")
            shutdown_event.set()


async def run(settings: AggregatorSettings, shutdown_event: asyncio.Event) -> None:
    """Start the service and run the schedule loop and API until shutdown."""
    catalog = load_catalog(settings.devices_file)
    log_config_summary(settings, catalog)

    health = HealthWriter(settings.health_path)
    async with StateStore(settings.state_path) as store:
        service = build_service(settings, catalog, store=store, health=health)
        await service.start()

        token_map = parse_api_tokens(settings.api_tokens)
        logger.info("Parsed %d API token(s) from API_TOKENS", len(token_map))
        app = create_app(
            service,
            BearerAuth(token_map),
            max_events=settings.max_events_per_request,
        )
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=settings.api_host,
                port=settings.api_port,
                log_config=None,
            )
        )

        await asyncio.gather(
            _schedule_loop(
                service=service,
                schedule=build_schedule(settings),
                shutdown_event=shutdown_event,
            ),
            _serve_api(server, shutdown_event),
        )

        logger.info("Publishing final totals before exit")
        try:
            await service.push()
        except Exception:
            logger.error("Final push failed", exc_info=True)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, install signal handlers, run."""
    settings = AggregatorSettings()
    configure_logging(settings.log_level)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _handle_signal(shutdown_event))

    await run(settings, shutdown_event)


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the aggregator daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
