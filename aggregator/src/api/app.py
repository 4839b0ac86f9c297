"""
FastAPI application factory for the aggregator API.

The app does not own the service: the daemon builds and starts the
EnergyService, then hands it to ``create_app`` together with the bearer
auth. Both are stored on ``app.state`` for the routers.

CHANGELOG:
- 2026-10-10: Initial creation (STORY-113)

TODO:
- None
"""

import logging

from fastapi import FastAPI

from aggregator.src.api.actions import router as actions_router
from aggregator.src.api.auth import BearerAuth
from aggregator.src.api.events import DEFAULT_MAX_EVENTS, DEFAULT_MAX_REQUEST_BYTES
from aggregator.src.api.events import router as events_router
from aggregator.src.api.health import router as health_router
from aggregator.src.api.totals import router as totals_router
from aggregator.src.service import EnergyService

logger = logging.getLogger(__name__)


def create_app(
    service: EnergyService,
    auth: BearerAuth,
    *,
    max_events: int = DEFAULT_MAX_EVENTS,
    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES,
) -> FastAPI:
    """Build the API around a started *service*.

    Args:
        service: The daemon's energy service.
        auth: Bearer auth guarding every route except /health.
        max_events: Largest accepted event batch.
        max_request_bytes: Largest accepted request body.
    """
    app = FastAPI(
        title="Unified Energy Aggregator API",
        description="Device event ingest and TOU energy/cost totals.",
        version="0.1.0",
    )
    app.state.service = service
    app.state.auth = auth
    app.state.limits = {"max_events": max_events, "max_request_bytes": max_request_bytes}

    app.include_router(health_router)
    app.include_router(events_router)
    app.include_router(totals_router)
    app.include_router(actions_router)

    if not auth.token_map:
        logger.warning("API_TOKENS is empty; every authenticated route will answer 401")
    return app
