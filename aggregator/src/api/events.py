"""
POST /v1/events endpoint: the device event source.

Accepts a JSON batch ``{"events": [{"device_id", "attribute", "value",
"ts"}, ...]}`` from the home automation bridge and applies it to the engine
in order. Individual malformed events do not fail the request; they are
counted as rejected, and events for untracked devices as ignored. Only a
body that is not a batch at all is answered with 422.

CHANGELOG:
- 2026-10-10: Initial creation (STORY-113)

TODO:
- None
"""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from aggregator.src.api.deps import Client, Service
from aggregator.src.models import EventResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["events"])

DEFAULT_MAX_EVENTS = 1000
DEFAULT_MAX_REQUEST_BYTES = 1_048_576


class EventBatch(BaseModel):
    """Batch payload for the events endpoint. Events stay raw until the service."""

    events: list[Any]


@router.post("/events", response_model=EventResult)
async def post_events(request: Request, client: Client, service: Service) -> EventResult:
    """Apply a batch of device events.

    Raises:
        HTTPException: 413 if the body or the batch exceeds the limits.
    """
    limits = getattr(request.app.state, "limits", {})
    max_request_bytes = limits.get("max_request_bytes", DEFAULT_MAX_REQUEST_BYTES)
    max_events = limits.get("max_events", DEFAULT_MAX_EVENTS)

    content_length = request.headers.get("content-length")
    if content_length is not None:
        try:
            content_length_int = int(content_length)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid Content-Length header.") from None
        if content_length_int > max_request_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Request body exceeds limit of {max_request_bytes} bytes.",
            )

    body = await request.body()
    if len(body) > max_request_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"Request body exceeds limit of {max_request_bytes} bytes.",
        )

    try:
        batch = EventBatch.model_validate_json(body)
    except ValidationError as exc:
        return JSONResponse(status_code=422, content={"detail": exc.errors(include_url=False)})

    if not batch.events:
        return EventResult()

    if len(batch.events) > max_events:
        raise HTTPException(
            status_code=413,
            detail=f"Batch size {len(batch.events)} exceeds limit of {max_events}. "
            "Split into smaller batches.",
        )

    result = await service.handle_events(batch.events)
    logger.info(
        "Events from %s: accepted=%d ignored=%d rejected=%d",
        client,
        result.accepted,
        result.ignored,
        result.rejected,
    )
    return result
