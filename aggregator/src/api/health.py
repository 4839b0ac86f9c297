"""
Health check endpoint for the aggregator API.

GET /health returns {"status": "ok"} with HTTP 200. No authentication is
required; this is intended for Docker HEALTHCHECK and local monitoring.

CHANGELOG:
- 2026-10-10: Initial creation (STORY-113)

TODO:
- None
"""

from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
