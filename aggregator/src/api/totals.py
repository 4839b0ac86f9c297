"""
Read endpoints: current totals and the per-device breakdown.

CHANGELOG:
- 2026-10-10: Initial creation (STORY-113)

TODO:
- None
"""

from fastapi import APIRouter

from aggregator.src.api.deps import Client, Service
from aggregator.src.models import DeviceBreakdown, Totals

router = APIRouter(prefix="/v1", tags=["totals"])


@router.get("/totals", response_model=Totals)
async def get_totals(client: Client, service: Service) -> Totals:
    """Return the current rounded totals without publishing them."""
    return await service.totals()


@router.get("/breakdown", response_model=list[DeviceBreakdown])
async def get_breakdown(client: Client, service: Service) -> list[DeviceBreakdown]:
    """Return per-device energy and power, sorted by device id."""
    return await service.breakdown()
