"""
Manual actions: reset today's or this month's totals, and push now.

Each action returns the totals as they stand after the action.

CHANGELOG:
- 2026-10-10: Initial creation (STORY-113)

TODO:
- None
"""

import logging

from fastapi import APIRouter

from aggregator.src.api.deps import Client, Service
from aggregator.src.models import Totals

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/actions", tags=["actions"])


@router.post("/reset-today", response_model=Totals)
async def reset_today(client: Client, service: Service) -> Totals:
    logger.info("reset-today requested by %s", client)
    return await service.reset_today()


@router.post("/reset-month", response_model=Totals)
async def reset_month(client: Client, service: Service) -> Totals:
    logger.info("reset-month requested by %s", client)
    return await service.reset_month()


@router.post("/push", response_model=Totals)
async def push(client: Client, service: Service) -> Totals:
    logger.info("push requested by %s", client)
    return await service.push()
