"""
FastAPI dependency providers.

The service and the auth object live on ``app.state``; these thin wrappers
let routes reach them through Depends().

CHANGELOG:
- 2026-10-10: Initial creation (STORY-113)
"""

from typing import Annotated

from fastapi import Depends, Request

from aggregator.src.service import EnergyService


async def require_client(request: Request) -> str:
    """Authenticate the request via BearerAuth on app.state and return the client."""
    return await request.app.state.auth.verify(request)


def get_service(request: Request) -> EnergyService:
    return request.app.state.service


Client = Annotated[str, Depends(require_client)]
Service = Annotated[EnergyService, Depends(get_service)]
