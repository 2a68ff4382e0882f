"""Liveness endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from paygate import __version__
from paygate.api.deps import get_registry
from paygate.database import get_session
from paygate.gateways.registry import GatewayRegistry

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(
    session: AsyncSession = Depends(get_session),
    registry: GatewayRegistry = Depends(get_registry),
):
    await session.execute(text("SELECT 1"))
    return {"status": "ok", "version": __version__, "gateways": registry.codes()}
