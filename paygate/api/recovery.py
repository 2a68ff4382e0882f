"""
Recovery endpoints.

POST /recovery/sweep — Run one recovery sweep now (expire stale attempts, send reminders).
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.api.deps import get_collaborators, get_registry
from paygate.database import get_session
from paygate.engine.recovery import run_recovery_sweep
from paygate.gateways.registry import GatewayRegistry
from paygate.services.defaults import Collaborators

router = APIRouter(prefix="/recovery", tags=["recovery"])


class SweepErrorOut(BaseModel):
    transaction_id: str
    stage: str
    message: str


class SweepResponse(BaseModel):
    reminded: list[str]
    expired: list[str]
    skipped: list[str]
    errors: list[SweepErrorOut]


@router.post("/sweep", response_model=SweepResponse)
async def sweep(
    session: AsyncSession = Depends(get_session),
    registry: GatewayRegistry = Depends(get_registry),
    collaborators: Collaborators = Depends(get_collaborators),
):
    report = await run_recovery_sweep(session, registry, collaborators)
    return SweepResponse(**asdict(report))
