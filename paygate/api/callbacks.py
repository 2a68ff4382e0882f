"""
Provider callback endpoint.

GET|POST /callbacks/{gateway_code} — Browser returns, form posts and JSON
webhooks from every gateway. Unauthenticated; each adapter verifies its own
callbacks.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.api.deps import get_collaborators, get_registry
from paygate.database import get_session
from paygate.engine.callbacks import process_callback
from paygate.gateways.base import InboundCallback
from paygate.gateways.registry import GatewayRegistry
from paygate.services.defaults import Collaborators

router = APIRouter(prefix="/callbacks", tags=["callbacks"])


@router.api_route("/{gateway_code}", methods=["GET", "POST"])
async def receive_callback(
    gateway_code: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    registry: GatewayRegistry = Depends(get_registry),
    collaborators: Collaborators = Depends(get_collaborators),
):
    raw = await request.body()
    inbound = InboundCallback(
        method=request.method,
        query=dict(request.query_params),
        body=raw.decode("utf-8", errors="replace"),
        headers={name.lower(): value for name, value in request.headers.items()},
    )
    outcome = await process_callback(session, registry, gateway_code, inbound, collaborators)

    if outcome.redirect_url:
        return RedirectResponse(outcome.redirect_url, status_code=303)
    return JSONResponse(
        status_code=outcome.http_status,
        content={
            "result": outcome.result.value,
            "transaction_id": outcome.transaction_id,
            "status": outcome.status.value if outcome.status else None,
            "message": outcome.message,
        },
    )
