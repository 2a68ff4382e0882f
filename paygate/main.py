"""
Paygate: multi-gateway payment processing API.

One payment lifecycle (create, redirect, callback, capture, recover) over
eSewa, PayU, PayPal, Airwallex and PayU payment links.

Start the server:
    uvicorn paygate.main:app --reload
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI

from paygate import __version__
from paygate.api.callbacks import router as callbacks_router
from paygate.api.health import router as health_router
from paygate.api.payments import router as payments_router
from paygate.api.recovery import router as recovery_router
from paygate.config import settings
from paygate.database import async_session, init_db
from paygate.engine.recovery import recovery_loop
from paygate.gateways.registry import GatewayRegistry, build_default_registry
from paygate.oauth.token_cache import OAuthTokenCache
from paygate.services.defaults import Collaborators

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("paygate.main")


def create_app(
    collaborators: Optional[Collaborators] = None,
    registry: Optional[GatewayRegistry] = None,
    run_recovery: Optional[bool] = None,
) -> FastAPI:
    """Build the application. Tests pass their own collaborators and registry."""
    run_recovery = settings.recovery_enabled if run_recovery is None else run_recovery

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db()
        http = httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_seconds))
        app.state.http = http
        app.state.tokens = OAuthTokenCache(http)
        app.state.registry = registry or build_default_registry(http, app.state.tokens)
        app.state.collaborators = collaborators or Collaborators()

        sweeper = None
        if run_recovery:
            sweeper = asyncio.create_task(
                recovery_loop(async_session, app.state.registry, app.state.collaborators)
            )
        logger.info("Paygate started with gateways: %s", ", ".join(app.state.registry.codes()))
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper
            await http.aclose()

    app = FastAPI(
        title="Paygate",
        description=(
            "Multi-gateway payment processing core. Creates payment attempts, "
            "verifies provider callbacks, and keeps an auditable, idempotent ledger."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(health_router)
    app.include_router(payments_router, prefix="/api")
    app.include_router(callbacks_router, prefix="/api")
    app.include_router(recovery_router, prefix="/api")
    return app


app = create_app()
