"""
Gateway credential store.

Reads the ``payment_gateways`` row for a gateway and turns it into a
``GatewayIdentity``. Read-only, and loaded per request so a config change
takes effect on the next payment without a restart.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from paygate.errors import GatewayMisconfigured
from paygate.gateways.base import GatewayIdentity, PaymentGateway
from paygate.models.enums import GatewayMode
from paygate.models.transaction import PaymentGatewayConfig

logger = logging.getLogger("paygate.credentials")


async def load_identity(session: AsyncSession, gateway: PaymentGateway) -> GatewayIdentity:
    """
    Resolve the active configuration for ``gateway``.

    Raises:
        GatewayMisconfigured: Row missing, inactive, or lacking a required key.
    """
    row = await session.get(PaymentGatewayConfig, gateway.code)
    if row is None:
        raise GatewayMisconfigured(f"No configuration for gateway {gateway.code}", gateway=gateway.code)
    if not row.is_active:
        raise GatewayMisconfigured(f"Gateway {gateway.code} is disabled", gateway=gateway.code)

    config = dict(row.config or {})
    missing = [name for name in gateway.required_credentials if not config.get(name)]
    if missing:
        logger.error("Gateway %s is missing credentials: %s", gateway.code, ", ".join(missing))
        raise GatewayMisconfigured(
            f"Gateway {gateway.code} is missing: {', '.join(missing)}", gateway=gateway.code
        )

    mode = GatewayMode.TEST if row.test_mode else GatewayMode.LIVE
    base_url = config.get("base_url") or gateway.base_urls.get(mode)
    if not base_url:
        raise GatewayMisconfigured(f"No {mode.value} base URL for gateway {gateway.code}", gateway=gateway.code)

    return GatewayIdentity(code=gateway.code, mode=mode, base_url=base_url.rstrip("/"), credentials=config)
