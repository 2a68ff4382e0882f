"""
Seed the database with sandbox gateway configuration.

Creates one ``payment_gateways`` row per supported gateway, all in test
mode. eSewa and PayU use their published sandbox merchants; the OAuth
gateways read their credentials from the environment and are left inactive
when those are not set.

Run:
    python -m seed.seed_data
"""

import asyncio
import os

from paygate.database import async_session, init_db
from paygate.models.transaction import PaymentGatewayConfig


GATEWAYS = [
    {
        "code": "esewa",
        "name": "eSewa",
        "config": {"merchant_code": "EPAYTEST", "secret_key": "8gBm/:&EnhH.1/q"},
    },
    {
        "code": "payu",
        "name": "PayU (hosted checkout)",
        "config": {"merchant_key": "gtKFFx", "salt_key": "eCwWELxi"},
    },
    {
        "code": "paypal",
        "name": "PayPal",
        "config": {
            "client_id": os.environ.get("PAYPAL_CLIENT_ID", ""),
            "client_secret": os.environ.get("PAYPAL_CLIENT_SECRET", ""),
            "webhook_id": os.environ.get("PAYPAL_WEBHOOK_ID", ""),
        },
    },
    {
        "code": "airwallex",
        "name": "Airwallex",
        "config": {
            "client_id": os.environ.get("AIRWALLEX_CLIENT_ID", ""),
            "api_key": os.environ.get("AIRWALLEX_API_KEY", ""),
            "webhook_secret": os.environ.get("AIRWALLEX_WEBHOOK_SECRET", ""),
        },
    },
    {
        "code": "payu_link",
        "name": "PayU payment links",
        "config": {
            "client_id": os.environ.get("PAYU_LINK_CLIENT_ID", ""),
            "client_secret": os.environ.get("PAYU_LINK_CLIENT_SECRET", ""),
            "merchant_id": os.environ.get("PAYU_LINK_MERCHANT_ID", ""),
        },
    },
]


async def seed():
    """Seed the database with gateway configuration."""
    await init_db()

    async with async_session() as session:
        created = 0
        for gw in GATEWAYS:
            if await session.get(PaymentGatewayConfig, gw["code"]):
                continue
            # Missing credentials would fail every request; keep the row but switch it off
            complete = all(gw["config"].get(k) for k in gw["config"] if k != "webhook_id")
            session.add(PaymentGatewayConfig(
                code=gw["code"],
                name=gw["name"],
                is_active=complete,
                test_mode=True,
                config=gw["config"],
            ))
            created += 1

        await session.commit()
        print(f"Seeded {created} gateway configurations ({len(GATEWAYS) - created} already present).")


if __name__ == "__main__":
    asyncio.run(seed())
