"""
Bearer token cache for client-credentials gateways.

Tokens are keyed by ``(client_id, scope)`` and served only while
``now < expires_at - safety_margin``. Concurrent misses on one key share a
single in-flight exchange: every waiter gets the same token, or the same
exception, from one upstream call.

The cache lives for the life of the process and is owned by whoever builds
the gateway registry; nothing here is module-global, so it can be swapped
for a shared store when several processes need one token pool.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import partial
from typing import Awaitable, Callable, Optional

import httpx

from paygate.config import settings
from paygate.engine.retry import RETRIABLE_STATUS_CODES, with_retry
from paygate.errors import GatewayMisconfigured, RateLimitError, UpstreamError

logger = logging.getLogger("paygate.oauth")

DEFAULT_TOKEN_TTL = timedelta(minutes=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenStyle(str, Enum):
    """How a gateway wants its client credentials presented."""

    BASIC_AUTH = "basic_auth"  # PayPal: HTTP Basic + grant_type form body
    FORM_POST = "form_post"  # PayU: client_id/secret/scope in the form body
    API_KEY_HEADERS = "api_key_headers"  # Airwallex: x-client-id / x-api-key login


@dataclass(frozen=True)
class ClientCredentials:
    token_url: str
    client_id: str
    client_secret: str
    scope: str = ""
    style: TokenStyle = TokenStyle.BASIC_AUTH
    gateway: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.client_id, self.scope)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_at: datetime


TokenExchange = Callable[[httpx.AsyncClient, ClientCredentials], Awaitable[TokenGrant]]


def _parse_expiry(data: dict, issued_at: datetime) -> datetime:
    if data.get("expires_in") is not None:
        return issued_at + timedelta(seconds=int(data["expires_in"]))
    raw = data.get("expires_at")
    if raw:
        try:
            parsed = datetime.fromisoformat(str(raw))
        except ValueError:
            logger.warning("Unparseable token expiry %r, assuming %s", raw, DEFAULT_TOKEN_TTL)
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return issued_at + DEFAULT_TOKEN_TTL


async def exchange_client_credentials(http: httpx.AsyncClient, creds: ClientCredentials) -> TokenGrant:
    """Perform one token request against the gateway's token endpoint."""
    issued_at = _utcnow()
    try:
        if creds.style == TokenStyle.BASIC_AUTH:
            resp = await http.post(
                creds.token_url,
                auth=(creds.client_id, creds.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        elif creds.style == TokenStyle.FORM_POST:
            resp = await http.post(
                creds.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": creds.client_id,
                    "client_secret": creds.client_secret,
                    "scope": creds.scope,
                },
            )
        else:
            resp = await http.post(
                creds.token_url,
                headers={
                    "x-client-id": creds.client_id,
                    "x-api-key": creds.client_secret,
                    "Content-Type": "application/json",
                },
            )
    except httpx.TimeoutException as e:
        raise UpstreamError("Token request timed out", gateway=creds.gateway, retriable=True) from e
    except httpx.RequestError as e:
        raise UpstreamError(f"Token request failed: {e}", gateway=creds.gateway, retriable=True) from e

    if resp.status_code in (401, 403):
        raise GatewayMisconfigured(
            f"Token endpoint rejected credentials ({resp.status_code})", gateway=creds.gateway
        )
    if resp.status_code == 429:
        raise RateLimitError("Token endpoint rate limited", gateway=creds.gateway)
    if resp.status_code >= 400:
        raise UpstreamError(
            f"Token endpoint returned {resp.status_code}",
            gateway=creds.gateway,
            status_code=resp.status_code,
            retriable=resp.status_code in RETRIABLE_STATUS_CODES,
        )

    try:
        data = resp.json()
    except ValueError as e:
        raise UpstreamError("Token endpoint returned invalid JSON", gateway=creds.gateway) from e
    if not isinstance(data, dict):
        raise UpstreamError("Token endpoint returned unexpected payload", gateway=creds.gateway)
    token = data.get("access_token") or data.get("token")
    if not token:
        raise UpstreamError("Token endpoint response carried no token", gateway=creds.gateway)
    try:
        expires_at = _parse_expiry(data, issued_at)
    except (TypeError, ValueError) as e:
        raise UpstreamError(f"Token endpoint returned unusable expiry: {e}", gateway=creds.gateway) from e
    return TokenGrant(access_token=token, expires_at=expires_at)


class OAuthTokenCache:
    """
    In-process bearer token cache with single-flight acquisition.

    Args:
        http: Shared HTTP client used for token exchanges.
        exchange: Callable performing one upstream exchange (injectable for tests).
        safety_margin: Tokens this close to expiry are treated as expired.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        exchange: TokenExchange = exchange_client_credentials,
        safety_margin: Optional[timedelta] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._http = http
        self._exchange = exchange
        self._safety_margin = (
            safety_margin
            if safety_margin is not None
            else timedelta(seconds=settings.token_safety_margin_seconds)
        )
        self._clock = clock
        self._entries: dict[tuple[str, str], TokenGrant] = {}
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}

    def _usable_until(self, grant: TokenGrant) -> datetime:
        return grant.expires_at - self._safety_margin

    def validate_token(self, creds: ClientCredentials) -> Optional[timedelta]:
        """Remaining usable lifetime of the cached token, or None if there is none."""
        grant = self._entries.get(creds.key)
        if grant is None:
            return None
        remaining = self._usable_until(grant) - self._clock()
        return remaining if remaining > timedelta(0) else None

    async def get_token(self, creds: ClientCredentials) -> str:
        grant = self._entries.get(creds.key)
        if grant is not None and self._clock() < self._usable_until(grant):
            return grant.access_token
        return (await self._acquire(creds)).access_token

    async def refresh_token(self, creds: ClientCredentials) -> str:
        """Drop the cached token and fetch a new one."""
        self._entries.pop(creds.key, None)
        return (await self._acquire(creds)).access_token

    def evict(self, creds: ClientCredentials) -> None:
        self._entries.pop(creds.key, None)

    async def _acquire(self, creds: ClientCredentials) -> TokenGrant:
        key = creds.key
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(creds))
            self._inflight[key] = task
            task.add_done_callback(partial(self._finish, key))
        # Shielded so one waiter being cancelled does not cancel the others.
        return await asyncio.shield(task)

    def _finish(self, key: tuple[str, str], task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            task.exception()  # waiters re-raise it; mark as retrieved

    async def _fetch(self, creds: ClientCredentials) -> TokenGrant:
        logger.info("Acquiring %s token for client %s scope=%r", creds.gateway or "oauth", creds.client_id[:6], creds.scope)
        grant = await with_retry(self._exchange, self._http, creds)
        if self._usable_until(grant) <= self._clock():
            logger.warning(
                "Token for %s expires within the safety margin; it will be refetched on every call",
                creds.gateway or creds.client_id[:6],
            )
        self._entries[creds.key] = grant
        return grant
