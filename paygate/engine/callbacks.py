"""
Inbound callback processor.

Every provider notification, whether a browser redirect, a form POST or a
JSON webhook, goes through one path:

  1. Store the raw event (committed on its own, so it survives anything below)
  2. Adapter parses and verifies it; invalid -> 400, ledger untouched
  3. Resolve the transaction by provider id or our echoed id
  4. Amount check on "captured" (mismatch -> needs review, no transition)
  5. ``transition_status`` (which is what makes redelivery harmless)
  6. On a fresh capture, notify fulfillment
  7. Acknowledge: a redirect for browsers, a 200 for servers

Once a callback is verified, nothing past that point is reported back to
the provider as an error. Not-found, conflicts and upstream hiccups are
logged, audited and acknowledged so the provider stops redelivering.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.audit.logger import log_event
from paygate.engine.payments import capture_payment, notify_captured
from paygate.errors import NotFound, PaymentError, SignatureInvalid, UpstreamError
from paygate.gateways.base import InboundCallback, PaymentGateway, VerificationResult
from paygate.gateways.credentials import load_identity
from paygate.gateways.registry import GatewayRegistry
from paygate.ledger.ledger import flag_for_review, resolve_transaction, transition_status
from paygate.models.enums import CallbackResult, TransactionStatus
from paygate.models.transaction import CallbackEvent, Transaction
from paygate.money import to_minor_units
from paygate.services.defaults import Collaborators

logger = logging.getLogger("paygate.callbacks")

TRANSITION_RESULTS = {
    "applied": CallbackResult.APPLIED,
    "noop": CallbackResult.NOOP,
    "stale": CallbackResult.STALE,
    "conflict": CallbackResult.CONFLICT,
}


@dataclass
class CallbackOutcome:
    gateway: str
    result: CallbackResult
    transaction_id: Optional[str] = None
    status: Optional[TransactionStatus] = None
    message: Optional[str] = None
    redirect_url: Optional[str] = None
    http_status: int = 200


async def _record_event(
    session: AsyncSession,
    gateway_code: str,
    inbound: InboundCallback,
    fields: dict[str, Any],
    signature: Optional[str],
) -> int:
    event = CallbackEvent(
        gateway_code=gateway_code,
        method=inbound.method.upper(),
        payload=fields,
        declared_signature=signature,
    )
    session.add(event)
    await session.commit()
    return event.id


async def _finish(
    session: AsyncSession,
    event_id: int,
    outcome: CallbackOutcome,
    declared: Optional[TransactionStatus] = None,
) -> CallbackOutcome:
    values: dict[str, Any] = {
        "outcome": outcome.result.value,
        "transaction_id": outcome.transaction_id,
        "declared_status": declared.value if declared else None,
    }
    if outcome.result in (CallbackResult.ERROR, CallbackResult.SIGNATURE_INVALID, CallbackResult.NOT_FOUND):
        values["error_message"] = outcome.message
    await session.execute(update(CallbackEvent).where(CallbackEvent.id == event_id).values(**values))
    await session.commit()
    logger.info(
        "Callback %s -> %s (txn=%s status=%s)",
        outcome.gateway,
        outcome.result.value,
        outcome.transaction_id or "-",
        outcome.status.value if outcome.status else "-",
    )
    return outcome


def _redirect_for(metadata: dict[str, Any], status: Optional[TransactionStatus], cancelled: bool) -> Optional[str]:
    if cancelled or status in (TransactionStatus.FAILED, TransactionStatus.EXPIRED):
        return metadata.get("cancel_url") or None
    return metadata.get("success_url") or None


def amount_matches(txn: Transaction, verification: VerificationResult) -> bool:
    """Declared amount agrees with the ledger to the minor unit. Unknown amounts are not a mismatch."""
    if verification.amount is None:
        return True
    currency = (verification.currency or txn.currency).upper()
    if currency != txn.currency.upper():
        # Provider reported in another currency (e.g. settled after conversion)
        return True
    return to_minor_units(verification.amount, currency) == to_minor_units(txn.amount, txn.currency)


async def _capture_after_approval(
    session: AsyncSession,
    registry: GatewayRegistry,
    txn_id: str,
    gateway_code: str,
    collaborators: Collaborators,
) -> Optional[TransactionStatus]:
    try:
        result = await capture_payment(session, registry, txn_id, collaborators)
    except PaymentError as e:
        # Stays processing; a later webhook or the sweeper settles it
        logger.warning("Capture after approval failed for %s: [%s] %s", txn_id, e.code, e)
        await log_event(session, "capture_after_approval_failed", transaction_id=txn_id, gateway_code=gateway_code, details={
            "error": str(e),
            "code": e.code,
        })
        await session.commit()
        return None
    return result.status


async def process_callback(
    session: AsyncSession,
    registry: GatewayRegistry,
    gateway_code: str,
    inbound: InboundCallback,
    collaborators: Collaborators,
) -> CallbackOutcome:
    """
    Verify and apply one inbound provider notification.

    Safe to call any number of times with the same callback.

    Returns:
        CallbackOutcome with the HTTP status and, for browser callbacks, where
        to send the customer.
    """
    try:
        gateway: PaymentGateway = registry.get(gateway_code)
    except NotFound as e:
        logger.warning("Callback for unknown gateway %s", gateway_code)
        return CallbackOutcome(gateway=gateway_code, result=CallbackResult.NOT_FOUND, message=str(e), http_status=404)

    try:
        payload = gateway.parse_callback(inbound)
    except (ValueError, KeyError) as e:
        event_id = await _record_event(session, gateway.code, inbound, dict(inbound.query), None)
        return await _finish(session, event_id, CallbackOutcome(
            gateway=gateway.code, result=CallbackResult.MALFORMED, message=str(e), http_status=400,
        ))

    event_id = await _record_event(session, gateway.code, inbound, payload.fields, payload.signature)

    try:
        identity = await load_identity(session, gateway)
        verification = await gateway.verify_callback(identity, payload)
    except SignatureInvalid as e:
        verification = VerificationResult(valid=False, reason=str(e))
    except PaymentError as e:
        # Misconfiguration or provider unreachable while confirming: acknowledged and logged
        level = logging.WARNING if isinstance(e, UpstreamError) else logging.ERROR
        logger.log(level, "Could not verify %s callback: [%s] %s", gateway.code, e.code, e)
        await log_event(session, "callback_verification_error", gateway_code=gateway.code, details={
            "error": str(e),
            "code": e.code,
            "event_id": event_id,
        })
        return await _finish(session, event_id, CallbackOutcome(
            gateway=gateway.code, result=CallbackResult.ERROR, message=str(e),
        ))

    if not verification.valid:
        logger.warning(
            "SECURITY | rejected %s callback (event %s): %s", gateway.code, event_id, verification.reason
        )
        await log_event(session, "callback_signature_invalid", gateway_code=gateway.code, details={
            "reason": verification.reason,
            "event_id": event_id,
        })
        return await _finish(session, event_id, CallbackOutcome(
            gateway=gateway.code,
            result=CallbackResult.SIGNATURE_INVALID,
            message=verification.reason or "Callback verification failed",
            http_status=400,
        ))

    txn = await resolve_transaction(
        session,
        gateway.code,
        provider_ref=verification.provider_ref,
        transaction_ref=verification.transaction_ref,
    )
    browser = gateway.redirects_browser(inbound)

    if txn is None:
        logger.warning(
            "Verified %s callback matches no transaction (provider_ref=%s, ref=%s)",
            gateway.code, verification.provider_ref, verification.transaction_ref,
        )
        await log_event(session, "callback_unmatched", gateway_code=gateway.code, details={
            "provider_ref": verification.provider_ref,
            "transaction_ref": verification.transaction_ref,
            "event_id": event_id,
        })
        return await _finish(session, event_id, CallbackOutcome(
            gateway=gateway.code, result=CallbackResult.NOT_FOUND, message="No matching transaction",
        ), verification.declared_status)

    txn_id = txn.id
    metadata = dict(txn.payment_metadata or {})

    declared = verification.declared_status
    if declared is None:
        await log_event(session, "callback_ignored", transaction_id=txn.id, gateway_code=gateway.code, details={
            "reason": verification.reason,
            "cancelled": verification.cancelled,
            "event_id": event_id,
        })
        status = TransactionStatus(txn.status)
        return await _finish(session, event_id, CallbackOutcome(
            gateway=gateway.code,
            result=CallbackResult.IGNORED,
            transaction_id=txn.id,
            status=status,
            message=verification.reason,
            redirect_url=_redirect_for(metadata, status, verification.cancelled) if browser else None,
        ))

    if declared == TransactionStatus.CAPTURED and not amount_matches(txn, verification):
        logger.error(
            "AMOUNT MISMATCH | txn=%s ledger=%s %s callback=%s %s",
            txn.id, txn.amount, txn.currency, verification.amount, verification.currency,
        )
        txn = await flag_for_review(
            session,
            txn.id,
            "amount_mismatch",
            f"Provider reported {verification.amount} {verification.currency or txn.currency}; expected {txn.amount} {txn.currency}",
            {
                "expected": txn.amount,
                "expected_currency": txn.currency,
                "reported": verification.amount,
                "reported_currency": verification.currency,
                "event_id": event_id,
            },
        )
        status = TransactionStatus(txn.status)
        return await _finish(session, event_id, CallbackOutcome(
            gateway=gateway.code,
            result=CallbackResult.AMOUNT_MISMATCH,
            transaction_id=txn.id,
            status=status,
            message="Amount does not match the transaction",
            redirect_url=_redirect_for(metadata, status, False) if browser else None,
        ), declared)

    evidence = {"source": "callback", "event_id": event_id, **verification.evidence}
    reason = None
    if declared == TransactionStatus.FAILED:
        reason = "cancelled by customer" if verification.cancelled else (verification.reason or "declined by provider")

    try:
        transition = await transition_status(session, txn_id, declared, evidence=evidence, reason=reason)
    except PaymentError as e:
        logger.exception("Could not apply %s callback to %s", gateway.code, txn_id)
        return await _finish(session, event_id, CallbackOutcome(
            gateway=gateway.code, result=CallbackResult.ERROR, transaction_id=txn_id, message=str(e),
        ), declared)

    result = TRANSITION_RESULTS[transition.outcome.value]
    status = transition.current

    if transition.newly_captured:
        await notify_captured(session, transition.transaction, collaborators)
    elif (
        gateway.captures_on_approval
        and status == TransactionStatus.PROCESSING
        and declared == TransactionStatus.PROCESSING
        and result in (CallbackResult.APPLIED, CallbackResult.NOOP)
    ):
        status = await _capture_after_approval(session, registry, txn_id, gateway.code, collaborators) or status

    return await _finish(session, event_id, CallbackOutcome(
        gateway=gateway.code,
        result=result,
        transaction_id=txn_id,
        status=status,
        message=str(transition.conflict) if transition.conflict else None,
        redirect_url=_redirect_for(metadata, status, verification.cancelled) if browser else None,
    ), declared)
