"""
Payment creation orchestrator.

Drives one payment attempt from request to provider hand-off:

  1. Validation (gateway known, quotes present, amount > 0)
  2. Currency resolution (convert to the gateway's settlement currency)
  3. Ledger write (transaction persisted ``pending`` BEFORE the provider call)
  4. Provider call (adapter opens the payment; never auto-retried)
  5. Audit logging (every step recorded against the transaction)

A failure after step 3 marks the attempt ``failed`` with the detail in
``failure_reason`` and the audit trail; the caller only ever sees a generic
"Payment could not be started". A retry is a new attempt with a new id.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from paygate.audit.logger import log_event
from paygate.config import settings
from paygate.errors import InvalidPaymentRequest, PaymentError
from paygate.gateways.base import CustomerInfo, GatewayOrder, PaymentGateway, PaymentIntentRequest
from paygate.gateways.credentials import load_identity
from paygate.gateways.registry import GatewayRegistry
from paygate.ledger.ledger import (
    create_transaction,
    get_transaction,
    record_provider_result,
    transition_status,
)
from paygate.models.enums import TransactionStatus
from paygate.models.transaction import Transaction
from paygate.money import convert, quantize, to_decimal
from paygate.services.collaborators import PaymentCaptured
from paygate.services.defaults import Collaborators

logger = logging.getLogger("paygate.payments")

GENERIC_FAILURE_MESSAGE = "Payment could not be started"


@dataclass
class PaymentCreationResult:
    success: bool
    gateway: str
    transaction_id: Optional[str] = None
    status: Optional[TransactionStatus] = None
    provider_txn_id: Optional[str] = None
    redirect_url: Optional[str] = None
    form_fields: Optional[dict[str, str]] = None
    method: Optional[str] = None
    client_secret: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    original_amount: Optional[Decimal] = None
    original_currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


@dataclass
class CaptureOutcome:
    transaction_id: str
    status: TransactionStatus
    outcome: str
    captured_amount: Optional[Decimal] = None
    currency: Optional[str] = None


@dataclass
class _ResolvedAmount:
    original_amount: Decimal
    original_currency: str
    amount: Decimal
    currency: str
    exchange_rate: Optional[Decimal]


async def _resolve_original_amount(
    request: PaymentIntentRequest, collaborators: Collaborators
) -> tuple[Decimal, str]:
    if request.amount is not None:
        try:
            amount = to_decimal(request.amount)
        except (TypeError, ValueError) as e:
            raise InvalidPaymentRequest(str(e), gateway=request.gateway) from e
        return amount, (request.currency or "USD").upper()

    quotes = await collaborators.quotes.get_quotes(request.quote_ids)
    if len(quotes) != len(set(request.quote_ids)):
        raise InvalidPaymentRequest("Some quotes could not be found", gateway=request.gateway)
    total = sum((q.total for q in quotes), Decimal("0"))
    return total, (request.currency or quotes[0].currency or "USD").upper()


async def resolve_amount(
    request: PaymentIntentRequest, gateway: PaymentGateway, collaborators: Collaborators
) -> _ResolvedAmount:
    """
    Work out what the gateway will actually charge.

    When the gateway cannot take the requested currency the amount is
    converted once, here, into its settlement currency, and the rate is kept
    with the transaction. Capture never re-quotes.
    """
    original_amount, original_currency = await _resolve_original_amount(request, collaborators)
    if original_amount <= 0:
        raise InvalidPaymentRequest("Amount must be greater than zero", gateway=gateway.code)

    if gateway.supports_currency(original_currency):
        return _ResolvedAmount(
            original_amount=original_amount,
            original_currency=original_currency,
            amount=quantize(original_amount, original_currency),
            currency=original_currency,
            exchange_rate=None,
        )

    target = gateway.settlement_currency
    rate = await collaborators.rates.get_rate(original_currency, target)
    converted = convert(original_amount, rate, target)
    if converted <= 0:
        raise InvalidPaymentRequest(
            f"{original_amount} {original_currency} is too small to charge in {target}", gateway=gateway.code
        )
    logger.info("Converted %s %s -> %s %s (rate %s)", original_amount, original_currency, converted, target, rate)
    return _ResolvedAmount(
        original_amount=original_amount,
        original_currency=original_currency,
        amount=converted,
        currency=target,
        exchange_rate=rate,
    )


def callback_url_for(gateway_code: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/api/callbacks/{gateway_code}"


async def create_payment(
    session: AsyncSession,
    registry: GatewayRegistry,
    request: PaymentIntentRequest,
    collaborators: Collaborators,
) -> PaymentCreationResult:
    """
    Start a payment attempt.

    Args:
        session: Database session.
        registry: Gateway adapters keyed by code.
        request: What the customer wants to pay.
        collaborators: Rate lookup and quote reader.

    Returns:
        PaymentCreationResult. ``success`` is False for every failure; the
        transaction id is set whenever an attempt was persisted.
    """
    # Steps 1-2: nothing is persisted if these fail
    try:
        if not request.quote_ids:
            raise InvalidPaymentRequest("At least one quote is required", gateway=request.gateway)
        gateway = registry.get(request.gateway)
        identity = await load_identity(session, gateway)
        resolved = await resolve_amount(request, gateway, collaborators)
    except InvalidPaymentRequest as e:
        logger.info("Rejected payment request for %s: %s", request.gateway, e)
        return PaymentCreationResult(success=False, gateway=request.gateway, error_code=e.code, message=str(e))
    except PaymentError as e:
        logger.warning("Payment for %s not started: [%s] %s", request.gateway, e.code, e)
        await log_event(session, "payment_not_started", gateway_code=request.gateway, details={
            "error": str(e),
            "code": e.code,
            "quote_ids": request.quote_ids,
        })
        await session.commit()
        return PaymentCreationResult(
            success=False, gateway=request.gateway, error_code=e.code, message=GENERIC_FAILURE_MESSAGE
        )

    # Step 3: persist before talking to the provider
    customer = request.customer or CustomerInfo()
    metadata: dict[str, Any] = dict(request.metadata)
    metadata.update({"success_url": request.success_url, "cancel_url": request.cancel_url})
    txn = await create_transaction(
        session,
        gateway_code=gateway.code,
        quote_ids=request.quote_ids,
        amount=resolved.amount,
        currency=resolved.currency,
        original_amount=resolved.original_amount,
        original_currency=resolved.original_currency,
        exchange_rate=resolved.exchange_rate,
        customer_name=customer.name,
        customer_email=customer.email,
        user_id=request.user_id,
        metadata=metadata,
    )

    order = GatewayOrder(
        transaction_id=txn.id,
        quote_ids=list(request.quote_ids),
        amount=resolved.amount,
        currency=resolved.currency,
        customer=customer,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
        callback_url=callback_url_for(gateway.code),
        metadata=metadata,
        user_id=request.user_id,
    )

    # Step 4: provider call
    try:
        payment = await gateway.create_payment(identity, order)
    except PaymentError as e:
        return await _fail_attempt(session, txn, gateway.code, e.code, f"[{e.code}] {e}", resolved)
    except Exception as e:
        logger.exception("Unexpected error creating %s payment for %s", gateway.code, txn.id)
        return await _fail_attempt(session, txn, gateway.code, "unexpected_error", f"Unexpected error: {e}", resolved)

    await record_provider_result(session, txn.id, payment.provider_txn_id, payment.raw_response)
    status = TransactionStatus.PENDING
    if payment.status != TransactionStatus.PENDING:
        result = await transition_status(
            session, txn.id, payment.status, evidence={"source": "create", **payment.raw_response}
        )
        status = result.current

    logger.info("Payment %s started on %s (provider ref %s)", txn.id, gateway.code, payment.provider_txn_id)
    return PaymentCreationResult(
        success=True,
        gateway=gateway.code,
        transaction_id=txn.id,
        status=status,
        provider_txn_id=payment.provider_txn_id,
        redirect_url=payment.redirect_url,
        form_fields=payment.form_fields,
        method=payment.method,
        client_secret=payment.client_secret,
        amount=resolved.amount,
        currency=resolved.currency,
        original_amount=resolved.original_amount,
        original_currency=resolved.original_currency,
        exchange_rate=resolved.exchange_rate,
    )


async def _fail_attempt(
    session: AsyncSession,
    txn: Transaction,
    gateway_code: str,
    error_code: str,
    reason: str,
    resolved: _ResolvedAmount,
) -> PaymentCreationResult:
    logger.warning("Payment %s on %s failed at creation: %s", txn.id, gateway_code, reason)
    await transition_status(session, txn.id, TransactionStatus.FAILED, evidence={"source": "create"}, reason=reason)
    return PaymentCreationResult(
        success=False,
        gateway=gateway_code,
        transaction_id=txn.id,
        status=TransactionStatus.FAILED,
        amount=resolved.amount,
        currency=resolved.currency,
        original_amount=resolved.original_amount,
        original_currency=resolved.original_currency,
        exchange_rate=resolved.exchange_rate,
        error_code=error_code,
        message=GENERIC_FAILURE_MESSAGE,
    )


async def notify_captured(session: AsyncSession, txn: Transaction, collaborators: Collaborators) -> None:
    """Hand a freshly captured payment to fulfillment. A notifier failure never undoes the capture."""
    event = PaymentCaptured(
        transaction_id=txn.id,
        quote_ids=list(txn.quote_ids or []),
        amount=Decimal(txn.amount),
        currency=txn.currency,
        gateway=txn.gateway_code,
        provider_txn_id=txn.provider_txn_id,
        metadata=dict(txn.payment_metadata or {}),
    )
    try:
        await collaborators.fulfillment.payment_captured(event)
    except Exception as e:
        logger.exception("Fulfillment notification failed for %s", txn.id)
        await log_event(session, "fulfillment_notify_failed", transaction_id=txn.id, gateway_code=txn.gateway_code, details={
            "error": str(e),
        })
    else:
        await log_event(session, "fulfillment_notified", transaction_id=txn.id, gateway_code=txn.gateway_code, details={
            "quote_ids": event.quote_ids,
        })
    await session.commit()


async def capture_payment(
    session: AsyncSession,
    registry: GatewayRegistry,
    transaction_id: str,
    collaborators: Collaborators,
) -> CaptureOutcome:
    """
    Capture an authorized payment and record the result.

    Raises:
        NotFound: Unknown transaction.
        CaptureNotSupported: The gateway completes payments on redirect.
        InvalidPaymentRequest: The provider never acknowledged the attempt.
        UpstreamError / GatewayMisconfigured: Provider call failed.
    """
    txn = await get_transaction(session, transaction_id, fresh=True)
    gateway = registry.get(txn.gateway_code)
    current = TransactionStatus(txn.status)
    if current.is_terminal:
        return CaptureOutcome(transaction_id=txn.id, status=current, outcome="noop")
    if not txn.provider_txn_id:
        raise InvalidPaymentRequest(f"Transaction {txn.id} has no provider reference", gateway=gateway.code)

    identity = await load_identity(session, gateway)
    await log_event(session, "capture_requested", transaction_id=txn.id, gateway_code=gateway.code, details={
        "provider_txn_id": txn.provider_txn_id,
    })
    await session.commit()

    result = await gateway.capture_payment(identity, txn.provider_txn_id, txn.id)
    transition = await transition_status(
        session,
        txn.id,
        result.status,
        evidence={"source": "capture", **result.raw_response},
        reason="capture declined" if result.status == TransactionStatus.FAILED else None,
    )
    if transition.newly_captured:
        await notify_captured(session, transition.transaction, collaborators)

    return CaptureOutcome(
        transaction_id=txn.id,
        status=transition.current,
        outcome=transition.outcome.value,
        captured_amount=result.captured_amount,
        currency=result.currency,
    )
