"""
Payment endpoints.

POST /payments               — Start a payment attempt on a gateway.
GET  /payments/{id}          — Current state of a transaction.
GET  /payments/{id}/trace    — Transaction plus its full audit trail.
POST /payments/{id}/capture  — Capture an authorized payment (PayPal, Airwallex).
"""

import json
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.api.deps import get_collaborators, get_registry
from paygate.database import get_session
from paygate.engine.payments import capture_payment, create_payment
from paygate.errors import (
    CaptureNotSupported,
    GatewayMisconfigured,
    InvalidPaymentRequest,
    NotFound,
    PaymentError,
    UnsupportedCurrency,
)
from paygate.gateways.base import CustomerInfo, PaymentIntentRequest
from paygate.gateways.registry import GatewayRegistry
from paygate.models.transaction import AuditLog, Transaction
from paygate.services.defaults import Collaborators

router = APIRouter(prefix="/payments", tags=["payments"])

FAILURE_STATUS = {
    InvalidPaymentRequest.code: 400,
    NotFound.code: 404,
    UnsupportedCurrency.code: 400,
}


class CustomerIn(BaseModel):
    name: str = "Customer"
    email: str = "customer@example.com"
    phone: str = "9999999999"


class PaymentRequest(BaseModel):
    gateway: str
    quote_ids: list[str] = Field(min_length=1)
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    customer: CustomerIn = Field(default_factory=CustomerIn)
    success_url: str = ""
    cancel_url: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


class PaymentResponse(BaseModel):
    success: bool
    gateway: str
    transaction_id: Optional[str] = None
    status: Optional[str] = None
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


class TransactionDetail(BaseModel):
    id: str
    gateway_code: str
    provider_txn_id: Optional[str]
    quote_ids: list[str]
    user_id: Optional[str]
    amount: Decimal
    currency: str
    original_amount: Decimal
    original_currency: str
    exchange_rate: Optional[Decimal]
    status: str
    needs_review: bool
    failure_reason: Optional[str]
    notes: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]

    model_config = {"from_attributes": True}


class AuditEntry(BaseModel):
    id: int
    action: str
    details: Optional[dict] = None
    timestamp: Optional[str]

    model_config = {"from_attributes": True}


class TransactionTrace(BaseModel):
    transaction: TransactionDetail
    audit_trail: list[AuditEntry]


class CaptureResponse(BaseModel):
    transaction_id: str
    status: str
    outcome: str
    captured_amount: Optional[Decimal] = None
    currency: Optional[str] = None


def _txn_to_detail(t: Transaction) -> TransactionDetail:
    return TransactionDetail(
        id=t.id,
        gateway_code=t.gateway_code,
        provider_txn_id=t.provider_txn_id,
        quote_ids=list(t.quote_ids or []),
        user_id=t.user_id,
        amount=t.amount,
        currency=t.currency,
        original_amount=t.original_amount,
        original_currency=t.original_currency,
        exchange_rate=t.exchange_rate,
        status=t.status,
        needs_review=bool(t.needs_review),
        failure_reason=t.failure_reason,
        notes=t.notes,
        created_at=t.created_at.isoformat() if t.created_at else None,
        updated_at=t.updated_at.isoformat() if t.updated_at else None,
    )


async def _load(session: AsyncSession, transaction_id: str) -> Transaction:
    txn = await session.get(Transaction, transaction_id)
    if not txn:
        raise HTTPException(status_code=404, detail=f"Transaction not found: {transaction_id}")
    return txn


@router.post("", response_model=PaymentResponse, status_code=201)
async def start_payment(
    body: PaymentRequest,
    session: AsyncSession = Depends(get_session),
    registry: GatewayRegistry = Depends(get_registry),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """
    Start a payment attempt.

    On success the response tells the client how to send the customer on:
    a redirect URL, a form to auto-submit, or a client secret for a browser SDK.
    Failures carry a machine ``error_code`` and a customer-safe message.
    """
    request = PaymentIntentRequest(
        gateway=body.gateway,
        quote_ids=body.quote_ids,
        amount=body.amount,
        currency=body.currency,
        customer=CustomerInfo(**body.customer.model_dump()),
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        metadata=body.metadata,
        user_id=body.user_id,
    )
    result = await create_payment(session, registry, request, collaborators)
    response = PaymentResponse(
        success=result.success,
        gateway=result.gateway,
        transaction_id=result.transaction_id,
        status=result.status.value if result.status else None,
        redirect_url=result.redirect_url,
        form_fields=result.form_fields,
        method=result.method,
        client_secret=result.client_secret,
        amount=result.amount,
        currency=result.currency,
        original_amount=result.original_amount,
        original_currency=result.original_currency,
        exchange_rate=result.exchange_rate,
        error_code=result.error_code,
        message=result.message,
    )
    if not result.success:
        raise HTTPException(
            status_code=FAILURE_STATUS.get(result.error_code or "", 502),
            detail=response.model_dump(mode="json"),
        )
    return response


@router.get("/{transaction_id}", response_model=TransactionDetail)
async def get_payment(transaction_id: str, session: AsyncSession = Depends(get_session)):
    return _txn_to_detail(await _load(session, transaction_id))


@router.get("/{transaction_id}/trace", response_model=TransactionTrace)
async def get_payment_trace(transaction_id: str, session: AsyncSession = Depends(get_session)):
    """Transaction details plus every audit entry, oldest first."""
    txn = await _load(session, transaction_id)

    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.transaction_id == transaction_id)
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
    )

    audit_trail = []
    for log in result.scalars().all():
        details = None
        if log.details:
            try:
                details = json.loads(log.details)
            except (json.JSONDecodeError, TypeError):
                details = {"raw": log.details}
        audit_trail.append(AuditEntry(
            id=log.id,
            action=log.action,
            details=details,
            timestamp=log.timestamp.isoformat() if log.timestamp else None,
        ))

    return TransactionTrace(transaction=_txn_to_detail(txn), audit_trail=audit_trail)


@router.post("/{transaction_id}/capture", response_model=CaptureResponse)
async def capture(
    transaction_id: str,
    session: AsyncSession = Depends(get_session),
    registry: GatewayRegistry = Depends(get_registry),
    collaborators: Collaborators = Depends(get_collaborators),
):
    try:
        outcome = await capture_payment(session, registry, transaction_id, collaborators)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (CaptureNotSupported, InvalidPaymentRequest) as e:
        raise HTTPException(status_code=409, detail={"error_code": e.code, "message": str(e)})
    except GatewayMisconfigured as e:
        raise HTTPException(status_code=503, detail={"error_code": e.code, "message": "Gateway unavailable"})
    except PaymentError as e:
        raise HTTPException(status_code=502, detail={"error_code": e.code, "message": "Capture could not be completed"})

    return CaptureResponse(
        transaction_id=outcome.transaction_id,
        status=outcome.status.value,
        outcome=outcome.outcome,
        captured_amount=outcome.captured_amount,
        currency=outcome.currency,
    )
