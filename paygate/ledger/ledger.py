"""
Transaction ledger: the durable record of payment attempts.

``transition_status`` is the only way a transaction's status changes. It
is an optimistic compare-and-set: the UPDATE only matches the row if the
status and version are still the ones we read. A writer that loses the
race re-reads and re-classifies, which turns a concurrent duplicate into a
NOOP and a concurrent contradictory outcome into a CONFLICT instead of an
overwrite.

Conflicts are never resolved here. The transaction keeps its first
terminal status, is flagged ``needs_review`` and gets an audit entry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.audit.logger import append_note, log_event
from paygate.errors import ConflictingFinalState, NotFound, PaymentError
from paygate.ledger.state_machine import check_transition
from paygate.models.enums import TransactionStatus, TransitionOutcome
from paygate.models.transaction import Transaction

logger = logging.getLogger("paygate.ledger")

MAX_CAS_ATTEMPTS = 3


@dataclass
class TransitionResult:
    transaction: Transaction
    outcome: TransitionOutcome
    previous: TransactionStatus
    requested: TransactionStatus
    conflict: Optional[ConflictingFinalState] = None

    @property
    def current(self) -> TransactionStatus:
        return TransactionStatus(self.transaction.status)

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED

    @property
    def newly_captured(self) -> bool:
        return self.applied and self.current == TransactionStatus.CAPTURED

    def raise_for_conflict(self) -> None:
        if self.conflict is not None:
            raise self.conflict


async def create_transaction(
    session: AsyncSession,
    *,
    gateway_code: str,
    quote_ids: list[str],
    amount: Decimal,
    currency: str,
    original_amount: Decimal,
    original_currency: str,
    exchange_rate: Optional[Decimal] = None,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
    user_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> Transaction:
    """Persist a new ``pending`` attempt. Committed before any provider call is made."""
    txn = Transaction(
        gateway_code=gateway_code,
        quote_ids=list(quote_ids),
        amount=amount,
        currency=currency,
        original_amount=original_amount,
        original_currency=original_currency,
        exchange_rate=exchange_rate,
        customer_name=customer_name,
        customer_email=customer_email,
        user_id=user_id,
        payment_metadata=dict(metadata or {}),
        status=TransactionStatus.PENDING.value,
        version=1,
    )
    session.add(txn)
    await session.flush()

    txn.notes = append_note(None, f"Created for {gateway_code}: {amount} {currency}")
    await log_event(session, "transaction_created", transaction_id=txn.id, gateway_code=gateway_code, details={
        "quote_ids": list(quote_ids),
        "amount": amount,
        "currency": currency,
        "original_amount": original_amount,
        "original_currency": original_currency,
        "exchange_rate": exchange_rate,
    })
    await session.commit()
    return txn


async def get_transaction(session: AsyncSession, transaction_id: str, *, fresh: bool = False) -> Transaction:
    txn = await session.get(Transaction, transaction_id, populate_existing=fresh)
    if txn is None:
        raise NotFound(f"Transaction not found: {transaction_id}")
    return txn


async def find_by_provider_ref(
    session: AsyncSession, gateway_code: str, provider_txn_id: str
) -> Optional[Transaction]:
    result = await session.execute(
        select(Transaction).where(
            Transaction.gateway_code == gateway_code,
            Transaction.provider_txn_id == provider_txn_id,
        )
    )
    return result.scalar_one_or_none()


async def resolve_transaction(
    session: AsyncSession,
    gateway_code: str,
    *,
    provider_ref: Optional[str] = None,
    transaction_ref: Optional[str] = None,
) -> Optional[Transaction]:
    """
    Find the transaction a callback is about.

    The provider's own id wins. Our echoed id is only accepted when it
    belongs to the same gateway and does not contradict a provider id we
    already recorded.
    """
    if provider_ref:
        txn = await find_by_provider_ref(session, gateway_code, provider_ref)
        if txn is not None:
            return txn
    if transaction_ref:
        txn = await session.get(Transaction, transaction_ref)
        if txn is None or txn.gateway_code != gateway_code:
            return None
        if provider_ref and txn.provider_txn_id and txn.provider_txn_id != provider_ref:
            logger.warning(
                "Callback for %s names provider id %s but ledger has %s",
                txn.id, provider_ref, txn.provider_txn_id,
            )
            return None
        return txn
    return None


async def record_provider_result(
    session: AsyncSession,
    transaction_id: str,
    provider_txn_id: str,
    raw_response: Optional[dict[str, Any]] = None,
) -> Transaction:
    """Attach the provider's id and response snapshot. Does not change status."""
    txn = await get_transaction(session, transaction_id)
    if txn.provider_txn_id and txn.provider_txn_id != provider_txn_id:
        raise PaymentError(
            f"Transaction {transaction_id} already has provider id {txn.provider_txn_id}",
            gateway=txn.gateway_code,
        )
    txn.provider_txn_id = provider_txn_id
    txn.gateway_response = raw_response or {}
    txn.notes = append_note(txn.notes, f"Provider reference: {provider_txn_id}")
    await log_event(session, "provider_result_recorded", transaction_id=txn.id, gateway_code=txn.gateway_code, details={
        "provider_txn_id": provider_txn_id,
        "response": raw_response,
    })
    await session.commit()
    return txn


async def transition_status(
    session: AsyncSession,
    transaction_id: str,
    new_status: TransactionStatus,
    evidence: Optional[dict[str, Any]] = None,
    reason: Optional[str] = None,
) -> TransitionResult:
    """
    Move a transaction to ``new_status`` if the state machine allows it.

    Args:
        session: Database session. Commits on every path that writes.
        transaction_id: Internal transaction id.
        new_status: Requested status.
        evidence: What justified the change (callback fields, capture response).
        reason: Human-readable cause, stored as ``failure_reason`` on failure.

    Returns:
        TransitionResult; ``conflict`` is set when a different terminal status
        was already recorded.

    Raises:
        NotFound: No such transaction.
    """
    for _ in range(MAX_CAS_ATTEMPTS):
        txn = await get_transaction(session, transaction_id, fresh=True)
        current = TransactionStatus(txn.status)
        outcome = check_transition(current, new_status)

        if outcome == TransitionOutcome.NOOP:
            logger.info("Transaction %s already %s; duplicate ignored", txn.id, current.value)
            await log_event(session, "transition_noop", transaction_id=txn.id, gateway_code=txn.gateway_code, details={
                "status": current.value,
                "evidence": evidence,
            })
            await session.commit()
            return TransitionResult(txn, outcome, current, new_status)

        if outcome == TransitionOutcome.STALE:
            logger.info("Transaction %s is %s; ignoring late %s", txn.id, current.value, new_status.value)
            await log_event(session, "transition_stale", transaction_id=txn.id, gateway_code=txn.gateway_code, details={
                "current": current.value,
                "requested": new_status.value,
                "evidence": evidence,
            })
            await session.commit()
            return TransitionResult(txn, outcome, current, new_status)

        if outcome == TransitionOutcome.CONFLICT:
            return await _flag_conflict(session, txn, current, new_status, evidence)

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "status": new_status.value,
            "version": txn.version + 1,
            "updated_at": now,
            "notes": append_note(txn.notes, f"Status {current.value} -> {new_status.value}" + (f": {reason}" if reason else "")),
        }
        if new_status == TransactionStatus.FAILED and reason:
            values["failure_reason"] = reason

        result = await session.execute(
            update(Transaction)
            .where(
                Transaction.id == txn.id,
                Transaction.status == current.value,
                Transaction.version == txn.version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Rollback expires txn; only the id argument is safe past this point
            await session.rollback()
            logger.info("Transaction %s changed underneath us; re-reading", transaction_id)
            continue

        await log_event(session, "status_transition", transaction_id=txn.id, gateway_code=txn.gateway_code, details={
            "from": current.value,
            "to": new_status.value,
            "reason": reason,
            "evidence": evidence,
        })
        await session.commit()
        txn = await get_transaction(session, transaction_id, fresh=True)
        return TransitionResult(txn, outcome, current, new_status)

    raise PaymentError(f"Transaction {transaction_id}: status update kept losing races")


async def flag_for_review(
    session: AsyncSession,
    transaction_id: str,
    action: str,
    note: str,
    details: Optional[dict[str, Any]] = None,
) -> Transaction:
    """Mark a transaction for manual reconciliation without touching its status."""
    txn = await get_transaction(session, transaction_id, fresh=True)
    await session.execute(
        update(Transaction)
        .where(Transaction.id == txn.id)
        .values(needs_review=True, notes=append_note(txn.notes, note))
        .execution_options(synchronize_session=False)
    )
    await log_event(session, action, transaction_id=txn.id, gateway_code=txn.gateway_code, details=details)
    await session.commit()
    return await get_transaction(session, txn.id, fresh=True)


async def _flag_conflict(
    session: AsyncSession,
    txn: Transaction,
    current: TransactionStatus,
    requested: TransactionStatus,
    evidence: Optional[dict[str, Any]],
) -> TransitionResult:
    conflict = ConflictingFinalState(txn.id, current.value, requested.value)
    logger.error("CONFLICT | txn=%s recorded=%s incoming=%s - flagged for review", txn.id, current.value, requested.value)
    txn = await flag_for_review(
        session,
        txn.id,
        "conflicting_final_state",
        f"Conflicting outcome {requested.value} after {current.value}; needs review",
        {"recorded": current.value, "incoming": requested.value, "evidence": evidence},
    )
    return TransitionResult(txn, TransitionOutcome.CONFLICT, current, requested, conflict=conflict)
