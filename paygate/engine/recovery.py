"""
Recovery sweeper for abandoned payments.

One sweep does two things, in this order:

  1. Expire attempts that outlived their gateway's validity window
     (``pending``/``processing`` -> ``expired``, through the ledger).
  2. Remind customers about attempts still ``pending`` after the threshold,
     at most once per transaction.

The reminder claim (a RecoveryLog row, unique per transaction) is committed
before the email goes out and removed again if the send fails, so two
overlapping sweeps never both email and a failed send is retried next time.
No database transaction is held open across the email call.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.audit.logger import log_event
from paygate.config import settings
from paygate.errors import PaymentError
from paygate.gateways.base import CustomerInfo
from paygate.gateways.registry import GatewayRegistry
from paygate.ledger.ledger import transition_status
from paygate.models.enums import TransactionStatus
from paygate.models.transaction import RecoveryLog, Transaction
from paygate.services.defaults import Collaborators

logger = logging.getLogger("paygate.recovery")

PLACEHOLDER_EMAIL = CustomerInfo.email


@dataclass
class SweepError:
    transaction_id: str
    stage: str  # "expire" | "remind"
    message: str


@dataclass
class SweepReport:
    reminded: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[SweepError] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "reminded": len(self.reminded),
            "expired": len(self.expired),
            "skipped": len(self.skipped),
            "errors": len(self.errors),
        }


@dataclass
class _Candidate:
    id: str
    gateway_code: str
    amount: str
    currency: str
    quote_ids: list[str]
    customer_name: Optional[str]
    customer_email: Optional[str]
    user_id: Optional[str]
    metadata: dict


async def _expire_stale(
    session: AsyncSession, registry: GatewayRegistry, now: datetime, batch_size: int, report: SweepReport
) -> None:
    for gateway in registry:
        cutoff = now - gateway.validity_window
        rows = await session.execute(
            select(Transaction.id)
            .where(
                Transaction.gateway_code == gateway.code,
                Transaction.status.in_([TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value]),
                Transaction.created_at < cutoff,
            )
            .order_by(Transaction.created_at)
            .limit(batch_size)
        )
        for txn_id in rows.scalars().all():
            try:
                result = await transition_status(
                    session,
                    txn_id,
                    TransactionStatus.EXPIRED,
                    evidence={"source": "recovery_sweep", "validity_window": str(gateway.validity_window)},
                    reason="validity window elapsed",
                )
            except PaymentError as e:
                logger.warning("Could not expire %s: %s", txn_id, e)
                report.errors.append(SweepError(txn_id, "expire", str(e)))
                continue
            if result.applied:
                report.expired.append(txn_id)


async def _reminder_candidates(
    session: AsyncSession, cutoff: datetime, batch_size: int
) -> list[_Candidate]:
    already_reminded = select(RecoveryLog.transaction_id)
    rows = await session.execute(
        select(Transaction)
        .where(
            Transaction.status == TransactionStatus.PENDING.value,
            Transaction.created_at < cutoff,
            Transaction.id.not_in(already_reminded),
        )
        .order_by(Transaction.created_at)
        .limit(batch_size)
    )
    return [
        _Candidate(
            id=t.id,
            gateway_code=t.gateway_code,
            amount=str(t.amount),
            currency=t.currency,
            quote_ids=list(t.quote_ids or []),
            customer_name=t.customer_name,
            customer_email=t.customer_email,
            user_id=t.user_id,
            metadata=dict(t.payment_metadata or {}),
        )
        for t in rows.scalars().all()
    ]


async def _resolve_email(candidate: _Candidate, collaborators: Collaborators) -> Optional[str]:
    email = candidate.customer_email
    if email and email != PLACEHOLDER_EMAIL:
        return email
    if candidate.user_id:
        return await collaborators.profiles.get_email(candidate.user_id)
    return None


async def _claim(session: AsyncSession, txn_id: str, recipient: str, template: str) -> bool:
    session.add(RecoveryLog(transaction_id=txn_id, recipient=recipient, template=template))
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return False
    return True


async def _remind(
    session: AsyncSession, candidate: _Candidate, collaborators: Collaborators, template: str, report: SweepReport
) -> None:
    try:
        recipient = await _resolve_email(candidate, collaborators)
    except Exception as e:
        logger.exception("Profile lookup failed for %s", candidate.id)
        report.errors.append(SweepError(candidate.id, "remind", f"profile lookup failed: {e}"))
        return
    if not recipient:
        logger.info("No email for %s; reminder skipped", candidate.id)
        report.skipped.append(candidate.id)
        return

    if not await _claim(session, candidate.id, recipient, template):
        logger.info("Reminder for %s already claimed", candidate.id)
        report.skipped.append(candidate.id)
        return

    context = {
        "transaction_id": candidate.id,
        "customer_name": candidate.customer_name,
        "amount": candidate.amount,
        "currency": candidate.currency,
        "gateway": candidate.gateway_code,
        "quote_ids": candidate.quote_ids,
        "resume_url": candidate.metadata.get("cancel_url") or candidate.metadata.get("success_url"),
    }
    try:
        await collaborators.email.send(template, recipient, context)
    except Exception as e:
        logger.exception("Reminder email failed for %s", candidate.id)
        await session.execute(delete(RecoveryLog).where(RecoveryLog.transaction_id == candidate.id))
        await log_event(session, "recovery_reminder_failed", transaction_id=candidate.id, gateway_code=candidate.gateway_code, details={
            "error": str(e),
        })
        await session.commit()
        report.errors.append(SweepError(candidate.id, "remind", str(e)))
        return

    await log_event(session, "recovery_reminder_sent", transaction_id=candidate.id, gateway_code=candidate.gateway_code, details={
        "template": template,
    })
    await session.commit()
    report.reminded.append(candidate.id)


async def run_recovery_sweep(
    session: AsyncSession,
    registry: GatewayRegistry,
    collaborators: Collaborators,
    now: Optional[datetime] = None,
    threshold: Optional[timedelta] = None,
    batch_size: Optional[int] = None,
) -> SweepReport:
    """
    Run one sweep.

    Args:
        session: Database session.
        registry: Gateways, for their validity windows.
        collaborators: Profile lookup and email dispatcher.
        now: Clock override for tests.
        threshold: Minimum age of a pending attempt before a reminder.
        batch_size: Maximum transactions per stage per gateway.

    Returns:
        SweepReport. Per-transaction failures are collected, never raised.
    """
    now = now or datetime.now(timezone.utc)
    threshold = threshold or timedelta(minutes=settings.recovery_threshold_minutes)
    batch_size = batch_size or settings.recovery_batch_size
    report = SweepReport()

    await _expire_stale(session, registry, now, batch_size, report)

    for candidate in await _reminder_candidates(session, now - threshold, batch_size):
        await _remind(session, candidate, collaborators, settings.recovery_template, report)

    logger.info("Recovery sweep done: %s", report.summary())
    return report


async def recovery_loop(
    session_factory: async_sessionmaker[AsyncSession],
    registry: GatewayRegistry,
    collaborators: Collaborators,
    interval: Optional[float] = None,
) -> None:
    """Run sweeps forever at a fixed interval. Cancelled by the application on shutdown."""
    interval = interval if interval is not None else settings.recovery_interval_seconds
    logger.info("Recovery loop started (every %ss)", interval)
    while True:
        await asyncio.sleep(interval)
        try:
            async with session_factory() as session:
                await run_recovery_sweep(session, registry, collaborators)
        except Exception:
            logger.exception("Recovery sweep failed; will retry next interval")
