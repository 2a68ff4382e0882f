"""Tests for the abandoned-payment recovery sweep."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from fakes import RecordingEmail
from paygate.engine.recovery import run_recovery_sweep
from paygate.ledger.ledger import create_transaction, get_transaction, transition_status
from paygate.models.enums import TransactionStatus
from paygate.models.transaction import AuditLog, RecoveryLog

THRESHOLD = timedelta(minutes=30)


def soon() -> datetime:
    """A clock far enough ahead that fresh attempts count as abandoned but not expired."""
    return datetime.now(timezone.utc) + timedelta(hours=1)


async def abandoned(session, email="asha@example.com", user_id=None, gateway_code="esewa"):
    return await create_transaction(
        session,
        gateway_code=gateway_code,
        quote_ids=["Q-1"],
        amount=Decimal("100.00"),
        currency="NPR",
        original_amount=Decimal("100.00"),
        original_currency="NPR",
        customer_name="Asha",
        customer_email=email,
        user_id=user_id,
        metadata={"cancel_url": "https://shop.test/cancel"},
    )


@pytest.mark.asyncio
async def test_reminder_sent_once(db_session, registry, collaborators):
    txn = await abandoned(db_session)
    now = soon()

    first = await run_recovery_sweep(db_session, registry, collaborators, now=now, threshold=THRESHOLD)
    second = await run_recovery_sweep(db_session, registry, collaborators, now=now, threshold=THRESHOLD)

    assert first.reminded == [txn.id]
    assert second.reminded == []
    assert len(collaborators.email.sent) == 1
    template, recipient, context = collaborators.email.sent[0]
    assert template == "payment_reminder"
    assert recipient == "asha@example.com"
    assert context["transaction_id"] == txn.id
    assert context["resume_url"] == "https://shop.test/cancel"


@pytest.mark.asyncio
async def test_recent_and_settled_attempts_left_alone(db_session, registry, collaborators):
    fresh = await abandoned(db_session)
    paid = await abandoned(db_session)
    await transition_status(db_session, paid.id, TransactionStatus.CAPTURED)

    report = await run_recovery_sweep(
        db_session, registry, collaborators, now=datetime.now(timezone.utc), threshold=THRESHOLD
    )
    assert report.reminded == []

    report = await run_recovery_sweep(db_session, registry, collaborators, now=soon(), threshold=THRESHOLD)
    assert report.reminded == [fresh.id]


@pytest.mark.asyncio
async def test_placeholder_email_falls_back_to_profile(db_session, registry, collaborators):
    with_profile = await abandoned(db_session, email="customer@example.com", user_id="user-7")
    nobody = await abandoned(db_session, email=None)

    report = await run_recovery_sweep(db_session, registry, collaborators, now=soon(), threshold=THRESHOLD)

    assert report.reminded == [with_profile.id]
    assert report.skipped == [nobody.id]
    assert collaborators.email.sent[0][1] == "traveller@example.org"


@pytest.mark.asyncio
async def test_failed_send_releases_claim(db_session, registry, collaborators):
    txn = await abandoned(db_session)
    collaborators.email = RecordingEmail(fail=True)
    now = soon()

    report = await run_recovery_sweep(db_session, registry, collaborators, now=now, threshold=THRESHOLD)

    assert report.reminded == []
    assert [(e.transaction_id, e.stage) for e in report.errors] == [(txn.id, "remind")]
    claims = await db_session.execute(select(RecoveryLog))
    assert claims.scalars().all() == []
    logged = await db_session.execute(select(AuditLog.action).where(AuditLog.transaction_id == txn.id))
    assert "recovery_reminder_failed" in logged.scalars().all()

    collaborators.email = RecordingEmail()
    retry = await run_recovery_sweep(db_session, registry, collaborators, now=now, threshold=THRESHOLD)
    assert retry.reminded == [txn.id]


@pytest.mark.asyncio
async def test_expires_past_validity_window(db_session, registry, collaborators):
    esewa = await abandoned(db_session)
    paypal = await abandoned(db_session, gateway_code="paypal")
    await transition_status(db_session, paypal.id, TransactionStatus.PROCESSING)
    now = datetime.now(timezone.utc) + timedelta(hours=25)

    report = await run_recovery_sweep(db_session, registry, collaborators, now=now, threshold=THRESHOLD)

    # eSewa attempts are valid for a day, PayPal orders for three
    assert report.expired == [esewa.id]
    assert (await get_transaction(db_session, esewa.id, fresh=True)).status == "expired"
    assert (await get_transaction(db_session, paypal.id, fresh=True)).status == "processing"
    assert esewa.id not in report.reminded
    assert collaborators.email.sent == []
