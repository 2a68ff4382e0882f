"""Tests for the transaction ledger."""

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import paygate.ledger.ledger as ledger_module
from paygate.errors import ConflictingFinalState, NotFound, PaymentError
from paygate.ledger.ledger import (
    create_transaction,
    get_transaction,
    record_provider_result,
    resolve_transaction,
    transition_status,
)
from paygate.models.enums import TransactionStatus, TransitionOutcome
from paygate.models.transaction import AuditLog, Base


async def new_txn(session, gateway_code="esewa", amount="100.00", currency="NPR"):
    return await create_transaction(
        session,
        gateway_code=gateway_code,
        quote_ids=["Q-1"],
        amount=Decimal(amount),
        currency=currency,
        original_amount=Decimal(amount),
        original_currency=currency,
        customer_email="asha@example.com",
    )


async def actions(session, txn_id):
    rows = await session.execute(
        select(AuditLog.action).where(AuditLog.transaction_id == txn_id).order_by(AuditLog.id)
    )
    return list(rows.scalars().all())


@pytest.mark.asyncio
async def test_create_is_pending_with_unique_ids(db_session):
    first = await new_txn(db_session)
    second = await new_txn(db_session)

    assert first.status == TransactionStatus.PENDING.value
    assert first.version == 1
    assert first.id != second.id
    assert first.id.startswith("txn_")
    assert await actions(db_session, first.id) == ["transaction_created"]


@pytest.mark.asyncio
async def test_forward_transition_bumps_version(db_session):
    txn = await new_txn(db_session)

    result = await transition_status(db_session, txn.id, TransactionStatus.PROCESSING)
    assert result.outcome == TransitionOutcome.APPLIED
    assert result.transaction.version == 2

    result = await transition_status(db_session, txn.id, TransactionStatus.CAPTURED, evidence={"source": "test"})
    assert result.newly_captured
    assert result.previous == TransactionStatus.PROCESSING
    assert result.transaction.version == 3
    assert "processing -> captured" in result.transaction.notes


@pytest.mark.asyncio
async def test_repeat_terminal_is_noop(db_session):
    txn = await new_txn(db_session)
    await transition_status(db_session, txn.id, TransactionStatus.CAPTURED)

    again = await transition_status(db_session, txn.id, TransactionStatus.CAPTURED)

    assert again.outcome == TransitionOutcome.NOOP
    assert not again.newly_captured
    assert again.transaction.version == 2
    assert (await actions(db_session, txn.id)).count("status_transition") == 1


@pytest.mark.asyncio
async def test_conflicting_terminal_is_flagged_not_overwritten(db_session):
    txn = await new_txn(db_session)
    await transition_status(db_session, txn.id, TransactionStatus.CAPTURED)

    result = await transition_status(db_session, txn.id, TransactionStatus.FAILED, reason="declined")

    assert result.outcome == TransitionOutcome.CONFLICT
    assert result.current == TransactionStatus.CAPTURED
    assert result.transaction.needs_review
    assert isinstance(result.conflict, ConflictingFinalState)
    with pytest.raises(ConflictingFinalState):
        result.raise_for_conflict()
    assert "conflicting_final_state" in await actions(db_session, txn.id)


@pytest.mark.asyncio
async def test_late_processing_after_capture_is_stale(db_session):
    txn = await new_txn(db_session)
    await transition_status(db_session, txn.id, TransactionStatus.CAPTURED)

    result = await transition_status(db_session, txn.id, TransactionStatus.PROCESSING)

    assert result.outcome == TransitionOutcome.STALE
    assert result.current == TransactionStatus.CAPTURED
    assert not result.transaction.needs_review


@pytest.mark.asyncio
async def test_failure_reason_recorded(db_session):
    txn = await new_txn(db_session)

    result = await transition_status(db_session, txn.id, TransactionStatus.FAILED, reason="[upstream_error] timeout")

    assert result.transaction.failure_reason == "[upstream_error] timeout"


@pytest.mark.asyncio
async def test_unknown_transaction(db_session):
    with pytest.raises(NotFound):
        await transition_status(db_session, "txn_missing", TransactionStatus.CAPTURED)
    with pytest.raises(NotFound):
        await get_transaction(db_session, "txn_missing")


@pytest.mark.asyncio
async def test_provider_ref_cannot_be_replaced(db_session):
    txn = await new_txn(db_session)
    await record_provider_result(db_session, txn.id, "P-1", {"id": "P-1"})
    await record_provider_result(db_session, txn.id, "P-1", {"id": "P-1"})

    with pytest.raises(PaymentError):
        await record_provider_result(db_session, txn.id, "P-2")


@pytest.mark.asyncio
async def test_resolve_prefers_provider_ref_and_checks_gateway(db_session):
    txn = await new_txn(db_session)
    await record_provider_result(db_session, txn.id, "P-1")

    assert (await resolve_transaction(db_session, "esewa", provider_ref="P-1")).id == txn.id
    assert (await resolve_transaction(db_session, "esewa", transaction_ref=txn.id)).id == txn.id
    # Echoed id from another gateway, or contradicting the recorded provider id, matches nothing
    assert await resolve_transaction(db_session, "payu", transaction_ref=txn.id) is None
    assert await resolve_transaction(db_session, "esewa", provider_ref="P-9", transaction_ref=txn.id) is None
    assert await resolve_transaction(db_session, "esewa") is None


@pytest_asyncio.fixture
async def file_sessions(tmp_path):
    """Session factory over a file database, so separate sessions use separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.mark.asyncio
async def test_losing_writer_rereads_and_reports_conflict(file_sessions, monkeypatch):
    async with file_sessions() as setup:
        txn_id = (await new_txn(setup)).id

    real_get = ledger_module.get_transaction
    competing = []

    async def get_then_lose_race(session, transaction_id, **kwargs):
        txn = await real_get(session, transaction_id, **kwargs)
        if not competing:
            # Another delivery commits after our read and before our update
            competing.append(True)
            async with file_sessions() as other:
                competing.append(await transition_status(other, transaction_id, TransactionStatus.CAPTURED))
        return txn

    monkeypatch.setattr(ledger_module, "get_transaction", get_then_lose_race)

    async with file_sessions() as session:
        result = await transition_status(session, txn_id, TransactionStatus.FAILED, reason="declined")

    assert competing[1].outcome == TransitionOutcome.APPLIED
    assert result.outcome == TransitionOutcome.CONFLICT
    assert result.current == TransactionStatus.CAPTURED
    assert result.transaction.needs_review
    assert result.transaction.version == 2
