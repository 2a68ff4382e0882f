"""SQLAlchemy models for the payment core."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as the UTC they were stored as."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_transaction_id() -> str:
    return f"txn_{uuid.uuid4().hex}"


class PaymentGatewayConfig(Base):
    """
    Stored configuration for one external gateway.

    ``config`` holds the gateway's credentials (merchant keys, client ids,
    secrets) and optional URL overrides. Only the matching adapter interprets it.
    """

    __tablename__ = "payment_gateways"

    code = Column(String(30), primary_key=True)
    name = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    test_mode = Column(Boolean, nullable=False, default=True)
    config = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Transaction(Base):
    """
    One payment attempt against one gateway.

    Created ``pending`` before any provider call and advanced only through
    the ledger's ``transition_status``. ``version`` is bumped on every status
    change so concurrent writers can detect that they lost a race.
    """

    __tablename__ = "payment_transactions"
    __table_args__ = (
        UniqueConstraint("gateway_code", "provider_txn_id", name="uq_gateway_provider_txn"),
    )

    id = Column(String(40), primary_key=True, default=new_transaction_id)
    gateway_code = Column(String(30), nullable=False, index=True)
    provider_txn_id = Column(String(120), nullable=True, index=True)
    quote_ids = Column(JSON, nullable=False, default=list)
    user_id = Column(String(64), nullable=True, index=True)

    # Charged amount, in the gateway's currency
    amount = Column(Numeric(18, 4), nullable=False)
    currency = Column(String(3), nullable=False)
    # What the customer asked for before conversion
    original_amount = Column(Numeric(18, 4), nullable=False)
    original_currency = Column(String(3), nullable=False)
    exchange_rate = Column(Numeric(24, 12), nullable=True)

    customer_name = Column(String(200), nullable=True)
    customer_email = Column(String(200), nullable=True)

    status = Column(String(20), nullable=False, default="pending", index=True)
    version = Column(Integer, nullable=False, default=1)
    needs_review = Column(Boolean, nullable=False, default=False)
    failure_reason = Column(Text, nullable=True)

    gateway_response = Column(JSON, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=False, default=dict)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    audit_logs = relationship("AuditLog", back_populates="transaction", lazy="raise")


class AuditLog(Base):
    """
    Immutable audit trail entry.

    Every status change, provider call and callback decision gets one.
    Append-only; never modified.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(40), ForeignKey("payment_transactions.id"), nullable=True, index=True)
    gateway_code = Column(String(30), nullable=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)

    transaction = relationship("Transaction", back_populates="audit_logs")


class CallbackEvent(Base):
    """Raw inbound gateway notification and what we did with it."""

    __tablename__ = "callback_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway_code = Column(String(30), nullable=False, index=True)
    method = Column(String(10), nullable=False)
    payload = Column(JSON, nullable=True)
    declared_signature = Column(Text, nullable=True)
    transaction_id = Column(String(40), nullable=True, index=True)
    declared_status = Column(String(20), nullable=True)
    outcome = Column(String(30), nullable=True)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), default=_utcnow)


class RecoveryLog(Base):
    """
    One abandoned-payment reminder.

    The unique transaction id is what keeps the sweeper from sending a
    second reminder for the same attempt.
    """

    __tablename__ = "payment_recovery_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(
        String(40), ForeignKey("payment_transactions.id"), nullable=False, unique=True
    )
    recipient = Column(String(200), nullable=False)
    template = Column(String(100), nullable=False)
    attempted_at = Column(DateTime(timezone=True), default=_utcnow)
