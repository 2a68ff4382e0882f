"""
Immutable audit trail for payment operations.

Every state change gets an append-only audit log entry with:
  - Transaction ID (which payment attempt)
  - Gateway code
  - Action (what happened)
  - Details (provider ids, statuses, error messages)
  - Timestamp (UTC)

Entries are never modified or deleted. Callers must not put credentials,
hashes or full card data into ``details``.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from paygate.models.transaction import AuditLog

logger = logging.getLogger("paygate.audit")


async def log_event(
    session: AsyncSession,
    action: str,
    transaction_id: Optional[str] = None,
    gateway_code: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Create an immutable audit log entry.

    Args:
        session: Database session. The entry is added, not committed.
        action: What happened (e.g. "transaction_created", "status_transition").
        transaction_id: The payment attempt this event relates to.
        gateway_code: The gateway involved, if any.
        details: Arbitrary context (serialized to JSON).

    Returns:
        The created AuditLog record.
    """
    payload = json.dumps(details, default=str) if details else None
    entry = AuditLog(
        transaction_id=transaction_id,
        gateway_code=gateway_code,
        action=action,
        details=payload,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    logger.info(
        "AUDIT | txn=%s gateway=%s action=%s | %s",
        transaction_id or "-",
        gateway_code or "-",
        action,
        payload[:200] if payload else "",
    )
    return entry


def append_note(existing_notes: Optional[str], message: str) -> str:
    """Append a timestamped line to a transaction's running notes."""
    prefix = f"[{datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}] "
    new_note = prefix + message
    if not existing_notes:
        return new_note
    return f"{existing_notes}\n{new_note}"
