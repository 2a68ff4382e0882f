"""Enumerations for the payment domain model."""

from enum import Enum


class TransactionStatus(str, Enum):
    """Lifecycle states for a payment attempt."""

    PENDING = "pending"
    PROCESSING = "processing"
    CAPTURED = "captured"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TransactionStatus.CAPTURED, TransactionStatus.FAILED, TransactionStatus.EXPIRED}
)


class GatewayMode(str, Enum):
    TEST = "test"
    LIVE = "live"


class TransitionOutcome(str, Enum):
    """What ``transition_status`` did with a requested status change."""

    APPLIED = "applied"
    NOOP = "noop"  # already in the requested status
    STALE = "stale"  # older non-terminal news after the transaction moved on
    CONFLICT = "conflict"  # different terminal status already recorded


class CallbackResult(str, Enum):
    """Processing outcome stored on each inbound callback event."""

    APPLIED = "applied"
    NOOP = "noop"
    STALE = "stale"
    CONFLICT = "conflict"
    AMOUNT_MISMATCH = "amount_mismatch"
    SIGNATURE_INVALID = "signature_invalid"
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"
    ERROR = "error"
