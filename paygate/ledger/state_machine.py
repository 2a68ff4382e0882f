"""
Payment status state machine.

    pending ──► processing ──► captured | failed | expired
       └───────────────────────► captured | failed | expired

Terminal states have no exits. Anything that is not a forward move is
classified rather than raised, so callers can tell a duplicate delivery
(NOOP) from late news (STALE) from two providers' answers disagreeing
(CONFLICT).
"""

from paygate.models.enums import TransactionStatus, TransitionOutcome

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {
            TransactionStatus.PROCESSING,
            TransactionStatus.CAPTURED,
            TransactionStatus.FAILED,
            TransactionStatus.EXPIRED,
        }
    ),
    TransactionStatus.PROCESSING: frozenset(
        {TransactionStatus.CAPTURED, TransactionStatus.FAILED, TransactionStatus.EXPIRED}
    ),
    TransactionStatus.CAPTURED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.EXPIRED: frozenset(),
}


def check_transition(current: TransactionStatus, requested: TransactionStatus) -> TransitionOutcome:
    if current == requested:
        return TransitionOutcome.NOOP
    if requested in ALLOWED_TRANSITIONS[current]:
        return TransitionOutcome.APPLIED
    if current.is_terminal and requested.is_terminal:
        return TransitionOutcome.CONFLICT
    return TransitionOutcome.STALE
