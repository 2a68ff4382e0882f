from paygate.ledger.ledger import (
    TransitionResult,
    create_transaction,
    find_by_provider_ref,
    flag_for_review,
    get_transaction,
    record_provider_result,
    resolve_transaction,
    transition_status,
)
from paygate.ledger.state_machine import ALLOWED_TRANSITIONS, check_transition

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TransitionResult",
    "check_transition",
    "create_transaction",
    "find_by_provider_ref",
    "flag_for_review",
    "get_transaction",
    "record_provider_result",
    "resolve_transaction",
    "transition_status",
]
