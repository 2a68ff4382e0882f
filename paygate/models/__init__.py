from paygate.models.enums import (
    TERMINAL_STATUSES,
    CallbackResult,
    GatewayMode,
    TransactionStatus,
    TransitionOutcome,
)
from paygate.models.transaction import (
    AuditLog,
    Base,
    CallbackEvent,
    PaymentGatewayConfig,
    RecoveryLog,
    Transaction,
)

__all__ = [
    "Base",
    "Transaction",
    "AuditLog",
    "CallbackEvent",
    "RecoveryLog",
    "PaymentGatewayConfig",
    "TransactionStatus",
    "TransitionOutcome",
    "CallbackResult",
    "GatewayMode",
    "TERMINAL_STATUSES",
]
