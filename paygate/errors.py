"""
Error taxonomy for the payment core.

Every error carries a stable machine ``code`` so results can be reported
and branched on without inspecting messages. Exceptions are raised inside a
component and folded into result objects at component boundaries.
"""

from typing import Optional


class PaymentError(Exception):
    """Base exception for payment core errors."""

    code = "payment_error"

    def __init__(self, message: str, *, gateway: Optional[str] = None):
        super().__init__(message)
        self.gateway = gateway


class InvalidPaymentRequest(PaymentError):
    """The caller asked for something that can never succeed (bad amount, no quotes)."""

    code = "invalid_request"


class GatewayMisconfigured(PaymentError):
    """Gateway config missing, inactive, or lacking credentials. Never retried."""

    code = "gateway_misconfigured"


class UnsupportedCurrency(PaymentError):
    code = "unsupported_currency"

    def __init__(self, currency: str, *, gateway: Optional[str] = None):
        super().__init__(f"Currency {currency} is not supported", gateway=gateway)
        self.currency = currency


class UpstreamError(PaymentError):
    """Network failure, timeout, or non-2xx response from a provider."""

    code = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        gateway: Optional[str] = None,
        status_code: Optional[int] = None,
        retriable: bool = False,
    ):
        super().__init__(message, gateway=gateway)
        self.status_code = status_code
        self.retriable = retriable


class RateLimitError(UpstreamError):
    """429 Too Many Requests from the provider."""

    def __init__(self, message: str = "Rate limited", *, gateway: Optional[str] = None, retry_after: float | None = None):
        super().__init__(message, gateway=gateway, status_code=429, retriable=True)
        self.retry_after = retry_after


class SignatureInvalid(PaymentError):
    """Callback failed verification. Logged as a potential security event."""

    code = "signature_invalid"


class CaptureNotSupported(PaymentError):
    code = "capture_not_supported"


class NotFound(PaymentError):
    code = "not_found"


class ConflictingFinalState(PaymentError):
    """Two different terminal outcomes were observed for one transaction."""

    code = "conflicting_final_state"

    def __init__(self, transaction_id: str, current: str, attempted: str):
        super().__init__(
            f"Transaction {transaction_id} is already {current}; refusing {attempted}"
        )
        self.transaction_id = transaction_id
        self.current = current
        self.attempted = attempted
