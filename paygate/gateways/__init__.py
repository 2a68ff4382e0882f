from paygate.gateways.base import (
    CallbackPayload,
    CaptureResult,
    CustomerInfo,
    GatewayIdentity,
    GatewayOrder,
    GatewayPayment,
    InboundCallback,
    PaymentGateway,
    PaymentIntentRequest,
    VerificationResult,
)
from paygate.gateways.credentials import load_identity
from paygate.gateways.registry import GatewayRegistry, build_default_registry

__all__ = [
    "CallbackPayload",
    "CaptureResult",
    "CustomerInfo",
    "GatewayIdentity",
    "GatewayOrder",
    "GatewayPayment",
    "GatewayRegistry",
    "InboundCallback",
    "PaymentGateway",
    "PaymentIntentRequest",
    "VerificationResult",
    "build_default_registry",
    "load_identity",
]
