from marketplace.gateways.base import (
    Gateway,
    PaymentGateway,
    PaymentMethod,
    PaymentRecord,
    ProviderOrder,
)
from marketplace.gateways.factory import GatewayFactory
from marketplace.gateways.retry import call_with_retry

__all__ = [
    "Gateway",
    "GatewayFactory",
    "PaymentGateway",
    "PaymentMethod",
    "PaymentRecord",
    "ProviderOrder",
    "call_with_retry",
]
