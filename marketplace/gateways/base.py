"""
Base classes and types for payment gateway adapters.
Used by the factory, EscrowService, SubscriptionService and every provider (razorpay, stripe).
"""
import hmac
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, TypeVar

import pybreaker

from marketplace.core.errors import GatewayError, GatewayUnavailable
from marketplace.services.circuit_breaker import get_circuit_breaker
from marketplace.utils.metrics import gateway_request_duration_seconds, gateway_requests_total

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Gateway(str, Enum):
    """Closed set of supported providers. Stored on the transaction, never changes."""

    RAZORPAY = "razorpay"
    STRIPE = "stripe"


class PaymentMethod(str, Enum):
    CARD = "card"
    NETBANKING = "netbanking"
    UPI = "upi"
    WALLET = "wallet"
    BANK_TRANSFER = "bank_transfer"


@dataclass
class ProviderOrder:
    """Order (Razorpay) or PaymentIntent (Stripe) the client completes externally."""
    id: str
    amount: int
    currency: str
    status: str
    receipt_id: str
    client_secret: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentRecord:
    """Provider view of a payment, reduced to what the ledger stores."""
    payment_id: str
    status: str
    amount: int
    currency: str
    method: PaymentMethod
    details: dict[str, Any] = field(default_factory=dict)
    is_authorized: bool = False
    is_captured: bool = False
    order_id: str | None = None


def signatures_match(expected: str, provided: str | None) -> bool:
    """Constant-time comparison; a missing signature never matches."""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


class PaymentGateway(ABC):
    """Base class for payment gateway adapters."""

    gateway: Gateway
    # Stripe-style escrow: authorize now, capture on release
    requires_manual_capture: bool = False

    def __init__(self, config: dict) -> None:
        self.config = config
        self.timeout = config.get("timeout", 10.0)

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the gateway is configured."""
        pass

    @abstractmethod
    def create_order(
        self, amount: int, currency: str, receipt_id: str, metadata: dict[str, str]
    ) -> ProviderOrder:
        """Create a provider order for `amount` minor units. Raises GatewayUnavailable on network/auth failure."""
        pass

    @abstractmethod
    def verify_signature(self, order_id: str, payment_id: str, signature: str | None) -> bool:
        """Pure check of the client's payment proof; no network I/O."""
        pass

    @abstractmethod
    def fetch_payment_details(self, payment_id: str) -> PaymentRecord:
        pass

    def capture(self, payment_id: str, amount: int, idempotency_key: str | None = None) -> None:
        """Capture a previously authorized payment. Auto-capture gateways do nothing."""
        return None

    @abstractmethod
    def refund(
        self,
        payment_id: str,
        amount: int,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> str:
        """Refund `amount` minor units; returns the provider refund id. Raises RefundFailed."""
        pass

    # ------------------------------------------------------------------
    # Instrumentation shared by providers
    # ------------------------------------------------------------------

    def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run one provider request through the gateway's circuit breaker and record metrics.

        Business rejections (GatewayError that is not GatewayUnavailable) do not count
        as breaker failures. An open breaker surfaces as GatewayUnavailable.
        """
        breaker = get_circuit_breaker(
            f"gateway:{self.gateway.value}",
            exclude=[lambda e: isinstance(e, GatewayError) and not isinstance(e, GatewayUnavailable)],
        )
        start = time.monotonic()
        status = "success"
        try:
            return breaker.call(func, *args, **kwargs)
        except pybreaker.CircuitBreakerError as e:
            status = "circuit_open"
            raise GatewayUnavailable(
                f"{self.gateway.value} circuit open",
                detail={"operation": operation},
            ) from e
        except GatewayUnavailable:
            status = "unavailable"
            raise
        except GatewayError:
            status = "rejected"
            raise
        finally:
            gateway_requests_total.labels(
                gateway=self.gateway.value, operation=operation, status=status
            ).inc()
            gateway_request_duration_seconds.labels(
                gateway=self.gateway.value, operation=operation
            ).observe(time.monotonic() - start)
