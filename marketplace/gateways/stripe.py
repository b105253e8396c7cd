"""
Stripe gateway over the official SDK (StripeClient, no module-global api key).

Purchases are PaymentIntents with capture_method=manual: verification sees an
authorized intent (requires_capture) and release captures it. The intent id is
both the order id and the payment id.
"""
import logging
from typing import Any, Callable

import stripe

from marketplace.core.errors import GatewayError, GatewayUnavailable, RefundFailed
from marketplace.gateways.base import (
    Gateway,
    PaymentGateway,
    PaymentMethod,
    PaymentRecord,
    ProviderOrder,
    signatures_match,
)

logger = logging.getLogger(__name__)

AUTHORIZED_STATUSES = ("requires_capture", "succeeded")

# Failures worth retrying: network, auth, rate limit, Stripe-side 5xx
_UNAVAILABLE_ERRORS = (
    stripe.APIConnectionError,
    stripe.AuthenticationError,
    stripe.PermissionError,
    stripe.RateLimitError,
    stripe.APIError,
)

_BANK_TYPES = ("us_bank_account", "sepa_debit", "bacs_debit", "acss_debit", "au_becs_debit")
_WALLET_TYPES = ("link", "paypal", "alipay", "wechat_pay", "amazon_pay", "cashapp")


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents with manual capture."""

    gateway = Gateway.STRIPE
    requires_manual_capture = True

    def __init__(self, config: dict):
        super().__init__(config)
        self.secret_key = config.get("secret_key", "")
        self._client = config.get("client")

    @property
    def client(self) -> stripe.StripeClient:
        """Lazy initialization of the Stripe client."""
        if self._client is None:
            self._client = stripe.StripeClient(
                self.secret_key,
                http_client=stripe.RequestsClient(timeout=self.timeout),
            )
        return self._client

    def is_available(self) -> bool:
        return bool(self.secret_key) or self._client is not None

    # ------------------------------------------------------------------
    # Gateway operations
    # ------------------------------------------------------------------

    def create_order(
        self, amount: int, currency: str, receipt_id: str, metadata: dict[str, str]
    ) -> ProviderOrder:
        params = {
            "amount": amount,
            "currency": currency.lower(),
            "capture_method": "manual",
            "metadata": {**{k: str(v) for k, v in metadata.items()}, "receipt_id": receipt_id},
        }
        intent = self._call(
            "create_order",
            self._request,
            self.client.payment_intents.create,
            params=params,
            options={"idempotency_key": f"order-{receipt_id}"},
        )
        return ProviderOrder(
            id=intent.id,
            amount=int(intent.amount),
            currency=str(intent.currency).upper(),
            status=intent.status,
            receipt_id=receipt_id,
            client_secret=getattr(intent, "client_secret", None),
        )

    def verify_signature(self, order_id: str, payment_id: str, signature: str | None) -> bool:
        # No client-side signature: the confirmed intent must be the one we created
        return signatures_match(order_id, payment_id)

    def fetch_payment_details(self, payment_id: str) -> PaymentRecord:
        intent = self._retrieve_intent(payment_id)
        status = intent.status
        method, details = _instrument_details(getattr(intent, "latest_charge", None))
        return PaymentRecord(
            payment_id=intent.id,
            status=status,
            amount=int(intent.amount),
            currency=str(intent.currency).upper(),
            method=method,
            details=details,
            is_authorized=status in AUTHORIZED_STATUSES,
            is_captured=status == "succeeded",
            order_id=intent.id,
        )

    def capture(self, payment_id: str, amount: int, idempotency_key: str | None = None) -> None:
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        self._call(
            "capture",
            self._request,
            self.client.payment_intents.capture,
            payment_id,
            params={"amount_to_capture": amount},
            options=options,
        )

    def refund(
        self,
        payment_id: str,
        amount: int,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> str:
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            intent = self._retrieve_intent(payment_id)
            if intent.status == "requires_capture":
                return self._release_authorization(intent, amount, options)
            if intent.status != "succeeded":
                raise RefundFailed(
                    f"PaymentIntent {payment_id} is not refundable in status {intent.status}",
                    detail={"payment_id": payment_id, "status": intent.status},
                )
            refund = self._call(
                "refund",
                self._request,
                self.client.refunds.create,
                params={
                    "payment_intent": payment_id,
                    "amount": amount,
                    "metadata": {k: str(v) for k, v in metadata.items()},
                },
                options=options,
            )
        except (GatewayUnavailable, RefundFailed):
            raise
        except GatewayError as e:
            raise RefundFailed(str(e), detail=e.detail) from e
        return refund.id

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _retrieve_intent(self, payment_id: str) -> Any:
        return self._call(
            "fetch_payment",
            self._request,
            self.client.payment_intents.retrieve,
            payment_id,
            params={"expand": ["latest_charge"]},
        )

    def _release_authorization(self, intent: Any, amount: int, options: dict) -> str:
        """Money was never captured: cancel the hold, or capture only what the buyer keeps paying."""
        if amount >= int(intent.amount):
            self._call(
                "refund",
                self._request,
                self.client.payment_intents.cancel,
                intent.id,
                params={"cancellation_reason": "requested_by_customer"},
                options=options,
            )
            return f"cancel_{intent.id}"
        self._call(
            "refund",
            self._request,
            self.client.payment_intents.capture,
            intent.id,
            params={"amount_to_capture": int(intent.amount) - amount},
            options=options,
        )
        return f"partial_capture_{intent.id}"

    def _request(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except _UNAVAILABLE_ERRORS as e:
            raise GatewayUnavailable(
                f"stripe unavailable: {e.user_message or e}",
                detail={"http_status": e.http_status, "code": e.code},
            ) from e
        except stripe.StripeError as e:
            logger.warning(
                "stripe_request_rejected",
                extra={"error": e.user_message or str(e)},
            )
            raise GatewayError(
                e.user_message or str(e),
                detail={"http_status": e.http_status, "code": e.code},
            ) from e


def _instrument_details(charge: Any) -> tuple[PaymentMethod, dict[str, Any]]:
    """Map the charge's payment_method_details to our method + masked details."""
    pmd = getattr(charge, "payment_method_details", None) if charge is not None else None
    kind = getattr(pmd, "type", None) if pmd is not None else None
    if kind == "card":
        card = getattr(pmd, "card", None)
        wallet = getattr(card, "wallet", None)
        details = {"last4": getattr(card, "last4", None), "brand": getattr(card, "brand", None)}
        if wallet is not None:
            details["wallet"] = getattr(wallet, "type", None)
            return PaymentMethod.WALLET, details
        return PaymentMethod.CARD, details
    if kind in _BANK_TYPES:
        bank = getattr(pmd, kind, None)
        return PaymentMethod.BANK_TRANSFER, {"bank": getattr(bank, "bank_name", None)}
    if kind in _WALLET_TYPES:
        return PaymentMethod.WALLET, {"wallet": kind}
    return PaymentMethod.CARD, {}
