"""
Razorpay gateway over its REST API (httpx sync client, basic auth with key id/secret).
Orders are created with payment_capture=1, so Razorpay captures on authorization
and release needs no capture call.
"""
import hashlib
import hmac
import logging
from typing import Any

import httpx

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

AUTHORIZED_STATUSES = ("authorized", "captured")


class RazorpayGateway(PaymentGateway):
    """Razorpay Orders/Payments/Refunds API."""

    gateway = Gateway.RAZORPAY
    requires_manual_capture = False

    def __init__(self, config: dict):
        super().__init__(config)
        self.key_id = config.get("key_id", "")
        self.key_secret = config.get("key_secret", "")
        self.api_url = config.get("api_url", "https://api.razorpay.com/v1").rstrip("/")
        self._transport = config.get("transport")
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.api_url,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def is_available(self) -> bool:
        return bool(self.key_id and self.key_secret)

    # ------------------------------------------------------------------
    # Gateway operations
    # ------------------------------------------------------------------

    def create_order(
        self, amount: int, currency: str, receipt_id: str, metadata: dict[str, str]
    ) -> ProviderOrder:
        payload = {
            "amount": amount,
            "currency": currency.upper(),
            "receipt": receipt_id,
            "notes": {k: str(v) for k, v in metadata.items()},
            "payment_capture": 1,
        }
        data = self._call("create_order", self._request, "POST", "/orders", json=payload)
        return ProviderOrder(
            id=data["id"],
            amount=int(data.get("amount", amount)),
            currency=data.get("currency", currency.upper()),
            status=data.get("status", "created"),
            receipt_id=data.get("receipt", receipt_id),
            raw=data,
        )

    def verify_signature(self, order_id: str, payment_id: str, signature: str | None) -> bool:
        expected = hmac.new(
            self.key_secret.encode("utf-8"),
            f"{order_id}|{payment_id}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return signatures_match(expected, signature)

    def fetch_payment_details(self, payment_id: str) -> PaymentRecord:
        data = self._call(
            "fetch_payment",
            self._request,
            "GET",
            f"/payments/{payment_id}",
            params={"expand[]": "card"},
        )
        method = _payment_method(data.get("method"))
        status = data.get("status", "")
        return PaymentRecord(
            payment_id=data.get("id", payment_id),
            status=status,
            amount=int(data.get("amount", 0)),
            currency=data.get("currency", ""),
            method=method,
            details=_instrument_details(method, data),
            is_authorized=status in AUTHORIZED_STATUSES,
            is_captured=status == "captured",
            order_id=data.get("order_id"),
        )

    def refund(
        self,
        payment_id: str,
        amount: int,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            "amount": amount,
            "notes": {k: str(v) for k, v in metadata.items()},
        }
        if idempotency_key:
            payload["receipt"] = idempotency_key[:40]
        try:
            data = self._call(
                "refund", self._request, "POST", f"/payments/{payment_id}/refund", json=payload
            )
        except GatewayUnavailable:
            raise
        except GatewayError as e:
            raise RefundFailed(str(e), detail=e.detail) from e
        return data["id"]

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        try:
            resp = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable("razorpay timeout", detail={"path": path}) from e
        except httpx.TransportError as e:
            raise GatewayUnavailable(f"razorpay transport error: {e}", detail={"path": path}) from e

        if resp.status_code in (401, 403, 429) or resp.status_code >= 500:
            raise GatewayUnavailable(
                f"razorpay HTTP {resp.status_code}",
                detail={"path": path, "http_status": resp.status_code},
            )
        if resp.status_code >= 400:
            error = _error_body(resp)
            logger.warning(
                "razorpay_request_rejected",
                extra={"operation": path, "error": error.get("description")},
            )
            raise GatewayError(
                error.get("description") or f"razorpay HTTP {resp.status_code}",
                detail={"path": path, "http_status": resp.status_code, "code": error.get("code")},
            )
        return resp.json()


def _error_body(resp: httpx.Response) -> dict:
    try:
        return resp.json().get("error") or {}
    except ValueError:
        return {}


def _payment_method(raw: str | None) -> PaymentMethod:
    try:
        return PaymentMethod(raw)
    except ValueError:
        return PaymentMethod.CARD


def _instrument_details(method: PaymentMethod, data: dict) -> dict[str, Any]:
    """Masked instrument details only; never the full card or account."""
    details: dict[str, Any] = {}
    if method == PaymentMethod.CARD and data.get("card"):
        card = data["card"]
        details["last4"] = card.get("last4")
        details["brand"] = card.get("network") or card.get("brand")
    elif method == PaymentMethod.NETBANKING and data.get("bank"):
        details["bank"] = data["bank"]
    elif method == PaymentMethod.UPI and data.get("vpa"):
        details["upi_id"] = data["vpa"]
    elif method == PaymentMethod.WALLET and data.get("wallet"):
        details["wallet"] = data["wallet"]
    return details
