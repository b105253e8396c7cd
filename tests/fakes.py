"""In-memory collaborators and a scriptable gateway for service tests."""
import hashlib
import hmac
import threading
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from marketplace.collaborators import (
    Availability,
    ListingService,
    ListingSnapshot,
    ListingStatus,
    Notifier,
    UserDirectory,
    UserSnapshot,
)
from marketplace.gateways.base import (
    Gateway,
    PaymentGateway,
    PaymentMethod,
    PaymentRecord,
    ProviderOrder,
    signatures_match,
)


class FrozenClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryListingService(ListingService):
    def __init__(self):
        self._lock = threading.Lock()
        self.listings: dict[str, ListingSnapshot] = {}
        self.sales: list[tuple[str, str]] = []

    def add(self, listing_id, seller_id, price, status="active", availability="available"):
        self.listings[listing_id] = ListingSnapshot(
            listing_id=listing_id,
            status=status,
            availability=availability,
            price=price,
            seller_id=seller_id,
        )

    def get_listing(self, listing_id):
        return self.listings.get(listing_id)

    def set_availability(self, listing_id, availability):
        with self._lock:
            self.listings[listing_id] = replace(
                self.listings[listing_id], availability=Availability(availability).value
            )

    def mark_sold(self, listing_id, buyer_id, sale):
        with self._lock:
            self.sales.append((listing_id, buyer_id))
            self.listings[listing_id] = replace(
                self.listings[listing_id],
                status=ListingStatus.SOLD.value,
                availability=Availability.SOLD.value,
            )


class InMemoryUserDirectory(UserDirectory):
    def __init__(self):
        self._lock = threading.Lock()
        self.sold_items: Counter = Counter()

    def get_user(self, user_id):
        return UserSnapshot(user_id=user_id)

    def increment_sold_items(self, user_id):
        with self._lock:
            self.sold_items[user_id] += 1


class RecordingNotifier(Notifier):
    def __init__(self):
        self._lock = threading.Lock()
        self.sent: list[tuple[str, str, dict]] = []

    def notify(self, user_id, event, payload):
        with self._lock:
            self.sent.append((user_id, event, payload))

    def events(self, user_id=None):
        return [e for u, e, _ in self.sent if user_id is None or u == user_id]


class FakeGateway(PaymentGateway):
    """Scriptable provider: set fail_* to an exception to make that call raise."""

    SECRET = "test_secret"

    def __init__(self, gateway=Gateway.RAZORPAY, manual_capture=False):
        super().__init__({"timeout": 1.0})
        self.gateway = Gateway(gateway)
        self.requires_manual_capture = manual_capture
        self._lock = threading.Lock()
        self._seq = 0
        self.orders: dict[str, int] = {}
        self.payments: dict[str, PaymentRecord] = {}
        self.create_order_calls: list[dict] = []
        self.captures: list[tuple[str, int, str | None]] = []
        self.refunds: list[tuple[str, int, str | None]] = []
        self.fail_create_order = None
        self.fail_fetch = None
        self.fail_capture = None
        self.fail_refund = None

    def _next(self, prefix):
        with self._lock:
            self._seq += 1
            return f"{prefix}_{self._seq}"

    def is_available(self):
        return True

    def sign(self, order_id, payment_id):
        return hmac.new(
            self.SECRET.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256
        ).hexdigest()

    def authorize(self, order_id, status="authorized", amount=None, method=PaymentMethod.CARD):
        """Simulate the buyer completing checkout; returns (payment_id, signature)."""
        payment_id = self._next("pay")
        self.payments[payment_id] = PaymentRecord(
            payment_id=payment_id,
            status=status,
            amount=self.orders[order_id] if amount is None else amount,
            currency="INR",
            method=method,
            details={"last4": "4242", "brand": "visa"},
            is_authorized=status in ("authorized", "captured", "requires_capture"),
            order_id=order_id,
        )
        return payment_id, self.sign(order_id, payment_id)

    def create_order(self, amount, currency, receipt_id, metadata):
        self.create_order_calls.append(
            {"amount": amount, "currency": currency, "receipt_id": receipt_id, "metadata": metadata}
        )
        if self.fail_create_order is not None:
            raise self.fail_create_order
        order_id = self._next("order")
        self.orders[order_id] = amount
        return ProviderOrder(id=order_id, amount=amount, currency=currency, status="created", receipt_id=receipt_id)

    def verify_signature(self, order_id, payment_id, signature):
        return signatures_match(self.sign(order_id, payment_id), signature)

    def fetch_payment_details(self, payment_id):
        if self.fail_fetch is not None:
            raise self.fail_fetch
        return self.payments[payment_id]

    def capture(self, payment_id, amount, idempotency_key=None):
        if self.fail_capture is not None:
            raise self.fail_capture
        with self._lock:
            self.captures.append((payment_id, amount, idempotency_key))

    def refund(self, payment_id, amount, metadata, idempotency_key=None):
        if self.fail_refund is not None:
            raise self.fail_refund
        refund_id = self._next("rfnd")
        with self._lock:
            self.refunds.append((payment_id, amount, idempotency_key))
        return refund_id
