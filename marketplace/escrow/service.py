"""
Escrow controller: purchase → order → verification → hold → release/refund.

Gateway calls never run inside an open DB transaction; each ledger transition
commits on its own. Listing, user-stat and notification side effects run after
the financial commit and are best-effort.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Mapping, NoReturn

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.collaborators import (
    Availability,
    ListingService,
    Notifier,
    SaleInfo,
    UserDirectory,
)
from marketplace.core.errors import (
    GatewayError,
    GatewayUnavailable,
    InvalidAmount,
    InvalidStateTransition,
    ListingUnavailable,
    MarketplaceError,
    NotTransactionParty,
    PaymentVerificationFailed,
    ReconciliationNeeded,
    SelfPurchaseRejected,
)
from marketplace.escrow import config as escrow_config
from marketplace.escrow.fees import FeeBreakdown, compute_fees
from marketplace.escrow.reconciliation import ReconciliationService
from marketplace.escrow.state_machine import TransactionLedger, TransactionState
from marketplace.gateways.base import Gateway, PaymentGateway, PaymentMethod
from marketplace.gateways.retry import call_with_retry
from marketplace.models.transaction import TimelineEntry, Transaction
from marketplace.notifications.publisher import NotificationEvent
from marketplace.utils.time import utcnow

logger = logging.getLogger(__name__)

AUTO_RELEASE_NOTE = "Automatic release after hold period"


class DisputeResolution(str, Enum):
    RELEASE = "release"
    REFUND = "refund"


@dataclass
class PurchaseOrder:
    """What the client needs to complete payment with the provider."""
    transaction_id: str
    gateway: Gateway
    order_id: str
    amount: int
    currency: str
    fees: FeeBreakdown
    client_secret: str | None = None


class EscrowService:
    def __init__(
        self,
        db: Session,
        gateways: Mapping[Gateway, PaymentGateway],
        listings: ListingService,
        users: UserDirectory,
        notifier: Notifier,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.gateways = dict(gateways)
        self.listings = listings
        self.users = users
        self.notifier = notifier
        self.clock = clock or utcnow
        self.ledger = TransactionLedger(db)
        self.reconciliation = ReconciliationService(db)

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    def initiate_purchase(
        self,
        buyer_id: str,
        seller_id: str,
        listing_id: str,
        amount: int,
        gateway: Gateway | str,
        payment_method: PaymentMethod | str = PaymentMethod.CARD,
        currency: str | None = None,
    ) -> PurchaseOrder:
        if buyer_id == seller_id:
            raise SelfPurchaseRejected(
                "Buyer and seller are the same user",
                detail={"listing_id": listing_id, "buyer_id": buyer_id},
            )
        listing = self.listings.get_listing(listing_id)
        if listing is None or not listing.purchasable or listing.seller_id != seller_id:
            raise ListingUnavailable(
                f"Listing {listing_id} cannot be purchased",
                detail={
                    "listing_id": listing_id,
                    "status": getattr(listing, "status", None),
                    "availability": getattr(listing, "availability", None),
                },
            )

        adapter = self._gateway(gateway)
        method = PaymentMethod(payment_method)
        fees = compute_fees(amount, method)
        currency = (currency or escrow_config.get_default_currency()).upper()

        txn = Transaction(
            buyer_id=buyer_id,
            seller_id=seller_id,
            listing_id=listing_id,
            original_price=listing.price,
            final_price=amount,
            price_above_list=amount > listing.price,
            currency=currency,
            platform_fee=fees.platform_fee,
            gateway_fee=fees.gateway_fee,
            fees_total=fees.total,
            gateway=adapter.gateway.value,
            payment_method=method.value,
            hold_period_days=escrow_config.get_hold_period_days(),
        )
        txn = self.ledger.create(txn, "Purchase initiated", actor_id=buyer_id)
        transaction_id = txn.id
        charge = fees.charge_amount(amount)

        if txn.price_above_list:
            logger.warning(
                "purchase_above_list_price",
                extra={"transaction_id": transaction_id, "listing_id": listing_id, "amount": amount},
            )

        try:
            order = call_with_retry(
                adapter.create_order,
                charge,
                currency,
                transaction_id,
                {"transaction_id": transaction_id, "listing_id": listing_id, "buyer_id": buyer_id},
                operation="create_order",
            )
        except GatewayError as e:
            logger.warning(
                "purchase_order_failed",
                extra={"transaction_id": transaction_id, "gateway": adapter.gateway.value, "error": str(e)},
            )
            self._cancel_quietly(transaction_id, f"Order creation failed: {e}")
            raise

        self.ledger.attach_order(transaction_id, order.id)
        logger.info(
            "purchase_initiated",
            extra={
                "transaction_id": transaction_id,
                "buyer_id": buyer_id,
                "seller_id": seller_id,
                "listing_id": listing_id,
                "gateway": adapter.gateway.value,
                "order_id": order.id,
                "amount": charge,
            },
        )
        return PurchaseOrder(
            transaction_id=transaction_id,
            gateway=adapter.gateway,
            order_id=order.id,
            amount=charge,
            currency=currency,
            fees=fees,
            client_secret=order.client_secret,
        )

    def cancel_purchase(self, transaction_id: str, cancelled_by: str | None = None) -> Transaction:
        """Buyer abandons checkout before paying."""
        txn = self.ledger.get(transaction_id)
        if cancelled_by is not None and cancelled_by != txn.buyer_id:
            raise NotTransactionParty(
                "Only the buyer can cancel a pending purchase",
                detail={"transaction_id": transaction_id, "user_id": cancelled_by},
            )
        txn = self.ledger.transition(
            transaction_id,
            TransactionState.CANCELLED,
            "Purchase cancelled by buyer",
            expected=TransactionState.PENDING,
            actor_id=cancelled_by,
            auto_release_enabled=False,
        )
        self._notify(txn.buyer_id, NotificationEvent.PURCHASE_CANCELLED, {"transaction_id": transaction_id})
        return txn

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_and_escrow(self, transaction_id: str, payment_id: str, signature: str | None) -> Transaction:
        """
        Confirm the client's payment proof and hold the money.

        Safe to call repeatedly for the same payment: once the transaction is
        past pending the call is a no-op returning the current row.
        """
        txn = self.ledger.get(transaction_id)
        if txn.state in (TransactionState.FAILED.value, TransactionState.CANCELLED.value):
            logger.warning(
                "escrow_verify_closed_transaction",
                extra={"transaction_id": transaction_id, "payment_id": payment_id, "old_state": txn.state},
            )
            raise PaymentVerificationFailed(
                f"Transaction {transaction_id} is {txn.state}",
                detail={"transaction_id": transaction_id, "state": txn.state},
            )
        if txn.state != TransactionState.PENDING.value:
            logger.info(
                "escrow_verify_duplicate",
                extra={"transaction_id": transaction_id, "payment_id": payment_id, "old_state": txn.state},
            )
            return txn
        if not txn.gateway_order_id:
            raise PaymentVerificationFailed(
                f"Transaction {transaction_id} has no provider order",
                detail={"transaction_id": transaction_id},
            )

        adapter = self._gateway(txn.gateway)
        order_id = txn.gateway_order_id
        charge = txn.charge_amount
        hold_days = txn.hold_period_days
        buyer_id, seller_id, listing_id = txn.buyer_id, txn.seller_id, txn.listing_id

        if not adapter.verify_signature(order_id, payment_id, signature):
            return self._fail_verification(transaction_id, payment_id, "signature_mismatch")

        # GatewayUnavailable propagates and leaves the transaction pending
        record = call_with_retry(adapter.fetch_payment_details, payment_id, operation="fetch_payment")
        if not record.is_authorized:
            return self._fail_verification(transaction_id, payment_id, f"payment_status_{record.status}")
        if record.order_id and record.order_id != order_id:
            return self._fail_verification(transaction_id, payment_id, "order_mismatch")
        if record.amount != charge:
            return self._fail_verification(transaction_id, payment_id, "amount_mismatch")

        listing = self.listings.get_listing(listing_id)
        if listing is None or not listing.purchasable:
            self._refund_unavailable(
                transaction_id, adapter, payment_id, charge, buyer_id,
                f"listing {getattr(listing, 'availability', 'missing')}",
            )

        release_at = self.clock() + timedelta(days=hold_days)
        try:
            txn = self.ledger.transition(
                transaction_id,
                TransactionState.HELD_IN_ESCROW,
                "Payment verified and held in escrow",
                expected=TransactionState.PENDING,
                actor_id=buyer_id,
                gateway_payment_id=payment_id,
                payment_method_details={"method": record.method.value, **record.details},
                release_at=release_at,
            )
        except InvalidStateTransition as e:
            # a concurrent delivery of the same proof got there first
            if e.current in (TransactionState.FAILED.value, TransactionState.CANCELLED.value):
                raise PaymentVerificationFailed(
                    f"Transaction {transaction_id} is {e.current}",
                    detail={"transaction_id": transaction_id, "state": e.current},
                ) from e
            logger.info(
                "escrow_verify_duplicate",
                extra={"transaction_id": transaction_id, "payment_id": payment_id, "old_state": e.current},
            )
            return self.ledger.get(transaction_id)
        except IntegrityError:
            # uq_transactions_listing_committed: another buyer's money is already held
            self._refund_unavailable(
                transaction_id, adapter, payment_id, charge, buyer_id, "listing held by another transaction"
            )

        self._side_effect(
            "reserve_listing", transaction_id, self.listings.set_availability, listing_id, Availability.RESERVED
        )
        payload = {"transaction_id": transaction_id, "amount": charge, "release_at": release_at.isoformat()}
        self._notify(buyer_id, NotificationEvent.PAYMENT_HELD, payload)
        self._notify(seller_id, NotificationEvent.PAYMENT_RECEIVED, payload)
        return txn

    def _fail_verification(self, transaction_id: str, payment_id: str, reason: str) -> Transaction:
        try:
            self.ledger.transition(
                transaction_id,
                TransactionState.FAILED,
                f"Payment verification failed: {reason}",
                expected=TransactionState.PENDING,
                gateway_payment_id=payment_id,
                auto_release_enabled=False,
            )
        except InvalidStateTransition as e:
            if e.current not in (TransactionState.FAILED.value, TransactionState.CANCELLED.value):
                # a valid proof for the same transaction won the race
                return self.ledger.get(transaction_id)
        logger.warning(
            "escrow_verification_failed",
            extra={"transaction_id": transaction_id, "payment_id": payment_id, "error": reason},
        )
        raise PaymentVerificationFailed(
            f"Payment verification failed for {transaction_id}: {reason}",
            detail={"transaction_id": transaction_id, "reason": reason},
        )

    def _refund_unavailable(
        self,
        transaction_id: str,
        adapter: PaymentGateway,
        payment_id: str,
        charge: int,
        buyer_id: str,
        reason: str,
    ) -> NoReturn:
        """The buyer paid for a listing someone else bought first: give the money back and fail."""
        try:
            refund_id = call_with_retry(
                adapter.refund,
                payment_id,
                charge,
                {"transaction_id": transaction_id, "reason": "listing_unavailable"},
                idempotency_key=f"refund-{transaction_id}-{charge}",
                operation="refund",
            )
        except GatewayError as e:
            self._reconcile(transaction_id, adapter.gateway, "refund", payment_id, f"{reason}; refund failed: {e}")

        try:
            self.ledger.transition(
                transaction_id,
                TransactionState.FAILED,
                f"Listing no longer available ({reason}); payment refunded",
                expected=TransactionState.PENDING,
                actor_id=buyer_id,
                gateway_payment_id=payment_id,
                gateway_refund_id=refund_id,
                refund_amount=charge,
                refund_reason="listing_unavailable",
                refunded_at=self.clock(),
                auto_release_enabled=False,
            )
        except InvalidStateTransition as e:
            self._reconcile(transaction_id, adapter.gateway, "refund", refund_id, f"ledger moved to {e.current}")
        except SQLAlchemyError as e:
            self._reconcile(transaction_id, adapter.gateway, "refund", refund_id, f"ledger write failed: {e}")

        logger.warning(
            "escrow_listing_unavailable_refunded",
            extra={
                "transaction_id": transaction_id,
                "payment_id": payment_id,
                "refund_id": refund_id,
                "amount": charge,
                "error": reason,
            },
        )
        self._notify(
            buyer_id,
            NotificationEvent.PAYMENT_REFUNDED,
            {"transaction_id": transaction_id, "amount": charge, "reason": "listing_unavailable"},
        )
        raise ListingUnavailable(
            f"Listing was sold to another buyer; payment for {transaction_id} refunded",
            detail={"transaction_id": transaction_id, "refund_id": refund_id},
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release_escrow(
        self,
        transaction_id: str,
        released_by: str | None = None,
        reason: str = AUTO_RELEASE_NOTE,
    ) -> Transaction:
        """Pay the seller. released_by=None means the system (auto-release)."""
        txn = self.ledger.get(transaction_id)
        if txn.state != TransactionState.HELD_IN_ESCROW.value:
            raise InvalidStateTransition(transaction_id, txn.state, TransactionState.COMPLETED.value)
        return self._release(txn, released_by, reason, expected=TransactionState.HELD_IN_ESCROW)

    def _release(
        self,
        txn: Transaction,
        released_by: str | None,
        note: str,
        expected: TransactionState,
        **fields: Any,
    ) -> Transaction:
        transaction_id = txn.id
        adapter = self._gateway(txn.gateway)
        payment_id = txn.gateway_payment_id
        buyer_id, seller_id, listing_id = txn.buyer_id, txn.seller_id, txn.listing_id
        final_price, currency = txn.final_price, txn.currency

        captured = False
        if adapter.requires_manual_capture:
            try:
                call_with_retry(
                    adapter.capture,
                    payment_id,
                    txn.charge_amount,
                    idempotency_key=f"capture-{transaction_id}",
                    operation="capture",
                )
            except GatewayUnavailable:
                raise
            except GatewayError as e:
                # expired or voided authorization: retrying the sweep cannot fix it
                try:
                    self.ledger.disable_auto_release(transaction_id)
                except SQLAlchemyError:
                    logger.exception("escrow_auto_release_disable_failed", extra={"transaction_id": transaction_id})
                self._reconcile(transaction_id, adapter.gateway, "capture", payment_id, f"capture rejected: {e}")
            captured = True

        now = self.clock()
        try:
            txn = self.ledger.transition(
                transaction_id,
                TransactionState.COMPLETED,
                note,
                expected=expected,
                actor_id=released_by,
                is_released=True,
                released_at=now,
                released_by=released_by,
                **fields,
            )
        except InvalidStateTransition as e:
            if not captured or e.current == TransactionState.COMPLETED.value:
                raise
            self._reconcile(transaction_id, adapter.gateway, "capture", payment_id, f"ledger moved to {e.current}")
        except SQLAlchemyError as e:
            if not captured:
                raise
            self._reconcile(transaction_id, adapter.gateway, "capture", payment_id, f"ledger write failed: {e}")

        sale = SaleInfo(transaction_id=transaction_id, final_price=final_price, currency=currency, sold_at=now)
        self._side_effect("mark_sold", transaction_id, self.listings.mark_sold, listing_id, buyer_id, sale)
        self._side_effect("increment_sold_items", transaction_id, self.users.increment_sold_items, seller_id)
        payload = {"transaction_id": transaction_id, "amount": final_price, "currency": currency}
        self._notify(seller_id, NotificationEvent.ESCROW_RELEASED, payload)
        self._notify(buyer_id, NotificationEvent.ESCROW_RELEASED, payload)
        return txn

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    def process_refund(
        self,
        transaction_id: str,
        refund_amount: int | None = None,
        reason: str = "",
        refunded_by: str | None = None,
    ) -> Transaction:
        """Refund from escrow, or after release. Defaults to the full item price."""
        txn = self.ledger.get(transaction_id)
        refundable = (TransactionState.HELD_IN_ESCROW.value, TransactionState.COMPLETED.value)
        if txn.state not in refundable:
            raise InvalidStateTransition(transaction_id, txn.state, TransactionState.REFUNDED.value)
        amount = self._refund_amount(txn, refund_amount)
        return self._refund(txn, amount, reason, refunded_by, expected=refundable)

    def _refund_amount(self, txn: Transaction, refund_amount: int | None) -> int:
        amount = txn.final_price if refund_amount is None else refund_amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0 or amount > txn.charge_amount:
            raise InvalidAmount(
                f"Refund amount must be between 1 and {txn.charge_amount}, got {amount!r}",
                detail={"transaction_id": txn.id, "amount": amount},
            )
        return amount

    def _refund(
        self,
        txn: Transaction,
        amount: int,
        reason: str,
        refunded_by: str | None,
        expected: Any,
        **fields: Any,
    ) -> Transaction:
        transaction_id = txn.id
        adapter = self._gateway(txn.gateway)
        payment_id = txn.gateway_payment_id
        prior_state = txn.state
        buyer_id, seller_id, listing_id, currency = txn.buyer_id, txn.seller_id, txn.listing_id, txn.currency

        refund_id = call_with_retry(
            adapter.refund,
            payment_id,
            amount,
            {"transaction_id": transaction_id, "reason": reason or "refund"},
            idempotency_key=f"refund-{transaction_id}-{amount}",
            operation="refund",
        )

        now = self.clock()
        try:
            txn = self.ledger.transition(
                transaction_id,
                TransactionState.REFUNDED,
                f"Refunded {amount} {currency}" + (f": {reason}" if reason else ""),
                expected=expected,
                actor_id=refunded_by,
                gateway_refund_id=refund_id,
                refund_amount=amount,
                refund_reason=reason,
                refunded_by=refunded_by,
                refunded_at=now,
                auto_release_enabled=False,
                **fields,
            )
        except InvalidStateTransition as e:
            if e.current == TransactionState.REFUNDED.value and self._refund_recorded(transaction_id, refund_id):
                raise
            self._reconcile(transaction_id, adapter.gateway, "refund", refund_id, f"ledger moved to {e.current}")
        except SQLAlchemyError as e:
            self._reconcile(transaction_id, adapter.gateway, "refund", refund_id, f"ledger write failed: {e}")

        logger.info(
            "escrow_refunded",
            extra={"transaction_id": transaction_id, "refund_id": refund_id, "amount": amount, "user_id": refunded_by},
        )
        if prior_state != TransactionState.COMPLETED.value:
            self._side_effect("restore_listing", transaction_id, self._restore_listing, listing_id)
        payload = {"transaction_id": transaction_id, "amount": amount, "currency": currency}
        self._notify(buyer_id, NotificationEvent.PAYMENT_REFUNDED, payload)
        self._notify(seller_id, NotificationEvent.PAYMENT_REFUNDED, payload)
        return txn

    def _refund_recorded(self, transaction_id: str, refund_id: str) -> bool:
        txn = self.ledger.get(transaction_id)
        return txn.gateway_refund_id == refund_id

    def _restore_listing(self, listing_id: str) -> None:
        listing = self.listings.get_listing(listing_id)
        if listing is not None and listing.availability == Availability.RESERVED.value:
            self.listings.set_availability(listing_id, Availability.AVAILABLE)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def raise_dispute(self, transaction_id: str, raised_by: str, reason: str) -> Transaction:
        txn = self.ledger.get(transaction_id)
        if raised_by not in (txn.buyer_id, txn.seller_id):
            raise NotTransactionParty(
                "Only the buyer or the seller can raise a dispute",
                detail={"transaction_id": transaction_id, "user_id": raised_by},
            )
        buyer_id, seller_id = txn.buyer_id, txn.seller_id
        txn = self.ledger.transition(
            transaction_id,
            TransactionState.DISPUTED,
            f"Dispute raised: {reason}",
            expected=TransactionState.HELD_IN_ESCROW,
            actor_id=raised_by,
            disputed_by=raised_by,
            disputed_at=self.clock(),
            dispute_reason=reason,
            auto_release_enabled=False,
        )
        payload = {"transaction_id": transaction_id, "reason": reason, "raised_by": raised_by}
        self._notify(buyer_id, NotificationEvent.DISPUTE_RAISED, payload)
        self._notify(seller_id, NotificationEvent.DISPUTE_RAISED, payload)
        return txn

    def resolve_dispute(
        self,
        transaction_id: str,
        resolution: DisputeResolution | str,
        resolved_by: str,
        note: str = "",
        refund_amount: int | None = None,
    ) -> Transaction:
        """Admin decision: pay the seller, or refund the buyer."""
        resolution = DisputeResolution(resolution)
        txn = self.ledger.get(transaction_id)
        target = (
            TransactionState.COMPLETED if resolution == DisputeResolution.RELEASE else TransactionState.REFUNDED
        )
        if txn.state != TransactionState.DISPUTED.value:
            raise InvalidStateTransition(transaction_id, txn.state, target.value)

        fields = {
            "dispute_resolution": resolution.value,
            "resolved_by": resolved_by,
            "resolved_at": self.clock(),
        }
        buyer_id, seller_id = txn.buyer_id, txn.seller_id
        label = f"Dispute resolved ({resolution.value})" + (f": {note}" if note else "")
        if resolution == DisputeResolution.RELEASE:
            txn = self._release(txn, resolved_by, label, expected=TransactionState.DISPUTED, **fields)
        else:
            amount = self._refund_amount(txn, refund_amount)
            txn = self._refund(
                txn, amount, note or "Dispute resolved in buyer's favour", resolved_by,
                expected=TransactionState.DISPUTED, **fields,
            )
        payload = {"transaction_id": transaction_id, "resolution": resolution.value}
        self._notify(buyer_id, NotificationEvent.DISPUTE_RESOLVED, payload)
        self._notify(seller_id, NotificationEvent.DISPUTE_RESOLVED, payload)
        return txn

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Transaction:
        return self.ledger.get(transaction_id)

    def get_timeline(self, transaction_id: str) -> list[TimelineEntry]:
        self.ledger.get(transaction_id)
        return self.ledger.timeline(transaction_id)

    def seller_stats(self, seller_id: str, days: int = 30) -> dict[str, dict[str, int]]:
        """{state: {"count": n, "total_amount": sum of final prices}} over the last `days`."""
        since = self.clock() - timedelta(days=days)
        rows = (
            self.db.query(
                Transaction.state,
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.final_price), 0),
            )
            .filter(Transaction.seller_id == seller_id, Transaction.created_at >= since)
            .group_by(Transaction.state)
            .all()
        )
        return {state: {"count": int(count), "total_amount": int(total)} for state, count, total in rows}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _gateway(self, gateway: Gateway | str) -> PaymentGateway:
        try:
            return self.gateways[Gateway(gateway)]
        except (ValueError, KeyError):
            raise GatewayError(f"Gateway not configured: {gateway}", detail={"gateway": str(gateway)})

    def _cancel_quietly(self, transaction_id: str, note: str) -> None:
        try:
            self.ledger.transition(
                transaction_id,
                TransactionState.CANCELLED,
                note,
                expected=TransactionState.PENDING,
                auto_release_enabled=False,
            )
        except (MarketplaceError, SQLAlchemyError):
            logger.exception("purchase_cancel_failed", extra={"transaction_id": transaction_id})

    def _reconcile(
        self, transaction_id: str, gateway: Gateway, operation: str, reference: str | None, reason: str
    ) -> NoReturn:
        self.db.rollback()
        try:
            ledger_state = self.ledger.current_state(transaction_id)
        except SQLAlchemyError:
            self.db.rollback()
            ledger_state = None
        issue_id = self.reconciliation.record(
            transaction_id,
            gateway.value,
            operation,
            reference,
            ledger_state,
            detail={"reason": reason},
        )
        raise ReconciliationNeeded(transaction_id, operation, issue_id, reason)

    def _side_effect(self, name: str, transaction_id: str, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("escrow_side_effect_failed", extra={"transaction_id": transaction_id, "operation": name})

    def _notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        try:
            self.notifier.notify(user_id, event, payload)
        except Exception as e:
            logger.warning("notification_failed", extra={"user_id": user_id, "event": event, "error": str(e)})
