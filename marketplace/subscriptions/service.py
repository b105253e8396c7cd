"""
Subscription lifecycle: purchase, payment verification, upgrade, cancellation, expiry.
Usage gating itself lives in QuotaService.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Mapping

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.collaborators import Notifier
from marketplace.core.errors import GatewayError, PaymentVerificationFailed, SubscriptionError
from marketplace.gateways.base import Gateway, PaymentGateway, PaymentMethod
from marketplace.gateways.retry import call_with_retry
from marketplace.models.subscription import Subscription
from marketplace.notifications.publisher import NotificationEvent
from marketplace.subscriptions.plans import PLANS, Plan, get_plan
from marketplace.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

ProrationPolicy = Callable[[Subscription, Plan, datetime], int]


def daily_rate_proration(current: Subscription, target: Plan, now: datetime) -> int:
    """Target plan's daily rate times the whole days left on the current period, rounded half-up."""
    remaining = as_utc(current.end_date) - now
    days = max(0, math.ceil(remaining.total_seconds() / 86400))
    amount = Decimal(target.price) * days / Decimal(target.duration_days)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class UpgradeQuote:
    current_plan: str
    target_plan: str
    remaining_days: int
    amount: int
    currency: str


@dataclass
class SubscriptionCheckout:
    subscription_id: str
    plan: str
    status: str
    amount: int
    currency: str
    gateway: Gateway | None = None
    order_id: str | None = None
    client_secret: str | None = None


class SubscriptionService:
    def __init__(
        self,
        db: Session,
        gateways: Mapping[Gateway, PaymentGateway],
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
        proration: ProrationPolicy = daily_rate_proration,
    ) -> None:
        self.db = db
        self.gateways = dict(gateways)
        self.notifier = notifier
        self.clock = clock or utcnow
        self.proration = proration

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_plans(self) -> list[Plan]:
        return sorted(PLANS.values(), key=lambda p: p.rank)

    def get_active(self, user_id: str) -> Subscription | None:
        now = self.clock()
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status == "active",
                Subscription.start_date <= now,
                Subscription.end_date > now,
            )
            .order_by(Subscription.created_at.desc())
            .first()
        )

    def history(self, user_id: str, limit: int = 20) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    def purchase(
        self,
        user_id: str,
        plan_name: str,
        gateway: Gateway | str | None = None,
        payment_method: PaymentMethod | str = PaymentMethod.CARD,
    ) -> SubscriptionCheckout:
        plan = get_plan(plan_name)
        if self.get_active(user_id) is not None:
            raise SubscriptionError(
                "User already has an active subscription",
                detail={"user_id": user_id, "plan": plan.name},
            )
        now = self.clock()
        end = now + timedelta(days=plan.duration_days)

        if plan.is_free:
            sub = self._new_row(user_id, plan, now, end, status="active", amount_due=0)
            self._commit_new(sub)
            logger.info("subscription_activated", extra={"user_id": user_id, "subscription_id": sub.id, "plan": plan.name})
            self._notify(user_id, NotificationEvent.SUBSCRIPTION_ACTIVATED, {"plan": plan.name})
            return SubscriptionCheckout(sub.id, plan.name, sub.status, 0, plan.currency)

        return self._checkout(user_id, plan, gateway, payment_method, plan.price, now, end)

    def verify_purchase(self, order_id: str, payment_id: str, signature: str | None) -> Subscription:
        """Activate a paid subscription once its payment is proven. Repeat calls return the active row."""
        sub = self.db.query(Subscription).filter(Subscription.gateway_order_id == order_id).one_or_none()
        if sub is None:
            raise SubscriptionError(f"No subscription for order {order_id}", detail={"order_id": order_id})
        if sub.status == "active":
            return sub
        if sub.status != "pending":
            raise SubscriptionError(
                f"Subscription {sub.id} is {sub.status}",
                detail={"subscription_id": sub.id, "status": sub.status},
            )

        adapter = self._gateway(sub.gateway)
        sub_id, user_id, amount_due = sub.id, sub.user_id, sub.amount_due
        if not adapter.verify_signature(order_id, payment_id, signature):
            logger.warning("subscription_verification_failed", extra={"subscription_id": sub_id, "payment_id": payment_id})
            raise PaymentVerificationFailed(
                "Subscription payment signature mismatch",
                detail={"subscription_id": sub_id},
            )
        record = call_with_retry(adapter.fetch_payment_details, payment_id, operation="fetch_payment")
        if not record.is_authorized or record.amount != amount_due:
            logger.warning(
                "subscription_verification_failed",
                extra={"subscription_id": sub_id, "payment_id": payment_id, "error": record.status},
            )
            raise PaymentVerificationFailed(
                "Subscription payment not authorized",
                detail={"subscription_id": sub_id, "status": record.status},
            )
        if adapter.requires_manual_capture and not record.is_captured:
            call_with_retry(
                adapter.capture,
                payment_id,
                amount_due,
                idempotency_key=f"capture-sub-{sub_id}",
                operation="capture",
            )
        return self._activate(sub_id, user_id, payment_id)

    def _activate(self, sub_id: str, user_id: str, payment_id: str) -> Subscription:
        now = self.clock()
        sub = self.db.query(Subscription).filter(Subscription.id == sub_id).one()
        plan = get_plan(sub.plan)
        values = {"status": "active", "paid_at": now, "gateway_payment_id": payment_id}
        if sub.upgraded_from_id is None:
            values.update(start_date=now, end_date=now + timedelta(days=plan.duration_days))

        try:
            previous = self.get_active(user_id)
            if previous is not None:
                # usage carries over: an upgrade is not a new billing period
                values.update(
                    listings_created=previous.listings_created,
                    ads_posted=previous.ads_posted,
                    last_reset_at=previous.last_reset_at,
                )
                self.db.execute(
                    update(Subscription)
                    .where(Subscription.id == previous.id, Subscription.status == "active")
                    .values(status="cancelled", cancelled_at=now, cancellation_reason=f"Replaced by {plan.name}")
                    .execution_options(synchronize_session=False)
                )
            result = self.db.execute(
                update(Subscription)
                .where(Subscription.id == sub_id, Subscription.status == "pending")
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                current = self.db.query(Subscription).filter(Subscription.id == sub_id).one()
                if current.status == "active":
                    return current
                raise SubscriptionError(
                    f"Subscription {sub_id} is {current.status}",
                    detail={"subscription_id": sub_id, "status": current.status},
                )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise SubscriptionError(
                "Another subscription was activated concurrently",
                detail={"subscription_id": sub_id},
            ) from e
        except SQLAlchemyError:
            self.db.rollback()
            raise

        sub = self.db.query(Subscription).filter(Subscription.id == sub_id).one()
        logger.info("subscription_activated", extra={"user_id": user_id, "subscription_id": sub_id, "plan": sub.plan})
        self._notify(user_id, NotificationEvent.SUBSCRIPTION_ACTIVATED, {"plan": sub.plan})
        return sub

    # ------------------------------------------------------------------
    # Upgrade / cancel / expiry
    # ------------------------------------------------------------------

    def quote_upgrade(self, user_id: str, plan_name: str) -> UpgradeQuote:
        target = get_plan(plan_name)
        current = self.get_active(user_id)
        if current is None:
            raise SubscriptionError(
                "No active subscription found. Please purchase a subscription first.",
                detail={"user_id": user_id},
            )
        if get_plan(current.plan).rank >= target.rank:
            raise SubscriptionError(
                "Cannot downgrade or upgrade to the same plan",
                detail={"user_id": user_id, "plan": current.plan, "target": target.name},
            )
        now = self.clock()
        remaining_days = max(0, math.ceil((as_utc(current.end_date) - now).total_seconds() / 86400))
        return UpgradeQuote(
            current_plan=current.plan,
            target_plan=target.name,
            remaining_days=remaining_days,
            amount=self.proration(current, target, now),
            currency=target.currency,
        )

    def upgrade(
        self,
        user_id: str,
        plan_name: str,
        gateway: Gateway | str,
        payment_method: PaymentMethod | str = PaymentMethod.CARD,
    ) -> SubscriptionCheckout:
        quote = self.quote_upgrade(user_id, plan_name)
        current = self.get_active(user_id)
        plan = get_plan(plan_name)
        return self._checkout(
            user_id,
            plan,
            gateway,
            payment_method,
            quote.amount,
            self.clock(),
            as_utc(current.end_date),
            upgraded_from_id=current.id,
        )

    def cancel(self, user_id: str, reason: str = "") -> Subscription:
        sub = self.get_active(user_id)
        if sub is None:
            raise SubscriptionError("No active subscription to cancel", detail={"user_id": user_id})
        sub.status = "cancelled"
        sub.cancelled_at = self.clock()
        sub.cancellation_reason = reason or None
        try:
            self.db.add(sub)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(sub)
        logger.info("subscription_cancelled", extra={"user_id": user_id, "subscription_id": sub.id, "plan": sub.plan})
        return sub

    def expire_due(self, now: datetime | None = None) -> int:
        """Mark active subscriptions past their end date as expired. Returns how many."""
        now = now or self.clock()
        due = (
            self.db.query(Subscription.id, Subscription.user_id, Subscription.plan)
            .filter(Subscription.status == "active", Subscription.end_date <= now)
            .all()
        )
        expired = 0
        for sub_id, user_id, plan in due:
            try:
                result = self.db.execute(
                    update(Subscription)
                    .where(Subscription.id == sub_id, Subscription.status == "active")
                    .values(status="expired")
                    .execution_options(synchronize_session=False)
                )
                self.db.commit()
            except SQLAlchemyError:
                self.db.rollback()
                raise
            if result.rowcount:
                expired += 1
                self._notify(user_id, NotificationEvent.SUBSCRIPTION_EXPIRED, {"plan": plan})
        logger.info("subscriptions_expired", extra={"expired": expired})
        return expired

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _checkout(
        self,
        user_id: str,
        plan: Plan,
        gateway: Gateway | str | None,
        payment_method: PaymentMethod | str,
        amount: int,
        start: datetime,
        end: datetime,
        upgraded_from_id: str | None = None,
    ) -> SubscriptionCheckout:
        if gateway is None:
            raise SubscriptionError("A payment gateway is required for paid plans", detail={"plan": plan.name})
        adapter = self._gateway(gateway)
        sub = self._new_row(
            user_id,
            plan,
            start,
            end,
            status="pending",
            amount_due=amount,
            gateway=adapter.gateway.value,
            payment_method=PaymentMethod(payment_method).value,
            upgraded_from_id=upgraded_from_id,
        )
        self._commit_new(sub)
        sub_id = sub.id

        try:
            order = call_with_retry(
                adapter.create_order,
                amount,
                plan.currency,
                f"sub_{sub_id}",
                {"subscription_id": sub_id, "user_id": user_id, "plan": plan.name},
                operation="create_order",
            )
        except GatewayError as e:
            sub.status = "cancelled"
            sub.cancelled_at = self.clock()
            sub.cancellation_reason = "Order creation failed"
            self.db.add(sub)
            self.db.commit()
            logger.warning(
                "subscription_order_failed",
                extra={"subscription_id": sub_id, "gateway": adapter.gateway.value, "error": str(e)},
            )
            raise

        sub.gateway_order_id = order.id
        self.db.add(sub)
        self.db.commit()
        logger.info(
            "subscription_checkout_created",
            extra={"user_id": user_id, "subscription_id": sub_id, "plan": plan.name, "order_id": order.id, "amount": amount},
        )
        return SubscriptionCheckout(
            subscription_id=sub_id,
            plan=plan.name,
            status="pending",
            amount=amount,
            currency=plan.currency,
            gateway=adapter.gateway,
            order_id=order.id,
            client_secret=order.client_secret,
        )

    def _new_row(self, user_id: str, plan: Plan, start: datetime, end: datetime, **fields) -> Subscription:
        return Subscription(
            user_id=user_id,
            plan=plan.name,
            price=plan.price,
            currency=plan.currency,
            max_listings=plan.max_listings,
            max_ads=plan.max_ads,
            start_date=start,
            end_date=end,
            last_reset_at=start,
            listings_created=0,
            ads_posted=0,
            **fields,
        )

    def _commit_new(self, sub: Subscription) -> None:
        try:
            self.db.add(sub)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise SubscriptionError(
                "User already has an active subscription",
                detail={"user_id": sub.user_id},
            ) from e
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(sub)

    def _gateway(self, gateway: Gateway | str) -> PaymentGateway:
        try:
            return self.gateways[Gateway(gateway)]
        except (ValueError, KeyError):
            raise SubscriptionError(f"Gateway not configured: {gateway}", detail={"gateway": str(gateway)})

    def _notify(self, user_id: str, event: str, payload: dict) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(user_id, event, payload)
        except Exception as e:
            logger.warning("notification_failed", extra={"user_id": user_id, "event": event, "error": str(e)})
