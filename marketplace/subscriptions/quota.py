"""
Per-user monthly listing/ad quota.

Check-and-increment is one conditional UPDATE, so N concurrent requests at the
limit admit exactly as many as there are free slots. Counters reset lazily:
the first check after the period boundary zeroes them.

A plan whose duration equals the period expires at the same instant its first
period ends, so for those the fresh period comes from expiry plus repurchase
(a new row with zeroed counters). The lazy reset only fires for plans that run
longer than one period.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.errors import QuotaExceeded
from marketplace.models.subscription import UNLIMITED, Subscription
from marketplace.subscriptions.plans import upgrade_options
from marketplace.utils.metrics import quota_rejections_total
from marketplace.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

LISTING = "listing"
AD = "ad"

_COLUMNS = {
    LISTING: (Subscription.listings_created, Subscription.max_listings),
    AD: (Subscription.ads_posted, Subscription.max_ads),
}


@dataclass
class QuotaStatus:
    plan: str | None
    max_listings: int
    listings_created: int
    listings_remaining: int     # UNLIMITED when max is unlimited
    max_ads: int
    ads_posted: int
    ads_remaining: int
    period_started_at: datetime | None = None
    next_reset_at: datetime | None = None
    end_date: datetime | None = None


def _remaining(limit: int, used: int) -> int:
    return UNLIMITED if limit == UNLIMITED else max(0, limit - used)


class QuotaService:
    def __init__(self, db: Session, clock: Callable[[], datetime] | None = None) -> None:
        self.db = db
        self.clock = clock or utcnow
        self.period = timedelta(days=settings.subscription_period_days)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def can_create_listing(self, user_id: str) -> bool:
        return self._has_room(user_id, LISTING)

    def can_post_ad(self, user_id: str) -> bool:
        return self._has_room(user_id, AD)

    def require_listing_quota(self, user_id: str) -> None:
        if not self.can_create_listing(user_id):
            raise self._exceeded(user_id, LISTING)

    def require_ad_quota(self, user_id: str) -> None:
        if not self.can_post_ad(user_id):
            raise self._exceeded(user_id, AD)

    # ------------------------------------------------------------------
    # Increments
    # ------------------------------------------------------------------

    def increment_listing_usage(self, user_id: str) -> None:
        self._increment(user_id, LISTING)

    def increment_ad_usage(self, user_id: str) -> None:
        self._increment(user_id, AD)

    @contextmanager
    def listing_slot(self, user_id: str) -> Iterator[None]:
        """Reserve a listing slot before creating the listing; returned if creation fails."""
        self._increment(user_id, LISTING)
        try:
            yield
        except Exception:
            self._release(user_id, LISTING)
            raise

    @contextmanager
    def ad_slot(self, user_id: str) -> Iterator[None]:
        self._increment(user_id, AD)
        try:
            yield
        except Exception:
            self._release(user_id, AD)
            raise

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def usage_summary(self, user_id: str) -> QuotaStatus:
        now = self.clock()
        self._reset_if_due(user_id, now)
        sub = self._active(user_id, now)
        if sub is None:
            return QuotaStatus(
                plan=None,
                max_listings=0,
                listings_created=0,
                listings_remaining=0,
                max_ads=0,
                ads_posted=0,
                ads_remaining=0,
            )
        last_reset = as_utc(sub.last_reset_at)
        return QuotaStatus(
            plan=sub.plan,
            max_listings=sub.max_listings,
            listings_created=sub.listings_created,
            listings_remaining=_remaining(sub.max_listings, sub.listings_created),
            max_ads=sub.max_ads,
            ads_posted=sub.ads_posted,
            ads_remaining=_remaining(sub.max_ads, sub.ads_posted),
            period_started_at=last_reset,
            next_reset_at=last_reset + self.period if last_reset else None,
            end_date=as_utc(sub.end_date),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _active_filter(self, user_id: str, now: datetime) -> tuple:
        return (
            Subscription.user_id == user_id,
            Subscription.status == "active",
            Subscription.start_date <= now,
            Subscription.end_date > now,
        )

    def _active(self, user_id: str, now: datetime) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(*self._active_filter(user_id, now))
            .order_by(Subscription.created_at.desc())
            .first()
        )

    def _reset_if_due(self, user_id: str, now: datetime) -> None:
        """Zero the counters once per period. The WHERE clause makes concurrent resets collapse into one."""
        try:
            result = self.db.execute(
                update(Subscription)
                .where(
                    *self._active_filter(user_id, now),
                    Subscription.last_reset_at <= now - self.period,
                )
                .values(listings_created=0, ads_posted=0, last_reset_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        if result.rowcount:
            logger.info("quota_period_reset", extra={"user_id": user_id})

    def _has_room(self, user_id: str, kind: str) -> bool:
        now = self.clock()
        self._reset_if_due(user_id, now)
        sub = self._active(user_id, now)
        if sub is None:
            return False
        used_col, limit_col = _COLUMNS[kind]
        limit = getattr(sub, limit_col.key)
        if limit == UNLIMITED:
            return True
        return getattr(sub, used_col.key) < limit

    def _increment(self, user_id: str, kind: str) -> None:
        now = self.clock()
        self._reset_if_due(user_id, now)
        used_col, limit_col = _COLUMNS[kind]
        try:
            result = self.db.execute(
                update(Subscription)
                .where(
                    *self._active_filter(user_id, now),
                    or_(limit_col == UNLIMITED, used_col < limit_col),
                )
                .values({used_col: used_col + 1})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                raise self._exceeded(user_id, kind)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        logger.info("quota_usage_incremented", extra={"user_id": user_id, "operation": kind})

    def _release(self, user_id: str, kind: str) -> None:
        """Give back a reserved slot (floor at 0)."""
        used_col, _ = _COLUMNS[kind]
        now = self.clock()
        try:
            self.db.rollback()
            self.db.execute(
                update(Subscription)
                .where(*self._active_filter(user_id, now), used_col > 0)
                .values({used_col: used_col - 1})
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("quota_release_failed", extra={"user_id": user_id, "operation": kind})

    def _exceeded(self, user_id: str, kind: str) -> QuotaExceeded:
        sub = self._active(user_id, self.clock())
        plan = sub.plan if sub else None
        used_col, limit_col = _COLUMNS[kind]
        limit = getattr(sub, limit_col.key) if sub else 0
        used = getattr(sub, used_col.key) if sub else 0
        quota_rejections_total.labels(kind=kind, plan=plan or "none").inc()
        logger.info(
            "quota_exceeded",
            extra={"user_id": user_id, "plan": plan, "operation": kind, "amount": used},
        )
        return QuotaExceeded(kind, plan, limit, used, upgrade_plans=upgrade_options(plan))
