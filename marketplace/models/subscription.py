"""
Subscription model: one user's plan instance with per-period usage counters.
Plan limits are copied onto the row at creation; -1 means no limit.
At most one active row per user (partial unique index). Never hard-deleted.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, text

from marketplace.db.base import Base

UNLIMITED = -1


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    plan = Column(String, nullable=False, default="basic")      # basic / premium / unlimited
    status = Column(String, nullable=False, default="pending")  # pending / active / cancelled / expired

    price = Column(Integer, nullable=False, default=0)          # minor units
    currency = Column(String(3), nullable=False, default="INR")
    max_listings = Column(Integer, nullable=False, default=10)
    max_ads = Column(Integer, nullable=False, default=10)

    start_date = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    end_date = Column(DateTime(timezone=True), nullable=False)

    listings_created = Column(Integer, nullable=False, default=0)
    ads_posted = Column(Integer, nullable=False, default=0)
    last_reset_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    gateway = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    amount_due = Column(Integer, nullable=False, default=0)     # what the order was created for (prorated on upgrade)
    gateway_order_id = Column(String, nullable=True, index=True)
    gateway_payment_id = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    upgraded_from_id = Column(String, nullable=True)

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
