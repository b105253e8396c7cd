"""
Transaction model: one buyer/seller purchase of one listing, held in escrow.
All money columns are integer minor units (paise for INR, cents for USD).
State changes go through TransactionLedger only; rows are never deleted.
"""
import secrets
import time
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, text

from marketplace.db.base import Base, JSONType


COMMITTED_STATES_SQL = "state IN ('held_in_escrow', 'disputed', 'completed')"


def generate_transaction_id() -> str:
    """TXN_<epoch ms>_<8 hex>: sortable by creation time and easy to read out over support."""
    return f"TXN_{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_state_release_at", "state", "release_at"),
        # one buyer per listing: at most one transaction may hold or have paid out its money
        Index(
            "uq_transactions_listing_committed",
            "listing_id",
            unique=True,
            postgresql_where=text(COMMITTED_STATES_SQL),
            sqlite_where=text(COMMITTED_STATES_SQL),
        ),
    )

    id = Column(String, primary_key=True, default=generate_transaction_id)
    buyer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=False, index=True)
    listing_id = Column(String, nullable=False, index=True)

    original_price = Column(Integer, nullable=False)     # list price at purchase time
    final_price = Column(Integer, nullable=False)        # negotiated price
    price_above_list = Column(Boolean, nullable=False, default=False)
    currency = Column(String(3), nullable=False, default="INR")
    platform_fee = Column(Integer, nullable=False, default=0)
    gateway_fee = Column(Integer, nullable=False, default=0)
    fees_total = Column(Integer, nullable=False, default=0)

    gateway = Column(String, nullable=False)             # razorpay / stripe, fixed at creation
    gateway_order_id = Column(String, nullable=True, index=True)
    gateway_payment_id = Column(String, nullable=True, index=True)
    gateway_refund_id = Column(String, nullable=True)
    payment_method = Column(String, nullable=False, default="card")
    payment_method_details = Column(JSONType, nullable=False, default=dict)

    state = Column(String, nullable=False, default="pending", index=True)

    hold_period_days = Column(Integer, nullable=False, default=7)
    release_at = Column(DateTime(timezone=True), nullable=True)
    auto_release_enabled = Column(Boolean, nullable=False, default=True)
    is_released = Column(Boolean, nullable=False, default=False)
    released_at = Column(DateTime(timezone=True), nullable=True)
    released_by = Column(String, nullable=True)          # null = system auto-release

    disputed_by = Column(String, nullable=True)
    disputed_at = Column(DateTime(timezone=True), nullable=True)
    dispute_reason = Column(Text, nullable=True)
    dispute_resolution = Column(String, nullable=True)   # release / refund
    resolved_by = Column(String, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    refund_amount = Column(Integer, nullable=True)
    refund_reason = Column(Text, nullable=True)
    refunded_by = Column(String, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

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

    @property
    def charge_amount(self) -> int:
        """Amount actually collected from the buyer."""
        return (self.final_price or 0) + (self.fees_total or 0)


class TimelineEntry(Base):
    """Append-only audit trail; one row per committed state change, ordered by id."""

    __tablename__ = "transaction_timeline"

    # BIGINT identity on PostgreSQL; SQLite only autoincrements INTEGER PRIMARY KEY
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    transaction_id = Column(String, ForeignKey("transactions.id"), nullable=False, index=True)
    state = Column(String, nullable=False)
    note = Column(Text, nullable=False)
    actor_id = Column(String, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
