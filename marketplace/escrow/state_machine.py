"""
Transaction ledger: the only code that changes Transaction.state.

Every transition is a compare-and-swap (UPDATE ... WHERE id = :id AND state = :current)
committed together with its timeline row. Two workers racing on the same
transaction cannot both win; the loser sees InvalidStateTransition.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.core.errors import InvalidStateTransition, TransactionNotFound
from marketplace.escrow import config as escrow_config
from marketplace.models.transaction import TimelineEntry, Transaction
from marketplace.utils.metrics import escrow_transition_conflicts_total, escrow_transitions_total

logger = logging.getLogger(__name__)


class TransactionState(str, Enum):
    PENDING = "pending"
    HELD_IN_ESCROW = "held_in_escrow"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


ALLOWED_TRANSITIONS: dict[TransactionState, frozenset[TransactionState]] = {
    TransactionState.PENDING: frozenset(
        {TransactionState.HELD_IN_ESCROW, TransactionState.FAILED, TransactionState.CANCELLED}
    ),
    TransactionState.HELD_IN_ESCROW: frozenset(
        {TransactionState.COMPLETED, TransactionState.REFUNDED, TransactionState.DISPUTED}
    ),
    TransactionState.DISPUTED: frozenset({TransactionState.COMPLETED, TransactionState.REFUNDED}),
    # post-release refund
    TransactionState.COMPLETED: frozenset({TransactionState.REFUNDED}),
    TransactionState.FAILED: frozenset(),
    TransactionState.CANCELLED: frozenset(),
    TransactionState.REFUNDED: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: TransactionState | str, target: TransactionState | str) -> bool:
    try:
        return TransactionState(target) in ALLOWED_TRANSITIONS[TransactionState(current)]
    except ValueError:
        return False


def _as_states(expected: TransactionState | str | Iterable | None) -> frozenset[str] | None:
    if expected is None:
        return None
    if isinstance(expected, (str, TransactionState)):
        return frozenset({TransactionState(expected).value})
    return frozenset(TransactionState(s).value for s in expected)


class TransactionLedger:
    def __init__(self, db: Session, cas_retries: int | None = None):
        self.db = db
        self.cas_retries = escrow_config.get_cas_retries() if cas_retries is None else cas_retries

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, transaction_id: str) -> Transaction:
        txn = self.db.query(Transaction).filter(Transaction.id == transaction_id).one_or_none()
        if txn is None:
            raise TransactionNotFound(
                f"Transaction not found: {transaction_id}",
                detail={"transaction_id": transaction_id},
            )
        return txn

    def current_state(self, transaction_id: str) -> str | None:
        return (
            self.db.query(Transaction.state)
            .filter(Transaction.id == transaction_id)
            .scalar()
        )

    def timeline(self, transaction_id: str) -> list[TimelineEntry]:
        return (
            self.db.query(TimelineEntry)
            .filter(TimelineEntry.transaction_id == transaction_id)
            .order_by(TimelineEntry.id.asc())
            .all()
        )

    def due_for_release(self, now: datetime, limit: int) -> list[str]:
        """Ids of held transactions whose hold period has elapsed, oldest first."""
        rows = (
            self.db.query(Transaction.id)
            .filter(
                Transaction.state == TransactionState.HELD_IN_ESCROW.value,
                Transaction.auto_release_enabled.is_(True),
                Transaction.release_at.isnot(None),
                Transaction.release_at <= now,
            )
            .order_by(Transaction.release_at.asc())
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, txn: Transaction, note: str, actor_id: str | None = None) -> Transaction:
        """Persist a new pending transaction and its first timeline row."""
        txn.state = TransactionState.PENDING.value
        try:
            self.db.add(txn)
            self.db.flush()
            self.db.add(
                TimelineEntry(
                    transaction_id=txn.id,
                    state=TransactionState.PENDING.value,
                    note=note,
                    actor_id=actor_id,
                )
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(txn)
        return txn

    def attach_order(self, transaction_id: str, order_id: str) -> None:
        """Store the provider order id; only while the transaction is still pending."""
        try:
            result = self.db.execute(
                update(Transaction)
                .where(
                    Transaction.id == transaction_id,
                    Transaction.state == TransactionState.PENDING.value,
                )
                .values(gateway_order_id=order_id)
            )
            if result.rowcount != 1:
                self.db.rollback()
                raise InvalidStateTransition(
                    transaction_id, self.current_state(transaction_id), TransactionState.PENDING.value
                )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def disable_auto_release(self, transaction_id: str) -> bool:
        """Take a held transaction out of the sweep without changing its state."""
        try:
            result = self.db.execute(
                update(Transaction)
                .where(
                    Transaction.id == transaction_id,
                    Transaction.state.in_(
                        (TransactionState.HELD_IN_ESCROW.value, TransactionState.DISPUTED.value)
                    ),
                )
                .values(auto_release_enabled=False)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return result.rowcount == 1

    def transition(
        self,
        transaction_id: str,
        target: TransactionState | str,
        note: str,
        *,
        expected: TransactionState | str | Iterable | None = None,
        actor_id: str | None = None,
        **fields: Any,
    ) -> Transaction:
        """
        Move a transaction to `target`, writing `fields` in the same UPDATE.

        `expected` narrows the allowed source states further than the state
        machine does (e.g. release only from held_in_escrow, never disputed).
        Raises InvalidStateTransition without side effects when the edge is not
        allowed or the race is lost more than cas_retries times.
        """
        target = TransactionState(target)
        expected_states = _as_states(expected)
        attempt = 0

        while True:
            attempt += 1
            current = self.current_state(transaction_id)
            if current is None:
                raise TransactionNotFound(
                    f"Transaction not found: {transaction_id}",
                    detail={"transaction_id": transaction_id},
                )
            if (expected_states is not None and current not in expected_states) or not can_transition(
                current, target
            ):
                escrow_transition_conflicts_total.labels(to_state=target.value).inc()
                logger.info(
                    "escrow_transition_rejected",
                    extra={
                        "transaction_id": transaction_id,
                        "old_state": current,
                        "new_state": target.value,
                    },
                )
                raise InvalidStateTransition(transaction_id, current, target.value)

            try:
                result = self.db.execute(
                    update(Transaction)
                    .where(Transaction.id == transaction_id, Transaction.state == current)
                    .values(state=target.value, **fields)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    self.db.add(
                        TimelineEntry(
                            transaction_id=transaction_id,
                            state=target.value,
                            note=note,
                            actor_id=actor_id,
                        )
                    )
                    self.db.commit()
                    break
                # someone else moved it between our read and our write
                self.db.rollback()
            except SQLAlchemyError:
                self.db.rollback()
                raise

            if attempt > self.cas_retries:
                escrow_transition_conflicts_total.labels(to_state=target.value).inc()
                raise InvalidStateTransition(transaction_id, self.current_state(transaction_id), target.value)

        escrow_transitions_total.labels(from_state=current, to_state=target.value).inc()
        logger.info(
            "escrow_transition",
            extra={
                "transaction_id": transaction_id,
                "old_state": current,
                "new_state": target.value,
                "user_id": actor_id,
            },
        )
        txn = self.get(transaction_id)
        self.db.refresh(txn)
        return txn
