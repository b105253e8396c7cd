"""Tests for the transaction state machine and the compare-and-swap ledger."""
from itertools import count
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from marketplace.core.errors import InvalidStateTransition, TransactionNotFound
from marketplace.escrow.state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    TransactionLedger,
    TransactionState,
    can_transition,
)
from marketplace.models.transaction import TimelineEntry, Transaction

S = TransactionState
_listing_ids = count(1)


def _pending(db, **kwargs):
    kwargs.setdefault("listing_id", f"l-{next(_listing_ids)}")
    txn = Transaction(
        buyer_id="b",
        seller_id="s",
        original_price=1000,
        final_price=1000,
        currency="INR",
        gateway="razorpay",
        **kwargs,
    )
    return TransactionLedger(db).create(txn, "Purchase initiated", actor_id="b")


class TestTransitionTable:
    @pytest.mark.parametrize(
        "current,target",
        [
            (S.PENDING, S.HELD_IN_ESCROW),
            (S.PENDING, S.FAILED),
            (S.PENDING, S.CANCELLED),
            (S.HELD_IN_ESCROW, S.COMPLETED),
            (S.HELD_IN_ESCROW, S.REFUNDED),
            (S.HELD_IN_ESCROW, S.DISPUTED),
            (S.DISPUTED, S.COMPLETED),
            (S.DISPUTED, S.REFUNDED),
            (S.COMPLETED, S.REFUNDED),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.PENDING, S.COMPLETED),
            (S.PENDING, S.REFUNDED),
            (S.PENDING, S.DISPUTED),
            (S.HELD_IN_ESCROW, S.PENDING),
            (S.HELD_IN_ESCROW, S.FAILED),
            (S.COMPLETED, S.HELD_IN_ESCROW),
            (S.COMPLETED, S.DISPUTED),
            (S.FAILED, S.HELD_IN_ESCROW),
            (S.REFUNDED, S.COMPLETED),
            (S.DISPUTED, S.HELD_IN_ESCROW),
        ],
    )
    def test_rejected(self, current, target):
        assert not can_transition(current, target)

    def test_terminal_states(self):
        assert TERMINAL_STATES == {S.FAILED, S.CANCELLED, S.REFUNDED}
        assert set(ALLOWED_TRANSITIONS) == set(S)

    def test_unknown_state(self):
        assert not can_transition("shipped", S.COMPLETED)


class TestLedger:
    def test_create_writes_first_timeline_row(self, db):
        txn = _pending(db)
        assert txn.id.startswith("TXN_")
        assert txn.state == "pending"
        entries = TransactionLedger(db).timeline(txn.id)
        assert [(e.state, e.actor_id) for e in entries] == [("pending", "b")]

    def test_transition_updates_fields_and_timeline(self, db):
        ledger = TransactionLedger(db)
        txn = _pending(db)

        txn = ledger.transition(
            txn.id, S.HELD_IN_ESCROW, "Payment verified", expected=S.PENDING, gateway_payment_id="pay_1"
        )

        assert txn.state == "held_in_escrow"
        assert txn.gateway_payment_id == "pay_1"
        assert [e.state for e in ledger.timeline(txn.id)] == ["pending", "held_in_escrow"]

    def test_invalid_edge_has_no_effect(self, db):
        ledger = TransactionLedger(db)
        txn = _pending(db)

        with pytest.raises(InvalidStateTransition) as exc:
            ledger.transition(txn.id, S.COMPLETED, "skip ahead")

        assert exc.value.current == "pending"
        assert exc.value.target == "completed"
        assert ledger.current_state(txn.id) == "pending"
        assert db.query(TimelineEntry).filter(TimelineEntry.transaction_id == txn.id).count() == 1

    def test_expected_source_enforced(self, db):
        ledger = TransactionLedger(db)
        txn = _pending(db)
        ledger.transition(txn.id, S.HELD_IN_ESCROW, "held")
        ledger.transition(txn.id, S.DISPUTED, "disputed")

        # disputed -> completed is an edge, but release only accepts held_in_escrow
        with pytest.raises(InvalidStateTransition):
            ledger.transition(txn.id, S.COMPLETED, "release", expected=S.HELD_IN_ESCROW)

    def test_attach_order_only_while_pending(self, db):
        ledger = TransactionLedger(db)
        txn = _pending(db)
        ledger.attach_order(txn.id, "order_1")
        assert ledger.get(txn.id).gateway_order_id == "order_1"

        ledger.transition(txn.id, S.CANCELLED, "cancelled")
        with pytest.raises(InvalidStateTransition):
            ledger.attach_order(txn.id, "order_2")

    def test_missing_transaction(self, db):
        with pytest.raises(TransactionNotFound):
            TransactionLedger(db).transition("TXN_missing", S.FAILED, "nope")

    def test_due_for_release(self, db, clock):
        from datetime import timedelta

        ledger = TransactionLedger(db)
        due = _pending(db)
        ledger.transition(due.id, S.HELD_IN_ESCROW, "held", release_at=clock() - timedelta(minutes=1))
        later = _pending(db)
        ledger.transition(later.id, S.HELD_IN_ESCROW, "held", release_at=clock() + timedelta(days=1))
        manual = _pending(db, auto_release_enabled=False)
        ledger.transition(manual.id, S.HELD_IN_ESCROW, "held", release_at=clock() - timedelta(days=1))

        assert ledger.due_for_release(clock(), limit=10) == [due.id]

    def test_one_committed_transaction_per_listing(self, db):
        ledger = TransactionLedger(db)
        first = _pending(db, listing_id="shared")
        second = _pending(db, listing_id="shared")
        ledger.transition(first.id, S.HELD_IN_ESCROW, "held")

        with pytest.raises(IntegrityError):
            ledger.transition(second.id, S.HELD_IN_ESCROW, "held")

        assert ledger.current_state(second.id) == "pending"
        assert [e.state for e in ledger.timeline(second.id)] == ["pending"]

    def test_listing_reopens_after_refund(self, db):
        ledger = TransactionLedger(db)
        first = _pending(db, listing_id="shared")
        second = _pending(db, listing_id="shared")
        ledger.transition(first.id, S.HELD_IN_ESCROW, "held")
        ledger.transition(first.id, S.REFUNDED, "refunded")

        assert ledger.transition(second.id, S.HELD_IN_ESCROW, "held").state == "held_in_escrow"

    def test_timeline_keeps_write_order_on_equal_timestamps(self, db, clock):
        ledger = TransactionLedger(db)
        txn = _pending(db)
        ledger.transition(txn.id, S.HELD_IN_ESCROW, "held")
        ledger.transition(txn.id, S.DISPUTED, "disputed")
        ledger.transition(txn.id, S.COMPLETED, "released")
        db.query(TimelineEntry).update({TimelineEntry.created_at: clock()}, synchronize_session=False)
        db.commit()

        states = [e.state for e in ledger.timeline(txn.id)]
        assert states == ["pending", "held_in_escrow", "disputed", "completed"]

    def test_disable_auto_release_only_while_funds_held(self, db):
        ledger = TransactionLedger(db)
        txn = _pending(db)
        assert ledger.disable_auto_release(txn.id) is False

        ledger.transition(txn.id, S.HELD_IN_ESCROW, "held")
        assert ledger.disable_auto_release(txn.id) is True

        db.expire_all()
        held = ledger.get(txn.id)
        assert held.state == "held_in_escrow"
        assert held.auto_release_enabled is False


class TestCompareAndSwap:
    def test_lost_race_reports_winner_state(self):
        db = MagicMock()
        # read held, lose the UPDATE, re-read completed
        db.query.return_value.filter.return_value.scalar.side_effect = ["held_in_escrow", "completed"]
        db.execute.return_value.rowcount = 0

        ledger = TransactionLedger(db, cas_retries=3)
        with pytest.raises(InvalidStateTransition) as exc:
            ledger.transition("TXN_1", S.COMPLETED, "release", expected=S.HELD_IN_ESCROW)

        assert exc.value.current == "completed"
        db.rollback.assert_called_once()
        db.commit.assert_not_called()

    def test_retries_are_bounded(self):
        db = MagicMock()
        db.query.return_value.filter.return_value.scalar.return_value = "held_in_escrow"
        db.execute.return_value.rowcount = 0

        ledger = TransactionLedger(db, cas_retries=2)
        with pytest.raises(InvalidStateTransition):
            ledger.transition("TXN_1", S.COMPLETED, "release")

        assert db.execute.call_count == 3
        db.commit.assert_not_called()
