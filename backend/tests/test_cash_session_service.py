"""
Cash session service tests.

Verifies:
- Drawer reconciliation (theoretical, recognized, variance)
- Movements are append-only and frozen after close
- One OPEN session per operator and location
- Ledger folds are deterministic and detect corruption
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from possettle.models import CashMovement, CashSession, AuditRecord
from possettle.services import cash_session_service, settlement_service
from possettle.services.coordinator_service import get_coordinator
from possettle.services.errors import (
    InvalidAmount,
    InvalidStateTransition,
    LedgerCorruption,
    NotFound,
    NotSessionOwner,
    SessionAlreadyOpen,
    SessionClosed,
    SessionNotOpen,
)
from possettle.services.ledger_math import fold_movements
from possettle.time_utils import utcnow


OPERATOR = 7
OTHER = 8


def _cash_sale(session, amount_cents, target_cents=None):
    coordinator = get_coordinator()
    settlement = coordinator.begin_sale(target_cents or amount_cents, session.id, OPERATOR)
    settlement_service.add_tender(settlement.id, "CASH", amount_cents, OPERATOR)
    return coordinator.finalize(settlement.id, OPERATOR)


# =============================================================================
# OPEN / CLOSE
# =============================================================================


class TestSessionLifecycle:

    def test_reconciliation_scenario(self, db_session):
        session = cash_session_service.open_session(OPERATOR, 1, 5000)
        cash_session_service.post_movement(session.id, "INCOME", 2000, OPERATOR)
        _cash_sale(session, 3000)

        result = cash_session_service.close_session(session.id, 10000, OPERATOR)

        assert result.theoretical_cents == 10000
        assert result.variance_cents == 0
        assert result.variance_detected is False
        assert result.session.status == "CLOSED"
        assert result.session.counted_cents == 10000

    def test_variance_is_reported_not_corrected(self, db_session):
        session = cash_session_service.open_session(OPERATOR, 1, 5000)
        cash_session_service.post_movement(session.id, "EXPENSE", 700, OPERATOR, category="supplies")

        result = cash_session_service.close_session(session.id, 4000, OPERATOR, note="short")

        assert result.theoretical_cents == 4300
        assert result.variance_cents == -300
        assert result.variance_detected is True
        assert result.session.variance_cents == -300
        assert result.session.theoretical_cents == 4300

    def test_pending_sales_are_recognized_but_not_counted(self, db_session, coordinator):
        session = cash_session_service.open_session(OPERATOR, 1, 1000)
        settlement = coordinator.begin_sale(2500, session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CARD", 2500, OPERATOR, details={"terminal": "POSNET"})
        coordinator.finalize(settlement.id, OPERATOR)

        result = cash_session_service.close_session(session.id, 1000, OPERATOR)

        assert result.theoretical_cents == 1000
        assert result.total_recognized_cents == 3500
        assert result.variance_cents == 0

    def test_negative_float_rejected(self, db_session):
        with pytest.raises(InvalidAmount):
            cash_session_service.open_session(OPERATOR, 1, -1)
        assert db_session.query(CashSession).count() == 0

    def test_zero_float_allowed(self, db_session):
        session = cash_session_service.open_session(OPERATOR, 1, 0)
        assert session.is_open
        assert session.opening_float_cents == 0

    def test_single_open_session_per_operator_and_location(self, db_session):
        first = cash_session_service.open_session(OPERATOR, 1, 5000, note="morning")

        with pytest.raises(SessionAlreadyOpen):
            cash_session_service.open_session(OPERATOR, 1, 9999)

        db_session.expire_all()
        existing = db_session.get(CashSession, first.id)
        assert existing.status == "OPEN"
        assert existing.opening_float_cents == 5000
        assert existing.opening_note == "morning"
        assert db_session.query(CashSession).count() == 1

    def test_other_location_or_operator_may_open(self, db_session):
        cash_session_service.open_session(OPERATOR, 1, 5000)
        cash_session_service.open_session(OPERATOR, 2, 5000)
        cash_session_service.open_session(OTHER, 1, 5000)
        assert db_session.query(CashSession).count() == 3

    def test_reopen_after_close(self, db_session):
        first = cash_session_service.open_session(OPERATOR, 1, 5000)
        cash_session_service.close_session(first.id, 5000, OPERATOR)

        second = cash_session_service.open_session(OPERATOR, 1, 2000)

        assert second.id != first.id
        assert cash_session_service.get_open_session(OPERATOR, 1).id == second.id

    def test_double_close_rejected(self, db_session, open_session):
        cash_session_service.close_session(open_session.id, 5000, OPERATOR)

        with pytest.raises(SessionNotOpen):
            cash_session_service.close_session(open_session.id, 1, OPERATOR)

        db_session.expire_all()
        assert db_session.get(CashSession, open_session.id).counted_cents == 5000

    def test_negative_count_rejected(self, db_session, open_session):
        with pytest.raises(InvalidAmount):
            cash_session_service.close_session(open_session.id, -5, OPERATOR)
        db_session.expire_all()
        assert db_session.get(CashSession, open_session.id).status == "OPEN"

    def test_close_requires_owner_or_manager(self, db_session, open_session):
        with pytest.raises(NotSessionOwner):
            cash_session_service.close_session(open_session.id, 5000, OTHER)

        result = cash_session_service.close_session(open_session.id, 5000, OTHER, manager_override=True)
        assert result.session.closed_by_operator_id == OTHER

    def test_open_and_close_are_audited(self, db_session, open_session):
        cash_session_service.close_session(open_session.id, 5100, OPERATOR)

        events = db_session.query(AuditRecord).filter_by(cash_session_id=open_session.id).order_by(AuditRecord.id).all()
        assert [e.event_type for e in events] == ["cash_session.opened", "cash_session.closed"]
        assert events[1].after["variance_cents"] == 100
        assert events[1].before["theoretical_cents"] == 5000


# =============================================================================
# MOVEMENTS
# =============================================================================


class TestMovements:

    def test_movements_frozen_after_close(self, db_session, open_session):
        cash_session_service.post_movement(open_session.id, "INCOME", 100, OPERATOR)
        cash_session_service.close_session(open_session.id, 5100, OPERATOR)

        with pytest.raises(SessionClosed):
            cash_session_service.post_movement(open_session.id, "EXPENSE", 50, OPERATOR)

        movements = cash_session_service.filter_movements(open_session.id)
        assert [(m.sequence, m.kind, m.amount_cents) for m in movements] == [(1, "INCOME", 100)]

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_amount_rejected(self, db_session, open_session, amount):
        with pytest.raises(InvalidAmount):
            cash_session_service.post_movement(open_session.id, "INCOME", amount, OPERATOR)
        assert db_session.query(CashMovement).count() == 0

    @pytest.mark.parametrize("kind", ["SALE_SETTLEMENT", "PENDING_SALE_SETTLEMENT", "REFUND"])
    def test_sale_and_unknown_kinds_are_not_manual(self, db_session, open_session, kind):
        with pytest.raises(InvalidStateTransition):
            cash_session_service.post_movement(open_session.id, kind, 100, OPERATOR)

    def test_other_operator_needs_manager_override(self, db_session, open_session):
        with pytest.raises(NotSessionOwner):
            cash_session_service.post_movement(open_session.id, "EXPENSE", 100, OTHER)

        movement = cash_session_service.post_movement(
            open_session.id, "EXPENSE", 100, OTHER, manager_override=True
        )
        assert movement.posted_by == OTHER

    def test_sequence_is_contiguous(self, db_session, open_session):
        for amount in (100, 200, 300):
            cash_session_service.post_movement(open_session.id, "INCOME", amount, OPERATOR)

        movements = cash_session_service.filter_movements(open_session.id)
        assert [m.sequence for m in movements] == [1, 2, 3]
        assert all(a.posted_at <= b.posted_at for a, b in zip(movements, movements[1:]))

    def test_unknown_session(self, db_session):
        with pytest.raises(NotFound):
            cash_session_service.post_movement(999, "INCOME", 100, OPERATOR)

    def test_filter_by_kind_and_range(self, db_session, open_session):
        cash_session_service.post_movement(open_session.id, "INCOME", 100, OPERATOR)
        cash_session_service.post_movement(open_session.id, "EXPENSE", 40, OPERATOR)
        cash_session_service.post_movement(open_session.id, "INCOME", 60, OPERATOR)

        incomes = cash_session_service.filter_movements(open_session.id, kind="income")
        assert [m.amount_cents for m in incomes] == [100, 60]

        future = utcnow() + timedelta(days=1)
        assert cash_session_service.filter_movements(open_session.id, start=future) == []
        assert len(cash_session_service.filter_movements(open_session.id, end=future)) == 3

    def test_totals_by_kind(self, db_session, open_session):
        cash_session_service.post_movement(open_session.id, "INCOME", 100, OPERATOR)
        cash_session_service.post_movement(open_session.id, "INCOME", 50, OPERATOR)
        cash_session_service.post_movement(open_session.id, "EXPENSE", 40, OPERATOR)

        totals = cash_session_service.totals_by_kind(open_session.id)

        assert totals == {
            "INCOME": 150,
            "EXPENSE": 40,
            "SALE_SETTLEMENT": 0,
            "PENDING_SALE_SETTLEMENT": 0,
        }

    def test_balance_fold_is_deterministic(self, db_session, open_session):
        cash_session_service.post_movement(open_session.id, "INCOME", 100, OPERATOR)
        cash_session_service.post_movement(open_session.id, "EXPENSE", 30, OPERATOR)

        first = cash_session_service.compute_balance(open_session)
        second = cash_session_service.compute_balance(open_session)

        assert first == second
        assert first.theoretical_cents == 5070


# =============================================================================
# LEDGER MATH
# =============================================================================


def _movement(sequence, kind, amount, minutes=0):
    return SimpleNamespace(
        sequence=sequence,
        kind=kind,
        amount_cents=amount,
        posted_at=datetime(2026, 1, 1, 9, 0) + timedelta(minutes=minutes),
    )


class TestLedgerFold:

    def test_fold(self):
        balance = fold_movements(5000, [
            _movement(1, "INCOME", 2000, 1),
            _movement(2, "SALE_SETTLEMENT", 3000, 2),
            _movement(3, "PENDING_SALE_SETTLEMENT", 4000, 3),
            _movement(4, "EXPENSE", 500, 4),
        ])
        assert balance.theoretical_cents == 9500
        assert balance.total_recognized_cents == 13500
        assert balance.movement_count == 4

    def test_empty_ledger(self):
        balance = fold_movements(1234, [])
        assert balance.theoretical_cents == 1234
        assert balance.total_recognized_cents == 1234

    def test_gap_is_corruption(self):
        with pytest.raises(LedgerCorruption):
            fold_movements(0, [_movement(1, "INCOME", 10), _movement(3, "INCOME", 10)])

    def test_out_of_order_timestamps_are_corruption(self):
        with pytest.raises(LedgerCorruption):
            fold_movements(0, [_movement(1, "INCOME", 10, 5), _movement(2, "INCOME", 10, 1)])

    def test_unknown_kind_is_corruption(self):
        with pytest.raises(LedgerCorruption):
            fold_movements(0, [_movement(1, "REFUND", 10)])
