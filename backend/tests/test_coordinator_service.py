"""
Settlement coordinator tests.

Verifies:
- Sales only begin inside an OPEN session owned by the operator
- Gateway outcomes drive tender verification; transport trouble never does
- Finalization posts settled sales to the cash ledger exactly once
"""

import asyncio

import pytest

from conftest import SlowVerificationGateway
from possettle.models import CashMovement, Settlement
from possettle.services import cash_session_service, settlement_service
from possettle.services.errors import (
    GatewayTimeout,
    GatewayUnavailable,
    InvalidAmount,
    InvalidStateTransition,
    NoOpenSession,
    NotSessionOwner,
    SessionClosed,
)
from possettle.services.verification_gateway import VerificationGateway


OPERATOR = 7
OTHER = 8

QR = {"provider_transaction_id": "MP-555"}
WIRE = {"receipt_reference": "TRX-777"}


class BrokenVerificationGateway(VerificationGateway):
    async def check(self, reference, *, kind, amount_cents):
        raise GatewayUnavailable("provider down")


def _qr_sale(coordinator, session, target=1000):
    settlement = coordinator.begin_sale(target, session.id, OPERATOR)
    tender = settlement_service.add_tender(settlement.id, "QR_PAYMENT", target, OPERATOR, details=QR)
    return settlement, tender


# =============================================================================
# BEGIN SALE
# =============================================================================


class TestBeginSale:

    def test_begin_sale_in_open_session(self, coordinator, open_session):
        settlement = coordinator.begin_sale(1500, open_session.id, OPERATOR)
        assert settlement.status == "COLLECTING"
        assert settlement.cash_session_id == open_session.id
        assert settlement.target_cents == 1500

    def test_unknown_session(self, coordinator):
        with pytest.raises(NoOpenSession):
            coordinator.begin_sale(1500, 999, OPERATOR)

    def test_closed_session(self, db_session, coordinator, open_session):
        cash_session_service.close_session(open_session.id, 5000, OPERATOR)
        with pytest.raises(NoOpenSession):
            coordinator.begin_sale(1500, open_session.id, OPERATOR)
        assert db_session.query(Settlement).count() == 0

    def test_other_operators_session(self, coordinator, open_session):
        with pytest.raises(NotSessionOwner):
            coordinator.begin_sale(1500, open_session.id, OTHER)

    @pytest.mark.parametrize("target", [0, -100])
    def test_non_positive_total(self, coordinator, open_session, target):
        with pytest.raises(InvalidAmount):
            coordinator.begin_sale(target, open_session.id, OPERATOR)


# =============================================================================
# CONFIRM
# =============================================================================


class TestConfirm:

    def test_confirmed_settles(self, coordinator, gateway, open_session):
        settlement, tender = _qr_sale(coordinator, open_session)
        gateway.set_result("MP-555", "CONFIRMED")

        outcome = asyncio.run(coordinator.confirm_async(tender.id, OPERATOR))

        assert gateway.calls == ["MP-555"]
        assert outcome.gateway_result == "CONFIRMED"
        assert outcome.verification_state == "VERIFIED"
        assert outcome.is_settled
        assert settlement_service.get_settlement(settlement.id).status == "SETTLED"

    def test_not_found_fails_tender(self, coordinator, gateway, open_session):
        settlement, tender = _qr_sale(coordinator, open_session)
        gateway.set_result("MP-555", "NOT_FOUND")

        outcome = asyncio.run(coordinator.confirm_async(tender.id, OPERATOR))

        assert outcome.verification_state == "FAILED"
        assert not outcome.is_settled
        settlement = settlement_service.get_settlement(settlement.id)
        assert settlement.status == "COLLECTING"
        assert [t.verification_state for t in settlement.tenders] == ["FAILED"]

    def test_not_found_can_be_reported_without_failing(self, coordinator, gateway, open_session):
        _, tender = _qr_sale(coordinator, open_session)
        gateway.set_result("MP-555", "NOT_FOUND")

        outcome = asyncio.run(coordinator.confirm_async(tender.id, OPERATOR, fail_on_not_found=False))

        assert outcome.gateway_result == "NOT_FOUND"
        assert outcome.verification_state == "UNVERIFIED"

    def test_pending_leaves_tender_unverified(self, coordinator, gateway, open_session):
        _, tender = _qr_sale(coordinator, open_session)

        outcome = asyncio.run(coordinator.confirm_async(tender.id, OPERATOR))

        assert outcome.gateway_result == "PENDING"
        assert outcome.verification_state == "UNVERIFIED"
        assert settlement_service.get_tender(tender.id).verification_state == "UNVERIFIED"

    def test_timeout_leaves_tender_unverified(self, coordinator, open_session):
        _, tender = _qr_sale(coordinator, open_session)
        coordinator.gateway = SlowVerificationGateway(delay=5.0)
        coordinator.timeout_seconds = 0.05

        with pytest.raises(GatewayTimeout):
            asyncio.run(coordinator.confirm_async(tender.id, OPERATOR))

        assert settlement_service.get_tender(tender.id).verification_state == "UNVERIFIED"

    def test_unavailable_leaves_tender_unverified(self, coordinator, open_session):
        _, tender = _qr_sale(coordinator, open_session)
        coordinator.gateway = BrokenVerificationGateway()

        with pytest.raises(GatewayUnavailable):
            asyncio.run(coordinator.confirm_async(tender.id, OPERATOR))

        assert settlement_service.get_tender(tender.id).verification_state == "UNVERIFIED"

    def test_no_gateway_configured(self, coordinator, open_session):
        _, tender = _qr_sale(coordinator, open_session)
        coordinator.gateway = None

        with pytest.raises(GatewayUnavailable):
            asyncio.run(coordinator.confirm_async(tender.id, OPERATOR))

    def test_resolved_tender_is_not_rechecked(self, coordinator, gateway, open_session):
        settlement = coordinator.begin_sale(1000, open_session.id, OPERATOR)
        cash = settlement_service.add_tender(settlement.id, "CASH", 400, OPERATOR)

        with pytest.raises(InvalidStateTransition):
            asyncio.run(coordinator.confirm_async(cash.id, OPERATOR))
        assert gateway.calls == []

    def test_voided_tender_is_not_rechecked(self, coordinator, gateway, open_session):
        _, tender = _qr_sale(coordinator, open_session)
        settlement_service.void_tender(tender.id, OPERATOR)

        with pytest.raises(InvalidStateTransition):
            asyncio.run(coordinator.confirm_async(tender.id, OPERATOR))
        assert gateway.calls == []


# =============================================================================
# FINALIZE
# =============================================================================


class TestFinalize:

    def test_unsettled_cannot_finalize(self, db_session, coordinator, open_session):
        settlement, _ = _qr_sale(coordinator, open_session)

        with pytest.raises(InvalidStateTransition):
            coordinator.finalize(settlement.id, OPERATOR)
        assert db_session.query(CashMovement).count() == 0

    def test_abandoned_cannot_finalize(self, db_session, coordinator, open_session):
        settlement = coordinator.begin_sale(1000, open_session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CASH", 300, OPERATOR)
        settlement_service.abandon(settlement.id, OPERATOR)

        with pytest.raises(InvalidStateTransition):
            coordinator.finalize(settlement.id, OPERATOR)
        assert db_session.query(CashMovement).count() == 0

    def test_finalize_posts_cash_net_of_change(self, coordinator, open_session):
        settlement = coordinator.begin_sale(1500, open_session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CASH", 2000, OPERATOR)

        receipt = coordinator.finalize(settlement.id, OPERATOR)

        assert receipt.token
        assert receipt.change_due_cents == 500
        assert receipt.target_cents == 1500
        movements = cash_session_service.filter_movements(open_session.id)
        assert [(m.kind, m.amount_cents) for m in movements] == [("SALE_SETTLEMENT", 1500)]
        assert movements[0].settlement_id == settlement.id

    def test_change_taken_from_last_cash_tender_first(self, coordinator, open_session):
        settlement = coordinator.begin_sale(2500, open_session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CASH", 2000, OPERATOR)
        settlement_service.add_tender(settlement.id, "CASH", 1000, OPERATOR)

        receipt = coordinator.finalize(settlement.id, OPERATOR)

        assert receipt.change_due_cents == 500
        movements = cash_session_service.filter_movements(open_session.id)
        assert [m.amount_cents for m in movements] == [2000, 500]

    def test_mixed_tenders_post_by_kind(self, coordinator, gateway, open_session):
        settlement = coordinator.begin_sale(3000, open_session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CARD", 1000, OPERATOR)
        wire = settlement_service.add_tender(settlement.id, "WIRE_TRANSFER", 1000, OPERATOR, details=WIRE)
        settlement_service.add_tender(settlement.id, "CASH", 1200, OPERATOR)
        gateway.set_result("TRX-777", "CONFIRMED")
        asyncio.run(coordinator.confirm_async(wire.id, OPERATOR))

        receipt = coordinator.finalize(settlement.id, OPERATOR)

        movements = cash_session_service.filter_movements(open_session.id)
        assert [(m.kind, m.amount_cents) for m in movements] == [
            ("PENDING_SALE_SETTLEMENT", 1000),
            ("PENDING_SALE_SETTLEMENT", 1000),
            ("SALE_SETTLEMENT", 1000),
        ]
        assert [t["kind"] for t in receipt.tenders] == ["CARD", "WIRE_TRANSFER", "CASH"]
        assert receipt.change_due_cents == 200

        balance = cash_session_service.compute_balance(open_session)
        assert balance.theoretical_cents == 6000
        assert balance.total_recognized_cents == 8000

    def test_double_finalize_rejected(self, coordinator, open_session):
        settlement = coordinator.begin_sale(1000, open_session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CASH", 1000, OPERATOR)
        coordinator.finalize(settlement.id, OPERATOR)

        with pytest.raises(InvalidStateTransition):
            coordinator.finalize(settlement.id, OPERATOR)
        assert len(cash_session_service.filter_movements(open_session.id)) == 1

    def test_closed_session_rejects_posting(self, db_session, coordinator, open_session):
        settlement = coordinator.begin_sale(1000, open_session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CASH", 1000, OPERATOR)
        # Session closed out from under the sale
        open_session.status = "CLOSED"
        db_session.commit()

        with pytest.raises(SessionClosed):
            coordinator.finalize(settlement.id, OPERATOR)

        db_session.expire_all()
        assert db_session.get(Settlement, settlement.id).finalized_at is None
        assert db_session.query(CashMovement).count() == 0


# =============================================================================
# OWNERSHIP AND SESSION CLOSE
# =============================================================================


class TestSaleOwnership:

    def test_other_operator_cannot_finalize(self, db_session, coordinator, open_session):
        settlement = coordinator.begin_sale(1000, open_session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CASH", 1000, OPERATOR)

        with pytest.raises(NotSessionOwner):
            coordinator.finalize(settlement.id, OTHER)

        db_session.expire_all()
        assert db_session.get(Settlement, settlement.id).finalized_at is None
        assert db_session.query(CashMovement).count() == 0

    def test_manager_override_finalizes(self, coordinator, open_session):
        settlement = coordinator.begin_sale(1000, open_session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CASH", 1000, OPERATOR)

        receipt = coordinator.finalize(settlement.id, OTHER, manager_override=True)

        movements = cash_session_service.filter_movements(open_session.id)
        assert receipt.movement_ids == [m.id for m in movements]
        assert movements[0].posted_by == OTHER

    def test_other_operator_cannot_confirm(self, coordinator, gateway, open_session):
        _, tender = _qr_sale(coordinator, open_session)
        gateway.set_result("MP-555", "CONFIRMED")

        with pytest.raises(NotSessionOwner):
            asyncio.run(coordinator.confirm_async(tender.id, OTHER))

        assert gateway.calls == []
        assert settlement_service.get_tender(tender.id).verification_state == "UNVERIFIED"


class TestCloseWithUnfinishedSales:

    def test_collecting_sale_blocks_close(self, db_session, coordinator, open_session):
        settlement = coordinator.begin_sale(1000, open_session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CASH", 400, OPERATOR)

        with pytest.raises(InvalidStateTransition):
            cash_session_service.close_session(open_session.id, 5000, OPERATOR)

        db_session.expire_all()
        assert cash_session_service.get_session(open_session.id).status == "OPEN"

    def test_settled_but_unposted_sale_blocks_close(self, coordinator, open_session):
        settlement = coordinator.begin_sale(1000, open_session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CASH", 1000, OPERATOR)

        with pytest.raises(InvalidStateTransition):
            cash_session_service.close_session(open_session.id, 6000, OPERATOR)

        coordinator.finalize(settlement.id, OPERATOR)
        result = cash_session_service.close_session(open_session.id, 6000, OPERATOR)
        assert result.variance_cents == 0

    def test_abandoned_sale_does_not_block_close(self, coordinator, open_session):
        settlement = coordinator.begin_sale(1000, open_session.id, OPERATOR)
        settlement_service.add_tender(settlement.id, "CASH", 400, OPERATOR)
        settlement_service.abandon(settlement.id, OPERATOR)

        result = cash_session_service.close_session(open_session.id, 5000, OPERATOR)
        assert result.session.status == "CLOSED"

    def test_tenders_rejected_once_session_closed(self, db_session, coordinator, open_session):
        settlement, tender = _qr_sale(coordinator, open_session, target=2000)
        open_session.status = "CLOSED"
        db_session.commit()

        with pytest.raises(SessionClosed):
            settlement_service.add_tender(settlement.id, "CASH", 1000, OPERATOR)
        with pytest.raises(SessionClosed):
            settlement_service.mark_verified(tender.id, OPERATOR)
        with pytest.raises(SessionClosed):
            asyncio.run(coordinator.confirm_async(tender.id, OPERATOR))
