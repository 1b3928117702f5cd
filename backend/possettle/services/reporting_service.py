# Overview: Read-only cash reports over sessions, movements and finalized settlements.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from possettle.extensions import db
from possettle.models import CashSession, CashMovement, Settlement, Tender
from possettle.constants import (
    VALID_MOVEMENT_KINDS,
    VALID_TENDER_KINDS,
    VERIFICATION_VERIFIED,
)
from possettle.services import cash_session_service
from possettle.services.ledger_math import CASH_COUNT_SIGNS
from possettle.time_utils import to_utc_z


def session_summary(session_id: int) -> dict:
    """
    Everything a supervisor reviews at the end of a shift.

    Tender totals only count finalized settlements; abandoned or still
    collecting sales never reached the ledger.
    """
    session = cash_session_service.get_session(session_id)
    balance = cash_session_service.compute_balance(session)

    tender_rows = db.session.query(
        Tender.kind,
        func.coalesce(func.sum(Tender.amount_cents), 0),
    ).join(Settlement, Settlement.id == Tender.settlement_id).filter(
        Settlement.cash_session_id == session.id,
        Settlement.finalized_at.isnot(None),
        Tender.voided_at.is_(None),
        Tender.verification_state == VERIFICATION_VERIFIED,
    ).group_by(Tender.kind).all()

    tender_totals = {kind: 0 for kind in VALID_TENDER_KINDS}
    for kind, total in tender_rows:
        tender_totals[kind] = int(total)

    finalized = db.session.query(Settlement).filter(
        Settlement.cash_session_id == session.id,
        Settlement.finalized_at.isnot(None),
    ).all()

    return {
        "session": session.to_dict(),
        "is_closed": session.is_closed,
        "opening_float_cents": balance.opening_float_cents,
        "theoretical_cents": balance.theoretical_cents,
        "total_recognized_cents": balance.total_recognized_cents,
        "movement_count": balance.movement_count,
        "totals_by_kind": balance.totals_by_kind,
        "tender_totals_by_kind": tender_totals,
        "sales_count": len(finalized),
        "sales_total_cents": sum(s.target_cents for s in finalized),
        "change_given_cents": sum(s.change_due_cents for s in finalized),
        "counted_cents": session.counted_cents,
        "variance_cents": session.variance_cents,
    }


def cash_report(
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    location_id: int | None = None,
    operator_id: int | None = None,
) -> dict:
    """
    Movements across sessions in a posted_at range.

    net_cash_cents is the signed drawer effect (PENDING kinds count zero).
    """
    query = db.session.query(CashMovement, CashSession).join(
        CashSession, CashSession.id == CashMovement.session_id
    )
    if start:
        query = query.filter(CashMovement.posted_at >= start)
    if end:
        query = query.filter(CashMovement.posted_at <= end)
    if location_id is not None:
        query = query.filter(CashSession.location_id == location_id)
    if operator_id is not None:
        query = query.filter(CashSession.operator_id == operator_id)

    rows = query.order_by(CashMovement.posted_at, CashMovement.session_id, CashMovement.sequence).all()

    totals = {kind: 0 for kind in VALID_MOVEMENT_KINDS}
    net_cash = 0
    movements = []
    session_ids = set()
    for movement, session in rows:
        totals[movement.kind] += movement.amount_cents
        net_cash += CASH_COUNT_SIGNS[movement.kind] * movement.amount_cents
        session_ids.add(session.id)
        d = movement.to_dict()
        d["operator_id"] = session.operator_id
        d["location_id"] = session.location_id
        movements.append(d)

    return {
        "range": {"from": to_utc_z(start), "to": to_utc_z(end)},
        "filters": {"location_id": location_id, "operator_id": operator_id},
        "movement_count": len(movements),
        "session_count": len(session_ids),
        "totals_by_kind": totals,
        "net_cash_cents": net_cash,
        "recognized_cents": net_cash + totals["PENDING_SALE_SETTLEMENT"],
        "movements": movements,
    }
