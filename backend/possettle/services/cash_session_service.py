"""
Cash Session Service

WHY: Track one operator's drawer at one location from opening float to
final count. Every cash-affecting event is an append-only movement, and
the close compares the counted cash with the balance folded from them.

DESIGN PRINCIPLES:
- One OPEN session per operator and location at a time
- Movements only while OPEN, never edited or removed
- Sessions are immutable once closed (no reopening)
- Variance (counted vs theoretical) is reported, never adjusted
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import func, or_, and_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CashSession, CashMovement, Settlement
from ..constants import (
    SESSION_OPEN,
    SESSION_CLOSED,
    SETTLEMENT_COLLECTING,
    SETTLEMENT_SETTLED,
    TENDER_CASH,
    MOVEMENT_SALE_SETTLEMENT,
    MOVEMENT_PENDING_SALE_SETTLEMENT,
    VALID_MOVEMENT_KINDS,
    MANUAL_MOVEMENT_KINDS,
)
from possettle.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .audit_service import record_event
from .errors import (
    InvalidAmount,
    InvalidStateTransition,
    NotFound,
    NotSessionOwner,
    SessionAlreadyOpen,
    SessionClosed,
    SessionNotOpen,
)
from .ledger_math import LedgerBalance, fold_movements


@dataclass(frozen=True)
class CloseResult:
    session: CashSession
    theoretical_cents: int
    total_recognized_cents: int
    variance_cents: int

    @property
    def variance_detected(self) -> bool:
        return self.variance_cents != 0

    def to_dict(self) -> dict:
        return {
            "session": self.session.to_dict(),
            "theoretical_cents": self.theoretical_cents,
            "total_recognized_cents": self.total_recognized_cents,
            "variance_cents": self.variance_cents,
            "variance_detected": self.variance_detected,
        }


# =============================================================================
# SESSION LIFECYCLE
# =============================================================================

def open_session(
    operator_id: int,
    location_id: int,
    opening_float_cents: int,
    note: str | None = None,
) -> CashSession:
    """
    Open a new cash session for an operator at a location.

    Raises:
        InvalidAmount: If the opening float is negative
        SessionAlreadyOpen: If the operator already has an OPEN session there
    """
    def _op():
        if opening_float_cents < 0:
            raise InvalidAmount("Opening float cannot be negative")

        existing_open = get_open_session(operator_id, location_id)
        if existing_open:
            raise SessionAlreadyOpen(
                f"Operator {operator_id} already has an open session at location {location_id} "
                f"(session {existing_open.id})",
                session_id=existing_open.id,
            )

        session = CashSession(
            operator_id=operator_id,
            location_id=location_id,
            status=SESSION_OPEN,
            opening_float_cents=opening_float_cents,
            opening_note=note,
            opened_at=utcnow(),
        )
        db.session.add(session)
        try:
            db.session.flush()
        except IntegrityError:
            # Another request opened the same pair between our check and insert
            db.session.rollback()
            raise SessionAlreadyOpen(
                f"Operator {operator_id} already has an open session at location {location_id}"
            )

        record_event(
            event_type="cash_session.opened",
            event_category="cash_session",
            entity_type="cash_session",
            entity_id=session.id,
            operator_id=operator_id,
            cash_session_id=session.id,
            before=None,
            after=compute_balance(session).to_dict(),
            note=note,
            occurred_at=session.opened_at,
        )

        db.session.commit()
        return session

    return run_with_retry(_op)


def close_session(
    session_id: int,
    counted_cents: int,
    operator_id: int,
    note: str | None = None,
    *,
    manager_override: bool = False,
) -> CloseResult:
    """
    Close a session and compute the drawer variance.

    PENDING_SALE_SETTLEMENT movements are excluded from the cash count but
    included in the total recognized figure.

    A session with sales still collecting, or settled but not finalized,
    cannot close: those sales must be finalized or abandoned first.

    IMMUTABLE: Once closed, session cannot be reopened or modified.
    """
    def _op():
        session = get_session_for_update(session_id)

        if session.status != SESSION_OPEN:
            raise SessionNotOpen(f"Session {session_id} is already closed")

        _require_owner(session, operator_id, manager_override)

        if counted_cents < 0:
            raise InvalidAmount("Counted amount cannot be negative")

        unfinished = unfinished_settlement_ids(session.id)
        if unfinished:
            raise InvalidStateTransition(
                f"Session {session_id} has unfinished settlements {unfinished}; "
                "finalize or abandon them before closing",
                settlement_ids=unfinished,
            )

        balance = compute_balance(session)
        variance = counted_cents - balance.theoretical_cents

        session.status = SESSION_CLOSED
        session.closed_at = utcnow()
        session.closed_by_operator_id = operator_id
        session.counted_cents = counted_cents
        session.theoretical_cents = balance.theoretical_cents
        session.total_recognized_cents = balance.total_recognized_cents
        session.variance_cents = variance
        session.closing_note = note

        record_event(
            event_type="cash_session.closed",
            event_category="cash_session",
            entity_type="cash_session",
            entity_id=session.id,
            operator_id=operator_id,
            cash_session_id=session.id,
            before=balance.to_dict(),
            after={
                **balance.to_dict(),
                "counted_cents": counted_cents,
                "variance_cents": variance,
            },
            note=note,
            occurred_at=session.closed_at,
        )

        db.session.commit()

        if variance != 0:
            current_app.logger.warning(
                "Cash session %s closed with variance %s (counted %s, theoretical %s)",
                session.id, variance, counted_cents, balance.theoretical_cents,
            )

        return CloseResult(
            session=session,
            theoretical_cents=balance.theoretical_cents,
            total_recognized_cents=balance.total_recognized_cents,
            variance_cents=variance,
        )

    return run_with_retry(_op)


def unfinished_settlement_ids(session_id: int) -> list[int]:
    """Settlements still COLLECTING, or SETTLED but not yet posted by finalize."""
    rows = db.session.query(Settlement.id).filter(
        Settlement.cash_session_id == session_id,
        or_(
            Settlement.status == SETTLEMENT_COLLECTING,
            and_(Settlement.status == SETTLEMENT_SETTLED, Settlement.finalized_at.is_(None)),
        ),
    ).order_by(Settlement.id).all()
    return [row[0] for row in rows]


def get_session(session_id: int) -> CashSession:
    session = db.session.get(CashSession, session_id)
    if not session:
        raise NotFound(f"Cash session {session_id} not found")
    return session


def get_open_session(operator_id: int, location_id: int) -> CashSession | None:
    """Get the currently open session for an operator at a location, if any."""
    return db.session.query(CashSession).filter_by(
        operator_id=operator_id,
        location_id=location_id,
        status=SESSION_OPEN,
    ).first()


def list_sessions(
    *,
    status: str | None = None,
    operator_id: int | None = None,
    location_id: int | None = None,
    limit: int = 50,
) -> list[CashSession]:
    query = db.session.query(CashSession)
    if status:
        query = query.filter_by(status=status.upper())
    if operator_id is not None:
        query = query.filter_by(operator_id=operator_id)
    if location_id is not None:
        query = query.filter_by(location_id=location_id)
    return query.order_by(CashSession.opened_at.desc(), CashSession.id.desc()).limit(limit).all()


# =============================================================================
# MOVEMENTS
# =============================================================================

def post_movement(
    session_id: int,
    kind: str,
    amount_cents: int,
    posted_by: int,
    category: str | None = None,
    note: str | None = None,
    *,
    manager_override: bool = False,
) -> CashMovement:
    """
    Post a manual INCOME or EXPENSE movement.

    Sale kinds are reserved for finalized settlements (see post_settlement).

    Raises:
        SessionClosed: If the session is not OPEN (movements unchanged)
        InvalidAmount: If amount is not positive
    """
    def _op():
        session = get_session_for_update(session_id)

        if session.status != SESSION_OPEN:
            raise SessionClosed(f"Session {session_id} is closed; movements are frozen")

        if kind not in VALID_MOVEMENT_KINDS:
            raise InvalidStateTransition(
                f"Invalid movement kind: {kind}. Must be one of {list(VALID_MOVEMENT_KINDS)}"
            )
        if kind not in MANUAL_MOVEMENT_KINDS:
            raise InvalidStateTransition(f"{kind} movements are only posted by finalized sales")

        if amount_cents <= 0:
            raise InvalidAmount("Movement amount must be positive")

        _require_owner(session, posted_by, manager_override)

        before = compute_balance(session)
        movement = _append_movement(
            session,
            kind=kind,
            amount_cents=amount_cents,
            posted_by=posted_by,
            category=category,
            note=note,
        )

        record_event(
            event_type=f"cash_movement.{kind.lower()}",
            event_category="cash_session",
            entity_type="cash_movement",
            entity_id=movement.id,
            operator_id=posted_by,
            cash_session_id=session.id,
            before=before.to_dict(),
            after=compute_balance(session).to_dict(),
            note=note,
            occurred_at=movement.posted_at,
        )

        db.session.commit()
        return movement

    return run_with_retry(_op)


def post_settlement(settlement: Settlement, posted_by: int) -> list[CashMovement]:
    """
    Post a settled sale's tenders into its cash session.

    Cash tenders become SALE_SETTLEMENT movements net of change (change is
    taken from the last cash tender first). Card, wire and QR tenders become
    PENDING_SALE_SETTLEMENT movements.

    Does not commit; the coordinator owns the transaction.

    Raises:
        SessionClosed: If the bound session is not OPEN
    """
    session = get_session_for_update(settlement.cash_session_id)

    if session.status != SESSION_OPEN:
        raise SessionClosed(
            f"Session {session.id} is closed; settlement {settlement.id} cannot be posted"
        )

    verified = [t for t in settlement.active_tenders if t.is_verified]
    change_left = settlement.change_due_cents
    net_by_tender = {}
    for tender in reversed(verified):
        amount = tender.amount_cents
        if tender.kind == TENDER_CASH and change_left > 0:
            taken = min(amount, change_left)
            amount -= taken
            change_left -= taken
        net_by_tender[tender.id] = amount

    movements = []
    for tender in verified:
        amount = net_by_tender[tender.id]
        if amount <= 0:
            continue
        kind = MOVEMENT_SALE_SETTLEMENT if tender.kind == TENDER_CASH else MOVEMENT_PENDING_SALE_SETTLEMENT
        movements.append(_append_movement(
            session,
            kind=kind,
            amount_cents=amount,
            posted_by=posted_by,
            category=tender.kind,
            note=f"Settlement {settlement.id}",
            settlement_id=settlement.id,
            tender_id=tender.id,
        ))
    return movements


def filter_movements(
    session_id: int,
    *,
    kind: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[CashMovement]:
    """Movements of a session, optionally by kind and posted_at range (inclusive)."""
    get_session(session_id)
    query = db.session.query(CashMovement).filter_by(session_id=session_id)
    if kind:
        query = query.filter(CashMovement.kind == kind.upper())
    if start:
        query = query.filter(CashMovement.posted_at >= start)
    if end:
        query = query.filter(CashMovement.posted_at <= end)
    return query.order_by(CashMovement.sequence).all()


def compute_balance(session: CashSession) -> LedgerBalance:
    """Fold the session's movements in ledger order."""
    movements = db.session.query(CashMovement).filter_by(
        session_id=session.id
    ).order_by(CashMovement.sequence).all()
    return fold_movements(session.opening_float_cents, movements)


def totals_by_kind(session_id: int) -> dict[str, int]:
    return compute_balance(get_session(session_id)).totals_by_kind


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def get_session_for_update(session_id: int) -> CashSession:
    session = lock_for_update(db.session.query(CashSession).filter_by(id=session_id)).first()
    if not session:
        raise NotFound(f"Cash session {session_id} not found")
    return session


def _require_owner(session: CashSession, operator_id: int, manager_override: bool) -> None:
    if session.operator_id != operator_id and not manager_override:
        raise NotSessionOwner(
            f"Only operator {session.operator_id} can use session {session.id} without manager approval"
        )


def _append_movement(
    session: CashSession,
    *,
    kind: str,
    amount_cents: int,
    posted_by: int,
    category: str | None = None,
    note: str | None = None,
    settlement_id: int | None = None,
    tender_id: int | None = None,
) -> CashMovement:
    last_sequence, last_posted_at = db.session.query(
        func.max(CashMovement.sequence), func.max(CashMovement.posted_at)
    ).filter(CashMovement.session_id == session.id).one()

    posted_at = utcnow()
    # Keep posted_at monotonic with sequence even if the clock steps back
    if last_posted_at is not None and posted_at < last_posted_at:
        posted_at = last_posted_at

    movement = CashMovement(
        session_id=session.id,
        sequence=(last_sequence or 0) + 1,
        kind=kind,
        amount_cents=amount_cents,
        category=category,
        note=note,
        settlement_id=settlement_id,
        tender_id=tender_id,
        posted_by=posted_by,
        posted_at=posted_at,
    )
    db.session.add(movement)
    db.session.flush()
    return movement
