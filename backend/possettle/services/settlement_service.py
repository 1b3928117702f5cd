# Overview: Tender state machine for one sale's payment collection.

"""
Settlement Service

WHY: A sale may be paid with cash, cards, wire transfers and QR payments,
split across several tenders. The sale may only be invoiced once the
verified tenders cover the total and no tender is still unconfirmed.

DESIGN PRINCIPLES:
- Split payments: one settlement holds many tenders
- Cash and card are trusted at capture; wire and QR wait for verification
- Non-cash tenders never exceed the outstanding balance (cash may, for change)
- Failed and voided tenders stay on record for the audit trail
- Totals are derived from tenders on every read, never stored
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Settlement, Tender
from ..constants import (
    TENDER_CASH,
    VERIFICATION_UNVERIFIED,
    VERIFICATION_VERIFIED,
    VERIFICATION_FAILED,
    SETTLEMENT_COLLECTING,
    SETTLEMENT_SETTLED,
    SETTLEMENT_ABANDONED,
    SESSION_OPEN,
)
from possettle.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .audit_service import record_event
from .errors import (
    InvalidAmount,
    InvalidStateTransition,
    NotFound,
    NotSessionOwner,
    OverCollection,
    SessionClosed,
)
from .instruments import parse_details, details_to_dict


DEFAULT_SYNC_VERIFIED_KINDS = ("CASH", "CARD")


# =============================================================================
# SETTLEMENT CREATION
# =============================================================================

def create_settlement(cash_session_id: int, operator_id: int, target_cents: int) -> Settlement:
    """
    Create a COLLECTING settlement. Does not commit.

    Session checks belong to the coordinator (begin_sale); this only
    validates the total.
    """
    if target_cents <= 0:
        raise InvalidAmount("Sale total must be positive")

    settlement = Settlement(
        cash_session_id=cash_session_id,
        operator_id=operator_id,
        target_cents=target_cents,
        status=SETTLEMENT_COLLECTING,
        created_at=utcnow(),
    )
    db.session.add(settlement)
    db.session.flush()
    return settlement


def get_settlement(settlement_id: int) -> Settlement:
    settlement = db.session.get(Settlement, settlement_id)
    if not settlement:
        raise NotFound(f"Settlement {settlement_id} not found")
    return settlement


def get_tender(tender_id: int) -> Tender:
    tender = db.session.get(Tender, tender_id)
    if not tender:
        raise NotFound(f"Tender {tender_id} not found")
    return tender


# =============================================================================
# TENDERS
# =============================================================================

def add_tender(
    settlement_id: int,
    kind: str,
    amount_cents: int,
    operator_id: int,
    details: dict | None = None,
    *,
    manager_override: bool = False,
) -> Tender:
    """
    Apply a tender to a settlement.

    Args:
        settlement_id: Settlement being paid
        kind: CASH, CARD, WIRE_TRANSFER, QR_PAYMENT
        amount_cents: Amount tendered (in cents)
        operator_id: Operator recording the tender
        details: Kind-specific instrument payload
        manager_override: Manager approved acting on another operator's sale

    Returns:
        Tender record (VERIFIED for trusted kinds, else UNVERIFIED)

    Raises:
        InvalidAmount: amount not positive
        InvalidStateTransition: settlement not COLLECTING
        NotSessionOwner: settlement belongs to another operator
        SessionClosed: bound cash session no longer OPEN
        InvalidInstrumentDetails: payload does not fit the kind
        OverCollection: balance already covered, or non-cash overshoot beyond tolerance
    """
    def _op():
        if amount_cents <= 0:
            raise InvalidAmount("Tender amount must be positive")

        settlement = get_settlement_for_update(settlement_id)
        require_owner(settlement, operator_id, manager_override)
        _require_collecting(settlement)
        _require_session_open(settlement)

        instrument = parse_details(kind, details)

        outstanding = settlement.target_cents - settlement.committed_cents
        if outstanding <= 0:
            raise OverCollection(
                "Settlement has no outstanding balance",
                outstanding_cents=0,
            )

        tolerance = int(current_app.config.get("NON_CASH_OVERCOLLECTION_TOLERANCE_CENTS", 0))
        if kind != TENDER_CASH and amount_cents > outstanding + tolerance:
            raise OverCollection(
                f"{kind} tender of {amount_cents} exceeds outstanding balance of {outstanding}",
                outstanding_cents=outstanding,
            )

        before = settlement.totals()
        now = utcnow()
        state = VERIFICATION_VERIFIED if kind in _sync_verified_kinds() else VERIFICATION_UNVERIFIED

        tender = Tender(
            settlement_id=settlement.id,
            sequence=len(settlement.tenders) + 1,
            kind=kind,
            amount_cents=amount_cents,
            details=details_to_dict(instrument),
            verification_reference=instrument.verification_reference,
            verification_state=state,
            resolved_at=now if state == VERIFICATION_VERIFIED else None,
            recorded_by=operator_id,
            recorded_at=now,
        )
        settlement.tenders.append(tender)
        db.session.flush()

        _refresh_status(settlement)

        record_event(
            event_type="tender.added",
            event_category="settlement",
            entity_type="tender",
            entity_id=tender.id,
            operator_id=operator_id,
            cash_session_id=settlement.cash_session_id,
            settlement_id=settlement.id,
            before=before,
            after=settlement.totals(),
            note=f"{kind} {amount_cents}",
            occurred_at=now,
        )

        db.session.commit()
        return tender

    return run_with_retry(_op)


def mark_verified(
    tender_id: int,
    operator_id: int,
    note: str | None = None,
    *,
    manager_override: bool = False,
) -> Tender:
    """UNVERIFIED -> VERIFIED. May settle the settlement."""
    return _resolve_tender(tender_id, operator_id, VERIFICATION_VERIFIED, note, manager_override)


def mark_failed(
    tender_id: int,
    operator_id: int,
    note: str | None = None,
    *,
    manager_override: bool = False,
) -> Tender:
    """
    UNVERIFIED -> FAILED.

    The tender is kept; the settlement stays COLLECTING until the operator
    voids it and takes another instrument.
    """
    return _resolve_tender(tender_id, operator_id, VERIFICATION_FAILED, note, manager_override)


def void_tender(
    tender_id: int,
    operator_id: int,
    reason: str | None = None,
    *,
    manager_override: bool = False,
) -> Tender:
    """
    Remove a tender's contribution while the settlement is COLLECTING.

    WHY: Operator mistakes and failed transfers happen. Voiding keeps the
    tender on record instead of deleting it.
    """
    def _op():
        tender = _get_tender_locked(tender_id)
        settlement = get_settlement_for_update(tender.settlement_id)
        require_owner(settlement, operator_id, manager_override)
        _require_collecting(settlement)

        if tender.voided_at is not None:
            raise InvalidStateTransition(f"Tender {tender_id} already voided")

        before = settlement.totals()

        tender.voided_at = utcnow()
        tender.voided_by = operator_id
        tender.void_reason = reason

        _refresh_status(settlement)

        record_event(
            event_type="tender.voided",
            event_category="settlement",
            entity_type="tender",
            entity_id=tender.id,
            operator_id=operator_id,
            cash_session_id=settlement.cash_session_id,
            settlement_id=settlement.id,
            before=before,
            after=settlement.totals(),
            note=reason,
            occurred_at=tender.voided_at,
        )

        db.session.commit()
        return tender

    return run_with_retry(_op)


def abandon(
    settlement_id: int,
    operator_id: int,
    reason: str | None = None,
    *,
    manager_override: bool = False,
) -> Settlement:
    """
    Cancel a sale before it settles. Posts nothing to the cash ledger.
    """
    def _op():
        settlement = get_settlement_for_update(settlement_id)
        require_owner(settlement, operator_id, manager_override)
        _require_collecting(settlement)

        before = settlement.totals()
        settlement.status = SETTLEMENT_ABANDONED
        settlement.abandoned_at = utcnow()
        settlement.abandon_reason = reason

        record_event(
            event_type="settlement.abandoned",
            event_category="settlement",
            entity_type="settlement",
            entity_id=settlement.id,
            operator_id=operator_id,
            cash_session_id=settlement.cash_session_id,
            settlement_id=settlement.id,
            before=before,
            after=settlement.totals(),
            note=reason,
            occurred_at=settlement.abandoned_at,
        )

        db.session.commit()
        return settlement

    return run_with_retry(_op)


def tender_breakdown(settlement: Settlement) -> list[dict]:
    """Active verified tenders, as handed to the fiscal document emitter."""
    return [
        {
            "tender_id": t.id,
            "kind": t.kind,
            "amount_cents": t.amount_cents,
            "details": dict(t.details or {}),
            "verification_reference": t.verification_reference,
        }
        for t in settlement.active_tenders
        if t.is_verified
    ]


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _resolve_tender(
    tender_id: int,
    operator_id: int,
    new_state: str,
    note: str | None,
    manager_override: bool,
) -> Tender:
    def _op():
        tender = _get_tender_locked(tender_id)
        settlement = get_settlement_for_update(tender.settlement_id)
        require_owner(settlement, operator_id, manager_override)

        if tender.voided_at is not None:
            raise InvalidStateTransition(f"Tender {tender_id} is voided")
        if tender.verification_state != VERIFICATION_UNVERIFIED:
            raise InvalidStateTransition(
                f"Tender {tender_id} is already {tender.verification_state}"
            )
        _require_collecting(settlement)
        _require_session_open(settlement)

        before = settlement.totals()
        tender.verification_state = new_state
        tender.resolved_at = utcnow()

        _refresh_status(settlement)

        record_event(
            event_type=f"tender.{new_state.lower()}",
            event_category="settlement",
            entity_type="tender",
            entity_id=tender.id,
            operator_id=operator_id,
            cash_session_id=settlement.cash_session_id,
            settlement_id=settlement.id,
            before=before,
            after=settlement.totals(),
            note=note,
            occurred_at=tender.resolved_at,
        )

        db.session.commit()
        return tender

    return run_with_retry(_op)


def _refresh_status(settlement: Settlement) -> None:
    """COLLECTING -> SETTLED once every active tender is verified and the total is covered."""
    if settlement.status == SETTLEMENT_COLLECTING and settlement.is_settled:
        settlement.status = SETTLEMENT_SETTLED
        settlement.settled_at = utcnow()


def _require_collecting(settlement: Settlement) -> None:
    if settlement.status != SETTLEMENT_COLLECTING:
        raise InvalidStateTransition(
            f"Settlement {settlement.id} is {settlement.status}, not {SETTLEMENT_COLLECTING}"
        )


def require_owner(settlement: Settlement, operator_id: int, manager_override: bool) -> None:
    """Only the operator who began the sale may act on it, unless a manager approves."""
    if settlement.operator_id != operator_id and not manager_override:
        raise NotSessionOwner(
            f"Settlement {settlement.id} belongs to operator {settlement.operator_id}"
        )


def _require_session_open(settlement: Settlement) -> None:
    if settlement.cash_session.status != SESSION_OPEN:
        raise SessionClosed(
            f"Session {settlement.cash_session_id} is closed; settlement {settlement.id} is frozen"
        )


def _sync_verified_kinds() -> tuple[str, ...]:
    return tuple(current_app.config.get("SYNC_VERIFIED_TENDER_KINDS", DEFAULT_SYNC_VERIFIED_KINDS))


def get_settlement_for_update(settlement_id: int) -> Settlement:
    settlement = lock_for_update(db.session.query(Settlement).filter_by(id=settlement_id)).first()
    if not settlement:
        raise NotFound(f"Settlement {settlement_id} not found")
    return settlement


def _get_tender_locked(tender_id: int) -> Tender:
    tender = lock_for_update(db.session.query(Tender).filter_by(id=tender_id)).first()
    if not tender:
        raise NotFound(f"Tender {tender_id} not found")
    return tender
