# Overview: Orchestrates settlements against cash sessions and the verification gateway.

"""
Settlement Coordinator

WHY: The coordinator is the only path from a sale's payment to the cash
ledger and the fiscal document:

- begin_sale refuses to start collecting without an OPEN cash session
- confirm_async is the single suspension point (gateway round-trip)
- finalize posts sale movements only for settled payments and hands back
  the receipt token the fiscal emitter requires

An abandoned or incomplete settlement therefore never reaches the ledger.
"""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import Settlement
from ..constants import (
    SESSION_OPEN,
    SETTLEMENT_SETTLED,
    VERIFICATION_UNVERIFIED,
)
from possettle.time_utils import utcnow, to_utc_z
from . import cash_session_service, settlement_service
from .audit_service import record_event
from .concurrency import run_with_retry
from .errors import (
    GatewayTimeout,
    GatewayUnavailable,
    InvalidStateTransition,
    NoOpenSession,
    NotFound,
    NotSessionOwner,
    SessionClosed,
)
from .verification_gateway import (
    CHECK_CONFIRMED,
    CHECK_NOT_FOUND,
    VALID_CHECK_RESULTS,
    VerificationGateway,
)


@dataclass(frozen=True)
class VerificationOutcome:
    tender_id: int
    settlement_id: int
    reference: str
    gateway_result: str
    verification_state: str
    settlement_status: str
    is_settled: bool

    def to_dict(self) -> dict:
        return {
            "tender_id": self.tender_id,
            "settlement_id": self.settlement_id,
            "reference": self.reference,
            "gateway_result": self.gateway_result,
            "verification_state": self.verification_state,
            "settlement_status": self.settlement_status,
            "is_settled": self.is_settled,
        }


@dataclass(frozen=True)
class FinalizedReceipt:
    token: str
    settlement_id: int
    cash_session_id: int
    target_cents: int
    collected_cents: int
    change_due_cents: int
    finalized_at: datetime
    tenders: list[dict] = field(default_factory=list)
    movement_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "settlement_id": self.settlement_id,
            "cash_session_id": self.cash_session_id,
            "target_cents": self.target_cents,
            "collected_cents": self.collected_cents,
            "change_due_cents": self.change_due_cents,
            "finalized_at": to_utc_z(self.finalized_at),
            "tenders": list(self.tenders),
            "movement_ids": list(self.movement_ids),
        }


class SettlementCoordinator:
    def __init__(self, gateway: VerificationGateway | None = None, timeout_seconds: float = 10.0):
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds

    # -------------------------------------------------------------------------
    # begin_sale
    # -------------------------------------------------------------------------

    def begin_sale(self, target_cents: int, cash_session_id: int, operator_id: int) -> Settlement:
        """
        Start collecting payment for a sale inside an OPEN cash session.

        Raises:
            NoOpenSession: Session missing or not OPEN
            NotSessionOwner: Session belongs to another operator
            InvalidAmount: Sale total not positive
        """
        def _op():
            try:
                session = cash_session_service.get_session_for_update(cash_session_id)
            except NotFound:
                raise NoOpenSession(f"Cash session {cash_session_id} not found")

            if session.status != SESSION_OPEN:
                raise NoOpenSession(f"Cash session {cash_session_id} is not open")

            if session.operator_id != operator_id:
                raise NotSessionOwner(
                    f"Cash session {cash_session_id} belongs to operator {session.operator_id}"
                )

            settlement = settlement_service.create_settlement(
                cash_session_id=session.id,
                operator_id=operator_id,
                target_cents=target_cents,
            )

            record_event(
                event_type="settlement.begun",
                event_category="settlement",
                entity_type="settlement",
                entity_id=settlement.id,
                operator_id=operator_id,
                cash_session_id=session.id,
                settlement_id=settlement.id,
                before=None,
                after=settlement.totals(),
                occurred_at=settlement.created_at,
            )

            db.session.commit()
            return settlement

        return run_with_retry(_op)

    # -------------------------------------------------------------------------
    # confirm_async
    # -------------------------------------------------------------------------

    async def confirm_async(
        self,
        tender_id: int,
        operator_id: int,
        *,
        fail_on_not_found: bool = True,
        manager_override: bool = False,
    ) -> VerificationOutcome:
        """
        Ask the gateway whether an UNVERIFIED tender's funds arrived.

        - CONFIRMED: tender marked VERIFIED (may settle the sale)
        - NOT_FOUND: tender marked FAILED when fail_on_not_found, else unchanged
        - PENDING: unchanged, operator may retry

        Raises:
            GatewayTimeout: No answer within timeout_seconds (tender unchanged)
            GatewayUnavailable: No gateway configured or provider unreachable (tender unchanged)
            InvalidStateTransition: Tender already resolved, voided, or has no reference
            NotSessionOwner: Sale belongs to another operator
            SessionClosed: Bound cash session no longer OPEN
        """
        tender = settlement_service.get_tender(tender_id)
        settlement_service.require_owner(tender.settlement, operator_id, manager_override)
        if tender.settlement.cash_session.status != SESSION_OPEN:
            raise SessionClosed(f"Session {tender.settlement.cash_session_id} is closed")
        if tender.voided_at is not None:
            raise InvalidStateTransition(f"Tender {tender_id} is voided")
        if tender.verification_state != VERIFICATION_UNVERIFIED:
            raise InvalidStateTransition(
                f"Tender {tender_id} is already {tender.verification_state}"
            )
        if not tender.verification_reference:
            raise InvalidStateTransition(f"Tender {tender_id} has no verification reference")

        if self.gateway is None:
            raise GatewayUnavailable("No verification gateway configured")

        reference = tender.verification_reference
        kind = tender.kind
        amount_cents = tender.amount_cents
        settlement_id = tender.settlement_id

        # Release the read transaction before the network round-trip
        db.session.rollback()

        try:
            result = await asyncio.wait_for(
                self.gateway.check(reference, kind=kind, amount_cents=amount_cents),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            current_app.logger.info("Verification of tender %s timed out", tender_id)
            raise GatewayTimeout(
                f"Verification of tender {tender_id} timed out after {self.timeout_seconds}s",
                tender_id=tender_id,
            )

        if result not in VALID_CHECK_RESULTS:
            raise GatewayUnavailable(f"Gateway returned unknown result {result!r}")

        current_app.logger.info("Verification of tender %s (%s): %s", tender_id, reference, result)

        note = f"gateway {result}"
        if result == CHECK_CONFIRMED:
            tender = settlement_service.mark_verified(
                tender_id, operator_id, note=note, manager_override=manager_override
            )
        elif result == CHECK_NOT_FOUND and fail_on_not_found:
            tender = settlement_service.mark_failed(
                tender_id, operator_id, note=note, manager_override=manager_override
            )
        else:
            tender = settlement_service.get_tender(tender_id)

        settlement = settlement_service.get_settlement(settlement_id)
        return VerificationOutcome(
            tender_id=tender.id,
            settlement_id=settlement.id,
            reference=reference,
            gateway_result=result,
            verification_state=tender.verification_state,
            settlement_status=settlement.status,
            is_settled=settlement.is_settled,
        )

    # -------------------------------------------------------------------------
    # finalize
    # -------------------------------------------------------------------------

    def finalize(
        self,
        settlement_id: int,
        operator_id: int,
        *,
        manager_override: bool = False,
    ) -> FinalizedReceipt:
        """
        Post a settled sale to its cash session and issue the receipt token.

        Raises:
            InvalidStateTransition: Settlement not settled, or already finalized
            NotSessionOwner: Sale belongs to another operator
            SessionClosed: Bound session closed since the sale began
        """
        def _op():
            settlement = settlement_service.get_settlement_for_update(settlement_id)
            settlement_service.require_owner(settlement, operator_id, manager_override)

            if settlement.status != SETTLEMENT_SETTLED or not settlement.is_settled:
                raise InvalidStateTransition(
                    f"Settlement {settlement_id} is {settlement.status}; only settled payments can be finalized"
                )
            if settlement.finalized_at is not None:
                raise InvalidStateTransition(f"Settlement {settlement_id} already finalized")

            before = settlement.totals()
            movements = cash_session_service.post_settlement(settlement, posted_by=operator_id)

            settlement.finalized_at = utcnow()
            settlement.receipt_token = secrets.token_hex(16)

            record_event(
                event_type="settlement.finalized",
                event_category="settlement",
                entity_type="settlement",
                entity_id=settlement.id,
                operator_id=operator_id,
                cash_session_id=settlement.cash_session_id,
                settlement_id=settlement.id,
                before=before,
                after={**settlement.totals(), "movement_ids": [m.id for m in movements]},
                occurred_at=settlement.finalized_at,
            )

            db.session.commit()

            return FinalizedReceipt(
                token=settlement.receipt_token,
                settlement_id=settlement.id,
                cash_session_id=settlement.cash_session_id,
                target_cents=settlement.target_cents,
                collected_cents=settlement.collected_cents,
                change_due_cents=settlement.change_due_cents,
                finalized_at=settlement.finalized_at,
                tenders=settlement_service.tender_breakdown(settlement),
                movement_ids=[m.id for m in movements],
            )

        return run_with_retry(_op)


def get_coordinator() -> SettlementCoordinator:
    """The coordinator bound to the current app (see create_app)."""
    return current_app.extensions["settlement_coordinator"]
