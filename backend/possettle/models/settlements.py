from __future__ import annotations

from ..extensions import db
from ..constants import (
    TENDER_CASH,
    VERIFICATION_UNVERIFIED,
    VERIFICATION_VERIFIED,
    VERIFICATION_FAILED,
    SETTLEMENT_COLLECTING,
)
from possettle.time_utils import to_utc_z


class Settlement(db.Model):
    """
    Payment collection for one sale.

    WHY: A sale may be paid with several instruments. The fiscal document
    may only be emitted once the tenders cover the total AND every tender
    has actually been received.

    LIFECYCLE:
    - COLLECTING: Tenders are being added, voided, or verified
    - SETTLED: Total covered and every active tender verified (terminal)
    - ABANDONED: Sale canceled before settling (terminal)

    DESIGN: Collected amount, change due, and completeness are derived from
    the tenders on every read. Nothing here stores a running total.
    """
    __tablename__ = "settlements"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    cash_session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=False, index=True)
    operator_id = db.Column(db.Integer, nullable=False, index=True)

    # Sale total (in cents), fixed at creation
    target_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=SETTLEMENT_COLLECTING, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    abandoned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    abandon_reason = db.Column(db.String(255), nullable=True)

    # Set once by finalize; handed to the fiscal document emitter
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)
    receipt_token = db.Column(db.String(64), nullable=True, unique=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    cash_session = db.relationship("CashSession", backref=db.backref("settlements", lazy=True))
    tenders = db.relationship(
        "Tender",
        back_populates="settlement",
        order_by="Tender.sequence",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    # -------------------------------------------------------------------------
    # Derived totals
    # -------------------------------------------------------------------------

    @property
    def active_tenders(self) -> list["Tender"]:
        """Tenders that have not been voided, in recording order."""
        return [t for t in self.tenders if t.voided_at is None]

    @property
    def collected_cents(self) -> int:
        return sum(t.amount_cents for t in self.active_tenders if t.is_verified)

    @property
    def committed_cents(self) -> int:
        """Verified plus still-pending tenders: what will be collected if every check clears."""
        return sum(
            t.amount_cents
            for t in self.active_tenders
            if t.verification_state in (VERIFICATION_VERIFIED, VERIFICATION_UNVERIFIED)
        )

    @property
    def outstanding_cents(self) -> int:
        return max(0, self.target_cents - self.committed_cents)

    @property
    def change_due_cents(self) -> int:
        verified = [t for t in self.active_tenders if t.is_verified]
        cash_total = sum(t.amount_cents for t in verified if t.kind == TENDER_CASH)
        non_cash_total = sum(t.amount_cents for t in verified if t.kind != TENDER_CASH)
        cash_portion = max(0, self.target_cents - non_cash_total)
        return max(0, cash_total - cash_portion)

    @property
    def has_unresolved_tenders(self) -> bool:
        return any(
            t.verification_state in (VERIFICATION_UNVERIFIED, VERIFICATION_FAILED)
            for t in self.active_tenders
        )

    @property
    def is_settled(self) -> bool:
        return self.collected_cents >= self.target_cents and not self.has_unresolved_tenders

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None

    def totals(self) -> dict:
        """Snapshot of the derived figures (used for audit before/after)."""
        return {
            "target_cents": self.target_cents,
            "collected_cents": self.collected_cents,
            "committed_cents": self.committed_cents,
            "change_due_cents": self.change_due_cents,
            "is_settled": self.is_settled,
            "status": self.status,
        }

    def to_dict(self, include_tenders: bool = True) -> dict:
        d = {
            "id": self.id,
            "cash_session_id": self.cash_session_id,
            "operator_id": self.operator_id,
            "target_cents": self.target_cents,
            "status": self.status,
            "collected_cents": self.collected_cents,
            "outstanding_cents": self.outstanding_cents,
            "change_due_cents": self.change_due_cents,
            "is_settled": self.is_settled,
            "created_at": to_utc_z(self.created_at),
            "settled_at": to_utc_z(self.settled_at) if self.settled_at else None,
            "abandoned_at": to_utc_z(self.abandoned_at) if self.abandoned_at else None,
            "abandon_reason": self.abandon_reason,
            "finalized_at": to_utc_z(self.finalized_at) if self.finalized_at else None,
            "receipt_token": self.receipt_token,
            "version_id": self.version_id,
        }
        if include_tenders:
            d["tenders"] = [t.to_dict() for t in self.tenders]
        return d


class Tender(db.Model):
    """
    One payment instrument applied to a settlement.

    TENDER KINDS:
    - CASH: Physical currency (may overshoot, change is computed)
    - CARD: Debit/credit card captured at a terminal
    - WIRE_TRANSFER: Bank transfer confirmed by receipt reference
    - QR_PAYMENT: Provider QR payment confirmed by transaction id

    IMMUTABLE: Only verification_state (and the void marker) change after
    creation. Voided and failed tenders remain for the audit trail.
    """
    __tablename__ = "tenders"
    __table_args__ = (
        db.UniqueConstraint("settlement_id", "sequence", name="uq_tenders_settlement_sequence"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)

    kind = db.Column(db.String(32), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)

    # Kind-specific instrument payload (validated by services.instruments)
    details = db.Column(db.JSON, nullable=False, default=dict)

    # What the verification gateway is asked about (receipt ref, provider txn id, auth code)
    verification_reference = db.Column(db.String(128), nullable=True, index=True)

    verification_state = db.Column(db.String(16), nullable=False, index=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    recorded_by = db.Column(db.Integer, nullable=False)
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False)

    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_by = db.Column(db.Integer, nullable=True)
    void_reason = db.Column(db.String(255), nullable=True)

    settlement = db.relationship("Settlement", back_populates="tenders")

    @property
    def is_verified(self) -> bool:
        return self.verification_state == VERIFICATION_VERIFIED

    @property
    def is_voided(self) -> bool:
        return self.voided_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "settlement_id": self.settlement_id,
            "sequence": self.sequence,
            "kind": self.kind,
            "amount_cents": self.amount_cents,
            "details": dict(self.details or {}),
            "verification_reference": self.verification_reference,
            "verification_state": self.verification_state,
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
            "recorded_by": self.recorded_by,
            "recorded_at": to_utc_z(self.recorded_at),
            "voided": self.is_voided,
            "voided_at": to_utc_z(self.voided_at) if self.voided_at else None,
            "voided_by": self.voided_by,
            "void_reason": self.void_reason,
        }
