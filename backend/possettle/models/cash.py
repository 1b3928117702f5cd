from __future__ import annotations

from sqlalchemy import text

from ..extensions import db
from ..constants import SESSION_OPEN, SESSION_CLOSED
from possettle.time_utils import to_utc_z


class CashSession(db.Model):
    """
    Cash drawer session for one operator at one location.

    WHY: Cashier accountability. Each session has an opening float, an
    append-only ledger of movements, and a counted amount at close from
    which the variance is reported.

    LIFECYCLE:
    - OPEN: Session is active, accepts movements
    - CLOSED: Drawer counted, variance recorded

    IMMUTABLE: Once closed, session cannot be reopened or modified.
    """
    __tablename__ = "cash_sessions"
    __table_args__ = (
        # At most one OPEN session per operator and location
        db.Index(
            "uq_cash_sessions_open_operator_location",
            "operator_id",
            "location_id",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    operator_id = db.Column(db.Integer, nullable=False, index=True)
    location_id = db.Column(db.Integer, nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=SESSION_OPEN, index=True)  # OPEN, CLOSED

    # Cash tracking (all amounts in cents)
    opening_float_cents = db.Column(db.Integer, nullable=False, default=0)
    opening_note = db.Column(db.Text, nullable=True)

    # Frozen at close
    counted_cents = db.Column(db.Integer, nullable=True)
    theoretical_cents = db.Column(db.Integer, nullable=True)  # opening + income + cash sales - expenses
    total_recognized_cents = db.Column(db.Integer, nullable=True)  # theoretical + pending (card/wire/QR)
    variance_cents = db.Column(db.Integer, nullable=True)  # counted - theoretical
    closing_note = db.Column(db.Text, nullable=True)
    closed_by_operator_id = db.Column(db.Integer, nullable=True)

    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    movements = db.relationship(
        "CashMovement",
        back_populates="session",
        order_by="CashMovement.sequence",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status == SESSION_OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == SESSION_CLOSED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operator_id": self.operator_id,
            "location_id": self.location_id,
            "status": self.status,
            "opening_float_cents": self.opening_float_cents,
            "opening_note": self.opening_note,
            "counted_cents": self.counted_cents,
            "theoretical_cents": self.theoretical_cents,
            "total_recognized_cents": self.total_recognized_cents,
            "variance_cents": self.variance_cents,
            "closing_note": self.closing_note,
            "closed_by_operator_id": self.closed_by_operator_id,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "version_id": self.version_id,
        }


class CashMovement(db.Model):
    """
    Append-only ledger entry inside a cash session.

    MOVEMENT KINDS:
    - INCOME: Manual cash added to the drawer
    - EXPENSE: Manual cash taken out of the drawer
    - SALE_SETTLEMENT: Cash kept from a finalized sale
    - PENDING_SALE_SETTLEMENT: Card, wire or QR revenue not yet bank-cleared

    Amounts are always positive; the sign is implied by the kind.

    IMMUTABLE: Records are never updated, deleted, or moved to another session.
    """
    __tablename__ = "cash_movements"
    __table_args__ = (
        db.UniqueConstraint("session_id", "sequence", name="uq_cash_movements_session_sequence"),
        db.Index("ix_cash_movements_session_posted", "session_id", "posted_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=False, index=True)

    # Position inside the session ledger (1..n)
    sequence = db.Column(db.Integer, nullable=False)

    kind = db.Column(db.String(32), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)

    category = db.Column(db.String(64), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    # Sale postings point back at their source
    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=True, index=True)
    tender_id = db.Column(db.Integer, db.ForeignKey("tenders.id"), nullable=True)

    posted_by = db.Column(db.Integer, nullable=False, index=True)
    posted_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    session = db.relationship("CashSession", back_populates="movements")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "sequence": self.sequence,
            "kind": self.kind,
            "amount_cents": self.amount_cents,
            "category": self.category,
            "note": self.note,
            "settlement_id": self.settlement_id,
            "tender_id": self.tender_id,
            "posted_by": self.posted_by,
            "posted_at": to_utc_z(self.posted_at),
        }
