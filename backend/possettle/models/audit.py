from __future__ import annotations

from ..extensions import db
from possettle.time_utils import to_utc_z


class AuditRecord(db.Model):
    """
    Append-only audit log for settlement and cash session events.

    - One row per tender, verification, void, movement, open, close, finalize.
    - before/after hold the derived totals around the event.
    - occurred_at is business time; created_at is system time (DB default).
    """
    __tablename__ = "audit_records"
    __table_args__ = (
        db.Index("ix_audit_records_session_occurred", "cash_session_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # What happened
    event_type = db.Column(db.String(64), nullable=False, index=True)  # e.g., tender.added, cash_session.closed
    event_category = db.Column(db.String(32), nullable=False, index=True)  # settlement, cash_session

    # What it refers to (generic pointer)
    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    operator_id = db.Column(db.Integer, nullable=False, index=True)
    cash_session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=True, index=True)
    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=True, index=True)

    before = db.Column(db.JSON, nullable=True)
    after = db.Column(db.JSON, nullable=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "event_category": self.event_category,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "operator_id": self.operator_id,
            "cash_session_id": self.cash_session_id,
            "settlement_id": self.settlement_id,
            "before": self.before,
            "after": self.after,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
