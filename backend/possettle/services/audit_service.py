# Overview: Append-only audit trail for settlement and cash session events.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import AuditRecord
from possettle.time_utils import utcnow
"""
Audit Log Invariants

- Append-only: records are never updated or deleted.
- No domain/business logic here; callers pass before/after totals.
- Records are written inside the same DB transaction as the event they record.
- occurred_at is business time; created_at is system time (DB default).
"""


def record_event(
    *,
    event_type: str,
    event_category: str,
    entity_type: str,
    entity_id: int,
    operator_id: int,
    cash_session_id: int | None = None,
    settlement_id: int | None = None,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    note: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> AuditRecord:
    """Append one audit record. Flushes, never commits."""
    record = AuditRecord(
        event_type=event_type,
        event_category=event_category,
        entity_type=entity_type,
        entity_id=entity_id,
        operator_id=operator_id,
        cash_session_id=cash_session_id,
        settlement_id=settlement_id,
        before=before,
        after=after,
        note=(note[:255] if note else None),
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(record)
    db.session.flush()

    current_app.logger.info(
        "audit %s %s=%s operator=%s", event_type, entity_type, entity_id, operator_id
    )
    return record


def list_events(
    *,
    cash_session_id: int | None = None,
    settlement_id: int | None = None,
    event_type: str | None = None,
    operator_id: int | None = None,
    limit: int = 200,
) -> list[AuditRecord]:
    query = db.session.query(AuditRecord)
    if cash_session_id is not None:
        query = query.filter_by(cash_session_id=cash_session_id)
    if settlement_id is not None:
        query = query.filter_by(settlement_id=settlement_id)
    if event_type:
        query = query.filter_by(event_type=event_type)
    if operator_id is not None:
        query = query.filter_by(operator_id=operator_id)
    return query.order_by(AuditRecord.occurred_at, AuditRecord.id).limit(limit).all()
