# Overview: Flask API routes for cash reports and the audit trail.

# backend/possettle/routes/reports.py
"""
Reporting API Routes

WHY: Supervisors reconcile drawers across shifts and locations, and review
who did what to a sale or a session.

DESIGN:
- Read-only endpoints
- Date ranges are ISO-8601 (UTC when no offset is given)
"""

from flask import Blueprint, request, jsonify

from ..services import reporting_service, audit_service
from ..services.errors import SettlementEngineError
from ..decorators import require_operator
from ..responses import error_response, validation_response
from ..validation import ValidationError, coerce_int, coerce_datetime


reports_bp = Blueprint("reports", __name__, url_prefix="/api")


@reports_bp.get("/reports/cash")
@require_operator
def cash_report_route():
    """
    Cash movements across sessions.

    Query params: from, to, location_id, operator_id
    """
    try:
        start = coerce_datetime("from", request.args.get("from"))
        end = coerce_datetime("to", request.args.get("to"))
        if start and end and start > end:
            raise ValidationError("from must be before to")

        report = reporting_service.cash_report(
            start=start,
            end=end,
            location_id=coerce_int("location_id", request.args.get("location_id"), required=False),
            operator_id=coerce_int("operator_id", request.args.get("operator_id"), required=False),
        )
        return jsonify(report), 200

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)


@reports_bp.get("/audit")
@require_operator
def audit_events_route():
    """
    Audit trail.

    Query params: cash_session_id, settlement_id, event_type, operator_id, limit
    """
    try:
        events = audit_service.list_events(
            cash_session_id=coerce_int("cash_session_id", request.args.get("cash_session_id"), required=False),
            settlement_id=coerce_int("settlement_id", request.args.get("settlement_id"), required=False),
            event_type=request.args.get("event_type"),
            operator_id=coerce_int("operator_id", request.args.get("operator_id"), required=False),
            limit=coerce_int("limit", request.args.get("limit"), required=False) or 200,
        )
        return jsonify({"events": [e.to_dict() for e in events]}), 200

    except ValidationError as e:
        return validation_response(e)
