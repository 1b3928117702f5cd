# Overview: Flask API routes for cash sessions; parses input and returns JSON responses.

# backend/possettle/routes/cash_sessions.py
"""
Cash Session API Routes

WHY: Operator accountability for the drawer at one location, from opening
float to final count.

DESIGN:
- Session lifecycle: open -> close (immutable once closed)
- Manual INCOME / EXPENSE movements while OPEN
- Sale movements arrive only through settlement finalization
- Close reports the variance, never corrects it

SECURITY:
- X-Operator-Id identifies the acting operator
- Acting on another operator's session requires X-Manager-Override
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import cash_session_service, reporting_service
from ..services.errors import SettlementEngineError
from ..decorators import require_operator
from ..responses import error_response, validation_response, internal_error
from ..validation import (
    ValidationError,
    coerce_int,
    coerce_cents,
    coerce_datetime,
    coerce_text,
    require_json_object,
)


cash_sessions_bp = Blueprint("cash_sessions", __name__, url_prefix="/api/cash-sessions")


# =============================================================================
# SESSION LIFECYCLE
# =============================================================================

@cash_sessions_bp.post("/")
@cash_sessions_bp.post("")
@require_operator
def open_session_route():
    """
    Open a cash session for the calling operator.

    Request body:
    {
        "location_id": 1,
        "opening_float_cents": 10000,
        "note": "Morning shift"  (optional)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        session = cash_session_service.open_session(
            operator_id=g.operator_id,
            location_id=coerce_int("location_id", data.get("location_id")),
            opening_float_cents=coerce_cents("opening_float_cents", data.get("opening_float_cents")),
            note=coerce_text("note", data.get("note")),
        )

        return jsonify({"session": session.to_dict()}), 201

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to open cash session")


@cash_sessions_bp.get("/")
@cash_sessions_bp.get("")
@require_operator
def list_sessions_route():
    """
    List cash sessions.

    Query params: status, operator_id, location_id, limit
    """
    try:
        sessions = cash_session_service.list_sessions(
            status=request.args.get("status"),
            operator_id=coerce_int("operator_id", request.args.get("operator_id"), required=False),
            location_id=coerce_int("location_id", request.args.get("location_id"), required=False),
            limit=coerce_int("limit", request.args.get("limit"), required=False) or 50,
        )
        return jsonify({"sessions": [s.to_dict() for s in sessions]}), 200

    except ValidationError as e:
        return validation_response(e)


@cash_sessions_bp.get("/<int:session_id>")
@require_operator
def get_session_route(session_id: int):
    """Get a session with its current balance."""
    try:
        session = cash_session_service.get_session(session_id)
        balance = cash_session_service.compute_balance(session)
        return jsonify({"session": session.to_dict(), "balance": balance.to_dict()}), 200

    except SettlementEngineError as e:
        return error_response(e)


@cash_sessions_bp.post("/<int:session_id>/close")
@require_operator
def close_session_route(session_id: int):
    """
    Close a session with the counted drawer amount.

    Request body:
    {
        "counted_cents": 10500,
        "note": "End of shift"  (optional)
    }

    Response carries variance_cents and variance_detected; a non-zero
    variance is reported, not rejected.
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        result = cash_session_service.close_session(
            session_id=session_id,
            counted_cents=coerce_cents("counted_cents", data.get("counted_cents")),
            operator_id=g.operator_id,
            note=coerce_text("note", data.get("note")),
            manager_override=g.manager_override,
        )

        return jsonify(result.to_dict()), 200

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to close cash session")


@cash_sessions_bp.get("/<int:session_id>/summary")
@require_operator
def session_summary_route(session_id: int):
    try:
        return jsonify(reporting_service.session_summary(session_id)), 200
    except SettlementEngineError as e:
        return error_response(e)


# =============================================================================
# MOVEMENTS
# =============================================================================

@cash_sessions_bp.post("/<int:session_id>/movements")
@require_operator
def post_movement_route(session_id: int):
    """
    Post a manual movement.

    Request body:
    {
        "kind": "INCOME" | "EXPENSE",
        "amount_cents": 2000,
        "category": "supplies",  (optional)
        "note": "Paper rolls"  (optional)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        kind = coerce_text("kind", data.get("kind"))
        if not kind:
            raise ValidationError("kind is required")

        movement = cash_session_service.post_movement(
            session_id=session_id,
            kind=kind.upper(),
            amount_cents=coerce_cents("amount_cents", data.get("amount_cents")),
            posted_by=g.operator_id,
            category=coerce_text("category", data.get("category"), max_length=64),
            note=coerce_text("note", data.get("note")),
            manager_override=g.manager_override,
        )

        current_app.logger.info(
            "Movement %s posted to session %s by operator %s", movement.kind, session_id, g.operator_id
        )
        return jsonify({"movement": movement.to_dict()}), 201

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to post movement")


@cash_sessions_bp.get("/<int:session_id>/movements")
@require_operator
def list_movements_route(session_id: int):
    """
    List a session's movements in ledger order.

    Query params: kind, from, to (ISO-8601)
    """
    try:
        movements = cash_session_service.filter_movements(
            session_id,
            kind=request.args.get("kind"),
            start=coerce_datetime("from", request.args.get("from")),
            end=coerce_datetime("to", request.args.get("to")),
        )
        return jsonify({
            "movements": [m.to_dict() for m in movements],
            "totals_by_kind": cash_session_service.totals_by_kind(session_id),
        }), 200

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)
