# Overview: Flask API routes for settlements and tenders; parses input and returns JSON responses.

# backend/possettle/routes/settlements.py
"""
Settlement API Routes

WHY: Collect payment for a sale across one or more tenders, then hand the
fiscal emitter a receipt once every tender is confirmed.

DESIGN:
- Begin a settlement inside the operator's OPEN cash session
- Add tenders (split payments); cash and card settle immediately
- Wire and QR tenders wait for verify/fail (manual) or confirm (gateway)
- Void tenders for mistake correction, abandon the whole sale
- Finalize posts the sale to the cash ledger and returns the receipt token

TENDER DETAILS:
- CASH: {"received_note": "..."}  (optional)
- CARD: {"card_type": "DEBIT"|"CREDIT", "terminal": "MANUAL"|"POSNET"|"GETNET"|"MERCADOPAGO",
         "installments": 1, "last_four": "4242", "authorization_code": "..."}
- WIRE_TRANSFER: {"receipt_reference": "...", "bank_id": "..."}
- QR_PAYMENT: {"provider_transaction_id": "...", "provider": "MERCADOPAGO"}
"""

import asyncio

from flask import Blueprint, request, jsonify, g, current_app

from ..services import settlement_service
from ..services.coordinator_service import get_coordinator
from ..services.errors import SettlementEngineError, NotFound
from ..decorators import require_operator
from ..responses import error_response, validation_response, internal_error
from ..validation import (
    ValidationError,
    coerce_int,
    coerce_cents,
    coerce_text,
    require_json_object,
)


settlements_bp = Blueprint("settlements", __name__, url_prefix="/api/settlements")


def _tender_in_settlement(settlement_id: int, tender_id: int):
    tender = settlement_service.get_tender(tender_id)
    if tender.settlement_id != settlement_id:
        raise NotFound(f"Tender {tender_id} not found in settlement {settlement_id}")
    return tender


def _settlement_body(settlement_id: int) -> dict:
    return {"settlement": settlement_service.get_settlement(settlement_id).to_dict()}


# =============================================================================
# SETTLEMENT LIFECYCLE
# =============================================================================

@settlements_bp.post("/")
@settlements_bp.post("")
@require_operator
def begin_sale_route():
    """
    Begin collecting payment for a sale.

    Request body:
    {
        "cash_session_id": 5,
        "target_cents": 10000
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        settlement = get_coordinator().begin_sale(
            target_cents=coerce_cents("target_cents", data.get("target_cents")),
            cash_session_id=coerce_int("cash_session_id", data.get("cash_session_id")),
            operator_id=g.operator_id,
        )

        return jsonify({"settlement": settlement.to_dict()}), 201

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to begin settlement")


@settlements_bp.get("/<int:settlement_id>")
@require_operator
def get_settlement_route(settlement_id: int):
    """Settlement with tenders and derived totals."""
    try:
        return jsonify(_settlement_body(settlement_id)), 200
    except SettlementEngineError as e:
        return error_response(e)


@settlements_bp.post("/<int:settlement_id>/abandon")
@require_operator
def abandon_route(settlement_id: int):
    """
    Abandon a sale before it settles. Nothing is posted to the cash ledger.

    Request body: {"reason": "Customer left"}  (optional)
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        settlement = settlement_service.abandon(
            settlement_id,
            operator_id=g.operator_id,
            reason=coerce_text("reason", data.get("reason")),
            manager_override=g.manager_override,
        )
        return jsonify({"settlement": settlement.to_dict()}), 200

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to abandon settlement")


@settlements_bp.post("/<int:settlement_id>/finalize")
@require_operator
def finalize_route(settlement_id: int):
    """
    Post a settled sale to its cash session and return the receipt.

    Response:
    {
        "receipt": {"token": "...", "tenders": [...], "change_due_cents": 500, ...}
    }
    """
    try:
        receipt = get_coordinator().finalize(
            settlement_id, operator_id=g.operator_id, manager_override=g.manager_override
        )
        current_app.logger.info(
            "Settlement %s finalized by operator %s (receipt %s)",
            settlement_id, g.operator_id, receipt.token,
        )
        return jsonify({"receipt": receipt.to_dict()}), 200

    except SettlementEngineError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to finalize settlement")


# =============================================================================
# TENDERS
# =============================================================================

@settlements_bp.post("/<int:settlement_id>/tenders")
@require_operator
def add_tender_route(settlement_id: int):
    """
    Add a tender to a settlement.

    Request body:
    {
        "kind": "CASH" | "CARD" | "WIRE_TRANSFER" | "QR_PAYMENT",
        "amount_cents": 5000,
        "details": {...}  (kind specific, see module docstring)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        kind = coerce_text("kind", data.get("kind"))
        if not kind:
            raise ValidationError("kind is required")
        details = data.get("details")
        if details is not None and not isinstance(details, dict):
            raise ValidationError("details must be a JSON object")

        tender = settlement_service.add_tender(
            settlement_id,
            kind=kind.upper(),
            amount_cents=coerce_cents("amount_cents", data.get("amount_cents")),
            operator_id=g.operator_id,
            details=details,
            manager_override=g.manager_override,
        )

        body = _settlement_body(settlement_id)
        body["tender"] = tender.to_dict()
        return jsonify(body), 201

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to add tender")


@settlements_bp.post("/<int:settlement_id>/tenders/<int:tender_id>/verify")
@require_operator
def verify_tender_route(settlement_id: int, tender_id: int):
    """
    Operator confirms a wire transfer or QR payment was received.

    Request body: {"note": "Seen in bank statement"}  (optional)
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        _tender_in_settlement(settlement_id, tender_id)
        tender = settlement_service.mark_verified(
            tender_id,
            g.operator_id,
            note=coerce_text("note", data.get("note")),
            manager_override=g.manager_override,
        )
        body = _settlement_body(settlement_id)
        body["tender"] = tender.to_dict()
        return jsonify(body), 200

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to verify tender")


@settlements_bp.post("/<int:settlement_id>/tenders/<int:tender_id>/fail")
@require_operator
def fail_tender_route(settlement_id: int, tender_id: int):
    """Operator records that funds for a tender never arrived."""
    try:
        data = require_json_object(request.get_json(silent=True))
        _tender_in_settlement(settlement_id, tender_id)
        tender = settlement_service.mark_failed(
            tender_id,
            g.operator_id,
            note=coerce_text("note", data.get("note")),
            manager_override=g.manager_override,
        )
        body = _settlement_body(settlement_id)
        body["tender"] = tender.to_dict()
        return jsonify(body), 200

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to fail tender")


@settlements_bp.post("/<int:settlement_id>/tenders/<int:tender_id>/void")
@require_operator
def void_tender_route(settlement_id: int, tender_id: int):
    """
    Void a tender (mistake correction or failed transfer).

    Request body: {"reason": "Wrong amount"}  (optional)
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        _tender_in_settlement(settlement_id, tender_id)
        tender = settlement_service.void_tender(
            tender_id,
            g.operator_id,
            reason=coerce_text("reason", data.get("reason")),
            manager_override=g.manager_override,
        )
        body = _settlement_body(settlement_id)
        body["tender"] = tender.to_dict()
        return jsonify(body), 200

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to void tender")


@settlements_bp.post("/<int:settlement_id>/tenders/<int:tender_id>/confirm")
@require_operator
def confirm_tender_route(settlement_id: int, tender_id: int):
    """
    Ask the verification gateway about a wire transfer or QR tender.

    Request body: {"fail_on_not_found": true}  (optional, default true)

    Outcomes: CONFIRMED (verified), NOT_FOUND (failed), PENDING (unchanged).
    A timeout answers 504 and an unreachable gateway 503; the tender stays
    UNVERIFIED in both cases.

    The gateway coroutine runs on its own event loop via asyncio.run, so this
    view must be served by a sync WSGI worker (gunicorn sync/gthread, the
    Flask dev server). Under a server whose request thread already runs an
    event loop, asyncio.run raises RuntimeError and the route answers 500.
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        fail_on_not_found = data.get("fail_on_not_found", True)
        if not isinstance(fail_on_not_found, bool):
            raise ValidationError("fail_on_not_found must be a boolean")

        _tender_in_settlement(settlement_id, tender_id)

        outcome = asyncio.run(
            get_coordinator().confirm_async(
                tender_id,
                g.operator_id,
                fail_on_not_found=fail_on_not_found,
                manager_override=g.manager_override,
            )
        )

        body = _settlement_body(settlement_id)
        body["outcome"] = outcome.to_dict()
        return jsonify(body), 200

    except ValidationError as e:
        return validation_response(e)
    except SettlementEngineError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to confirm tender")
