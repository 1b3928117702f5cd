# Overview: Maps domain errors to explicit JSON results for the API routes.

from flask import jsonify, current_app

from .services.errors import SettlementEngineError, LedgerCorruption
from .validation import ValidationError


STATUS_BY_KIND = {
    "InvalidAmount": 400,
    "InvalidInstrumentDetails": 422,
    "OverCollection": 422,
    "InvalidStateTransition": 409,
    "SessionClosed": 409,
    "SessionNotOpen": 409,
    "SessionAlreadyOpen": 409,
    "NoOpenSession": 409,
    "NotSessionOwner": 403,
    "NotFound": 404,
    "GatewayUnavailable": 503,
    "GatewayTimeout": 504,
    "LedgerCorruption": 500,
}


def error_response(exc: SettlementEngineError):
    if isinstance(exc, LedgerCorruption):
        current_app.logger.error("Ledger corruption detected: %s", exc)
    return jsonify(exc.to_dict()), STATUS_BY_KIND.get(exc.kind, 400)


def validation_response(exc: ValidationError):
    return jsonify({"error": str(exc), "kind": "ValidationError"}), 400


def internal_error(message: str):
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error", "kind": "InternalError"}), 500
