# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .validation import coerce_int, ValidationError


OPERATOR_HEADER = "X-Operator-Id"
MANAGER_OVERRIDE_HEADER = "X-Manager-Override"


def require_operator(f):
    """
    Require an operator identity and store it in Flask g.

    Sets:
    - g.operator_id: Operator performing the request
    - g.manager_override: True when a manager approved acting on another
      operator's session

    Authentication itself happens upstream; returns 401 if the header is
    missing or not a positive integer.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get(OPERATOR_HEADER)
        if not raw:
            return jsonify({"error": "Operator identity required", "kind": "Unauthorized"}), 401

        try:
            operator_id = coerce_int(OPERATOR_HEADER, raw)
        except ValidationError:
            operator_id = None
        if not operator_id or operator_id <= 0:
            return jsonify({"error": "Invalid operator identity", "kind": "Unauthorized"}), 401

        g.operator_id = operator_id
        g.manager_override = request.headers.get(MANAGER_OVERRIDE_HEADER, "").lower() in ("1", "true", "yes")

        return f(*args, **kwargs)

    return decorated_function
