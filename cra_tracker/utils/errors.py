"""Standardised API error responses.

Usage
-----
    from cra_tracker.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Request not found")
    return api_error(E.ROLE_NOT_PERMITTED, str(exc), details=exc.details)
"""

from __future__ import annotations

from flask import jsonify

from cra_tracker.core import exceptions as exc


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for generic application errors
     • bare upper-case names for workflow errors (shared with the SPA)
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Authentication – HTTP 401
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # Workflow
    ROLE_NOT_PERMITTED = exc.ROLE_NOT_PERMITTED
    INVALID_TRANSITION = exc.INVALID_TRANSITION
    MISSING_REQUIRED_FIELD = exc.MISSING_REQUIRED_FIELD
    PERSISTENCE_FAILURE = exc.PERSISTENCE_FAILURE


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.UNAUTHENTICATED: 401,
    E.NOT_FOUND: 404,
    E.FORBIDDEN: 403,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.ROLE_NOT_PERMITTED: 403,
    E.INVALID_TRANSITION: 409,
    E.MISSING_REQUIRED_FIELD: 422,
    E.PERSISTENCE_FAILURE: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """
    Build the JSON error body every endpoint returns.

    ``status`` wins when given, else the code's default status, else 400.
    ``details`` carries structured context such as the missing fields or
    the request's current status.  Returns ``(response, status)``.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp):
    """Translate service-layer exceptions into api_error responses for *bp*."""

    @bp.errorhandler(exc.NotFoundError)
    def _not_found(e):
        return api_error(E.NOT_FOUND, str(e))

    @bp.errorhandler(exc.ValidationError)
    def _invalid(e):
        return api_error(E.VALIDATION_INVALID, str(e), details=e.details)

    @bp.errorhandler(exc.WorkflowError)
    def _workflow(e):
        return api_error(e.code, str(e), details=e.details)

    return bp
