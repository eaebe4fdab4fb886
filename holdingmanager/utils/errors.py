"""Standardised API error responses.

Usage
-----
    from holdingmanager.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Workflow instance not found")
    return api_error(E.VALIDATION_REQUIRED, "type is required")
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from holdingmanager.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 (malformed) / 422 (business rule)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Identity / permissions
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_CONCURRENT = "ERR_CONFLICT_CONCURRENT"

    # Server
    STORE_UNAVAILABLE = "ERR_STORE_UNAVAILABLE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_CONCURRENT: 409,
    E.STORE_UNAVAILABLE: 503,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
    retryable: bool | None = None,
):
    """``(jsonify({"error", "code", ...}), status)`` for a view to return.

    The status defaults from the code; ``details`` carries field errors or
    the re-read state of a workflow after a lost race.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details
    if retryable is not None:
        body["retryable"] = retryable

    return jsonify(body), http_status


def register_domain_error_handlers(blueprint) -> None:
    """Map the workflow/alert exception hierarchy onto a blueprint."""

    @blueprint.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @blueprint.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @blueprint.errorhandler(ForbiddenError)
    def _handle_forbidden(error: ForbiddenError):
        return api_error(E.FORBIDDEN, str(error))

    @blueprint.errorhandler(InvalidTransitionError)
    def _handle_transition(error: InvalidTransitionError):
        return api_error(E.CONFLICT_STATE, str(error), retryable=False)

    @blueprint.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        details = {"current": error.current_state} if error.current_state else None
        return api_error(E.CONFLICT_CONCURRENT, str(error), details=details, retryable=True)

    @blueprint.errorhandler(StoreUnavailableError)
    def _handle_store(error: StoreUnavailableError):
        return api_error(E.STORE_UNAVAILABLE, "Store temporarily unavailable", retryable=True)

    @blueprint.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", blueprint.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
