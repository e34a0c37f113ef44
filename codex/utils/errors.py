"""Standardised API error responses.

Usage
-----
    from codex.utils.errors import api_error, register_error_handlers, E

    return api_error(E.VALIDATION_REQUIRED, "name is required")
    register_error_handlers(objects_bp)
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from codex.core.exceptions import (
    ConfigurationError,
    ConflictError,
    InvalidWorkflowTransitionError,
    LinkExpiredError,
    LinkTypeMismatchError,
    NotFoundError,
    PersistenceError,
    RevertNotAllowedError,
    UniqueConstraintError,
    ValidationFailedError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Malformed request – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Field-level validation – HTTP 422
    VALIDATION_FAILED = "ERR_VALIDATION_FAILED"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_UNIQUE = "ERR_CONFLICT_UNIQUE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    WORKFLOW_TRANSITION = "ERR_WORKFLOW_TRANSITION"

    # Revert / sharing
    REVERT_NOT_ALLOWED = "ERR_REVERT_NOT_ALLOWED"
    LINK_EXPIRED = "ERR_LINK_EXPIRED"
    LINK_TYPE_MISMATCH = "ERR_LINK_TYPE_MISMATCH"

    # Server – HTTP 500
    CONFIGURATION = "ERR_CONFIGURATION"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_FAILED: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_UNIQUE: 409,
    E.CONFLICT_STATE: 409,
    E.WORKFLOW_TRANSITION: 409,
    E.REVERT_NOT_ALLOWED: 400,
    E.LINK_EXPIRED: 410,
    E.LINK_TYPE_MISMATCH: 400,
    E.CONFIGURATION: 500,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details=None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict | list, optional
        Extra structured payload (field errors, state names, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
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
    """Map the domain exception taxonomy to HTTP responses on ``bp``."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationFailedError)
    def _handle_validation(error: ValidationFailedError):
        return api_error(E.VALIDATION_FAILED, str(error), details=error.details)

    @bp.errorhandler(UniqueConstraintError)
    def _handle_unique(error: UniqueConstraintError):
        return api_error(
            E.CONFLICT_UNIQUE, str(error),
            details={"field": error.field, "value": error.value},
        )

    @bp.errorhandler(InvalidWorkflowTransitionError)
    def _handle_transition(error: InvalidWorkflowTransitionError):
        return api_error(
            E.WORKFLOW_TRANSITION, str(error),
            details={
                "current_state": error.current_state,
                "target_state": error.target_state,
            },
        )

    @bp.errorhandler(RevertNotAllowedError)
    def _handle_revert(error: RevertNotAllowedError):
        return api_error(E.REVERT_NOT_ALLOWED, str(error), details={"reason": error.reason})

    @bp.errorhandler(LinkExpiredError)
    def _handle_link_expired(error: LinkExpiredError):
        return api_error(E.LINK_EXPIRED, str(error))

    @bp.errorhandler(LinkTypeMismatchError)
    def _handle_link_type(error: LinkTypeMismatchError):
        return api_error(E.LINK_TYPE_MISMATCH, str(error))

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(ConfigurationError)
    def _handle_configuration(error: ConfigurationError):
        logger.error("Configuration error in %s: %s", request.endpoint, error)
        return api_error(E.CONFIGURATION, str(error))

    @bp.errorhandler(PersistenceError)
    def _handle_persistence(error: PersistenceError):
        return api_error(E.DATABASE, "Database error")

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in endpoint=%s", request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
