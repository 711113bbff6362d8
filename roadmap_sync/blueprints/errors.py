"""Error handlers shared by the API blueprints.

Service exceptions map to status codes in one place:
    NotFoundError      → 404
    ValidationError    → 422
    ConflictError      → 409  (BusyError included)
    anything else      → 500
"""

from __future__ import annotations

import logging

from flask import Blueprint, request
from werkzeug.exceptions import HTTPException

from roadmap_sync.core.exceptions import BusyError, ConflictError, NotFoundError, ValidationError
from roadmap_sync.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def register_error_handlers(bp: Blueprint) -> None:
    """Attach the standard exception → JSON error mapping to ``bp``."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(BusyError)
    def _handle_busy(error: BusyError):
        return api_error(E.SYNC_BUSY, str(error), details={"workspace_id": error.workspace_id})

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_STATE, str(error))

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
