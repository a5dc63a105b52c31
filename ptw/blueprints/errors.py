"""
Blueprint error handlers.

Every API blueprint registers the same mapping from service exceptions to
JSON error bodies ``{error, code, details}``.
"""

import logging

from flask import request
from werkzeug.exceptions import HTTPException

from ptw.core.exceptions import ConflictError, NotFoundError, PermitWorkflowError, ValidationError
from ptw.models import db
from ptw.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def register_error_handlers(bp):
    """Attach the service-exception handlers to ``bp``."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        logger.debug("Not found: %s", error)
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        db.session.rollback()
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})

    @bp.errorhandler(PermitWorkflowError)
    def _handle_workflow(error: PermitWorkflowError):
        logger.info("Permit workflow refused on %s: %s", request.endpoint, error,
                    extra={"event_type": error.code})
        return api_error(error.code, str(error), status=error.http_status, details=error.details)

    @bp.errorhandler(HTTPException)
    def _handle_http(error: HTTPException):
        return api_error(E.VALIDATION_INVALID if error.code < 500 else E.INTERNAL,
                         error.description or error.name, status=error.code)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        db.session.rollback()
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    return bp
