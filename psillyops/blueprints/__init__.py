"""
PsillyOps Production
Blueprint registry and shared view helpers.
"""

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from psillyops.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from psillyops.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def json_body():
    """Return ``(payload, None)`` for a JSON object body, else ``(None, 400 response)``.

    An empty body is treated as ``{}``.
    """
    if not request.get_data(cache=True):
        return {}, None
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_REQUIRED, "Request body must be a JSON object")
    return data, None


def register_service_error_handlers(bp):
    """Map service exceptions to HTTP responses for every view in ``bp``."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(ForbiddenError)
    def _handle_forbidden(error: ForbiddenError):
        details = {"action": error.action} if error.action else None
        return api_error(E.FORBIDDEN, str(error), details=details)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return jsonify({"error": error.description, "code": f"HTTP_{error.code}"}), error.code
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
