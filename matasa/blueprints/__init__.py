"""
Matasa incident pipeline
Blueprint registry and shared request helpers.
"""

import logging

from flask import request
from werkzeug.exceptions import BadRequest

from matasa.core.exceptions import (
    BusinessRuleViolation,
    ConflictError,
    NotFoundError,
    TransientInfrastructureError,
    ValidationError,
)
from matasa.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def json_body() -> dict:
    """Parsed JSON object from the request; {} for an empty body.

    Raises:
        BadRequest: body present but not valid JSON (answered 400).
        ValidationError: valid JSON that is not an object.
    """
    if not request.get_data(cache=True):
        return {}
    data = request.get_json(silent=True)
    if data is None:
        raise BadRequest("Request body is not valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", details={name: "invalid"})


def register_error_handlers(bp) -> None:
    """Map the domain exception hierarchy onto JSON error responses."""

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(BadRequest)
    def _handle_bad_request(error: BadRequest):
        return api_error(E.MALFORMED_REQUEST, error.description or "Malformed request")

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(BusinessRuleViolation)
    def _handle_business_rule(error: BusinessRuleViolation):
        return api_error(E.CONFLICT_STATE, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_CONCURRENT, str(error))

    @bp.errorhandler(TransientInfrastructureError)
    def _handle_transient(error: TransientInfrastructureError):
        response, status = api_error(E.UNAVAILABLE, str(error))
        if error.retry_after:
            response.headers["Retry-After"] = str(error.retry_after)
        return response, status
