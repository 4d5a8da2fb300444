"""Standardised API error responses.

Usage
-----
    from matasa.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Incident not found")
    return api_error(E.VALIDATION_INVALID, "Invalid incident report", details=errors)
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Machine-readable error code constants."""

    # Validation: HTTP 400 (malformed) / 422 (semantic)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    MALFORMED_REQUEST = "ERR_MALFORMED_REQUEST"

    # Not-found: HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict: HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_CONCURRENT = "ERR_CONFLICT_CONCURRENT"

    RATE_LIMITED = "ERR_RATE_LIMITED"
    METHOD_NOT_ALLOWED = "ERR_METHOD_NOT_ALLOWED"

    # Server: HTTP 5xx
    UNAVAILABLE = "ERR_UNAVAILABLE"
    INTERNAL = "ERR_INTERNAL"


_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 422,
    E.VALIDATION_INVALID: 422,
    E.MALFORMED_REQUEST: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_CONCURRENT: 409,
    E.RATE_LIMITED: 429,
    E.METHOD_NOT_ALLOWED: 405,
    E.UNAVAILABLE: 503,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation.
    status : int, optional
        HTTP status override. Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Field-level validation errors or other structured payload.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)``, a drop-in for Flask views.
    """
    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
