"""
Pipeline-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from matasa.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Incident", resource_id="INC-1A2B3C4D")
    raise ValidationError("incident_type is required", details={"incident_type": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested incident, session, rule or alert does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Incident", "UssdSession").
        resource_id: The identifier that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is malformed or missing required fields.

    Surfaced immediately to the caller and never retried. Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class BusinessRuleViolation(Exception):
    """Raised when well-formed input breaks a domain rule.

    Examples: de-escalating an incident, moving a closed incident back to
    ``received``. Rejected, never retried. Maps to HTTP 409.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a concurrent writer changed the same record first.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field that identifies the contended record.
        value: The contended value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} was modified concurrently"
        super().__init__(msg)


class TransientInfrastructureError(Exception):
    """Raised when the record store, Redis or the SMS provider is unavailable.

    Callers retry with bounded backoff, then queue the work or answer with a
    degraded-but-accepted response. Maps to HTTP 503.
    """

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)
