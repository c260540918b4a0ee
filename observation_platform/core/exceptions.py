"""
Platform-wide exception hierarchy.

Services raise these types and nothing else for business failures.
Blueprints register handlers against them once (see
``observation_platform.blueprints.register_error_handlers``) and get
consistent HTTP status codes everywhere.

Usage:
    from observation_platform.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="ObservationSession", resource_id=session_id)
    raise InvalidTransitionError("completed", "draft")
"""


class NotFoundError(Exception):
    """Raised when a requested session, indicator, signature or user does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "ObservationSession").
        resource_id: The PK that was looked up.
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
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidResponseError(ValidationError):
    """Raised when a single indicator response fails its rubric rules."""

    def __init__(self, indicator_number: str, message: str) -> None:
        self.indicator_number = indicator_number
        super().__init__(message, details={"indicator_number": indicator_number})


class IncompleteSessionError(ValidationError):
    """Raised when the completion gate refuses a status change.

    Carries every blocking reason, never just the first one.
    """

    def __init__(self, errors: list[str], missing_indicators: list[str] | None = None) -> None:
        self.errors = list(errors)
        self.missing_indicators = list(missing_indicators or [])
        super().__init__(
            "Session is not ready: " + "; ".join(self.errors),
            details={"errors": self.errors, "missing_indicators": self.missing_indicators},
        )


class InvalidTransitionError(Exception):
    """Raised when a status change is not an edge of the session state machine."""

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition from '{from_status}' to '{to_status}'")


class ForbiddenError(Exception):
    """Raised when the actor lacks the role or ownership required for an action."""

    def __init__(self, message: str, role: str | None = None) -> None:
        self.role = role
        super().__init__(message)


class UnauthorizedError(ForbiddenError):
    """Raised when the actor's role is not in a transition's allow-list."""


class InvalidRequestError(Exception):
    """Raised for a malformed approval request (unknown action, missing delegate...)."""


class SessionLockedError(Exception):
    """Raised when a write hits a session that is completed or approved."""

    def __init__(self, session_id: str, status: str, operation: str = "modify") -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(f"Cannot {operation} session {session_id}: status is '{status}'")


class ConflictError(Exception):
    """Raised on duplicate unique values or a lost optimistic-lock race.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique (or version) field in conflict.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        if field == "version":
            msg = f"{resource} {value} was modified concurrently; reload and retry"
        super().__init__(msg)
