"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Workflow error codes (machine-readable, part of the API contract):
    ROLE_NOT_PERMITTED      actor's role cannot move the request from its current status
    INVALID_TRANSITION      no rule connects the current status to the requested one
    MISSING_REQUIRED_FIELD  transition allowed but a side-effect field is missing
    PERSISTENCE_FAILURE     the datastore commit failed (rolled back, not retried)
    NOTIFY_FAILURE          notification enqueue failed; reported as a warning only

Usage:
    from cra_tracker.core.exceptions import NotFoundError, TransitionDeniedError

    raise NotFoundError(resource="Request", resource_id="CRA25010101")
"""

ROLE_NOT_PERMITTED = "ROLE_NOT_PERMITTED"
INVALID_TRANSITION = "INVALID_TRANSITION"
MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
NOTIFY_FAILURE = "NOTIFY_FAILURE"


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Request").
        resource_id: The key that was looked up.
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
    """Raised when input is well-formed JSON but carries unusable values.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class WorkflowError(Exception):
    """Base class for errors raised by the request status workflow."""

    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict | None = None) -> None:
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(message)


class TransitionDeniedError(WorkflowError):
    """Raised when the authorizer denies a transition.

    ``code`` is ROLE_NOT_PERMITTED or INVALID_TRANSITION.
    """

    def __init__(self, request_id: str | None, current: str, requested: str, role: str, reason: str) -> None:
        msg = f"Cannot move request {request_id or '?'} from '{current}' to '{requested}' as {role}"
        super().__init__(
            msg,
            code=reason,
            details={"current_status": current, "requested_status": requested, "role": role},
        )
        self.request_id = request_id
        self.current_status = current
        self.requested_status = requested
        self.role = role


class MissingRequiredFieldError(WorkflowError):
    """Raised when a transition's side effects need a field the caller did not send."""

    code = MISSING_REQUIRED_FIELD

    def __init__(self, target: str, missing: list[str]) -> None:
        super().__init__(
            f"Transition to '{target}' requires: {', '.join(missing)}",
            details={"target_status": target, "missing_fields": list(missing)},
        )
        self.target = target
        self.missing = list(missing)


class PersistenceError(WorkflowError):
    """Raised when the datastore commit fails. The session is already rolled back."""

    code = PERSISTENCE_FAILURE
