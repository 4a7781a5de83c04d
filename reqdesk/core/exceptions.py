"""
Service-wide exception hierarchy.

Services raise these types; the application registers one error handler
per type in ``reqdesk/__init__.py`` so every blueprint answers with the
same status code and body shape.

Usage:
    from reqdesk.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ItemRequest", resource_id=42)
    raise ValidationError("purpose is required", details={"purpose": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Also raised when the caller may not see the resource, so a 404 does not
    confirm that the id exists.

    Maps to HTTP 404.
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
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names,
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class WorkflowMisconfigured(Exception):
    """Raised when a required workflow step has no resolvable approver.

    The triggering transaction is rolled back; a draft stays a draft.

    Maps to HTTP 422.
    """

    def __init__(self, message: str, step_order: int | None = None, step_name: str | None = None) -> None:
        self.step_order = step_order
        self.step_name = step_name
        super().__init__(message)


class NoWorkflowConfigured(Exception):
    """Raised by the workflow resolver when a form type has no active workflow.

    Callers fall back to the built-in approval chain; never surfaced over HTTP.
    """

    def __init__(self, form_type: str) -> None:
        self.form_type = form_type
        super().__init__(f"No active workflow configured for {form_type}")


class AuthenticationRequired(Exception):
    """Raised when an endpoint needs an identity and none was presented.

    Maps to HTTP 401.
    """

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class PermissionDenied(Exception):
    """Raised when the acting user may not perform an action.

    No state is changed. Maps to HTTP 403.
    """

    def __init__(self, message: str, user_id: int | None = None, action: str | None = None) -> None:
        self.user_id = user_id
        self.action = action
        super().__init__(message)


class AlreadyResolved(Exception):
    """Raised when another actor resolved the record (or request) first.

    Optimistic-concurrency conflict; the caller should refetch.
    Maps to HTTP 409.
    """

    def __init__(self, message: str = "This request was already acted upon; refresh and try again") -> None:
        super().__init__(message)


class InvalidTransition(Exception):
    """Raised when an action is not allowed from the request's current status.

    Maps to HTTP 409.
    """

    def __init__(self, action: str, current_status: str, reason: str | None = None) -> None:
        self.action = action
        self.current_status = current_status
        msg = f"Cannot '{action}' a request in status '{current_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness rule.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")
