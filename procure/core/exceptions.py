"""
Core exception hierarchy.

Services raise these types; the application factory registers one handler
per type so every blueprint gets consistent HTTP status codes.

Usage:
    from procure.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="WorkflowDefinition", resource_id=42)
    raise ValidationError("Level numbers must be sequential", details={"levels": [1, 3]})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist (or is removed).

    Maps to HTTP 404.

    Args:
        resource: Human-readable model/entity name (e.g. "Role", "WorkflowInstance").
        resource_id: The key that was looked up. Included in logs and message.
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

    Definition-time structural errors (level gaps, bad role names, inheritance
    cycles, unparseable conditions) all surface as this type and abort the
    write before anything is persisted.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised on a uniqueness clash or a lost optimistic-concurrency race.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field that conflicts (``version`` for concurrency clashes).
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value=None, message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = message or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class WorkflowStateError(Exception):
    """Raised when a workflow instance transition or mutation is not allowed.

    Covers actions on terminal instances, acting on a level other than the
    current one, and recall when the definition forbids it.

    Maps to HTTP 409.
    """

    def __init__(self, instance_id, status: str, action: str, reason: str | None = None) -> None:
        msg = f"Cannot '{action}' workflow instance {instance_id} (status={status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.instance_id = instance_id
        self.status = status
        self.action = action
        self.reason = reason


class AuthorizationError(Exception):
    """Raised when a principal may not act on a workflow instance.

    Maps to HTTP 403.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)
