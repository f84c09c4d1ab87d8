"""
Platform-wide exception hierarchy.

Every service raises one of these types, so callers (and whatever outer
layer eventually maps them to responses) handle a single taxonomy:

    NOT_FOUND      NotFoundError      missing SOP / observation / pending item / record
    INVALID_STATE  InvalidStateError  acting on an entity in the wrong lifecycle state
    VALIDATION     ValidationError    well-formed input that violates a business rule
    DUPLICATE      ConflictError      unique-value collision

Usage:
    from fieldlabs.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Sop", resource_id=sop_id)
    raise ValidationError("title is required", details={"title": "required"})
"""


class FieldLabsError(Exception):
    """Base class; ``code`` is the machine-readable error identifier."""

    code = "ERR_INTERNAL"


class NotFoundError(FieldLabsError):
    """Raised when a requested entity does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Sop", "PendingBatchObservation").
        resource_id: The key that was looked up. Always part of the message.
    """

    code = "ERR_NOT_FOUND"

    def __init__(self, resource: str, resource_id: str | int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class InvalidStateError(FieldLabsError):
    """Raised when an action is not allowed from the entity's current status.

    Args:
        resource: Entity name.
        resource_id: Entity key.
        current: The status the entity is in.
        action: What the caller tried to do.
        reason: Optional extra explanation.
    """

    code = "ERR_CONFLICT_STATE"

    def __init__(
        self,
        resource: str,
        resource_id: str | int | None,
        current: str | None,
        action: str,
        reason: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.current_status = current
        self.action = action
        self.reason = reason
        msg = f"Cannot '{action}' {resource} {resource_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ValidationError(FieldLabsError):
    """Raised when input fails business-rule validation in the service layer.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    code = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(FieldLabsError):
    """Raised when an operation would duplicate a unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    code = "ERR_CONFLICT_DUPLICATE"

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")
