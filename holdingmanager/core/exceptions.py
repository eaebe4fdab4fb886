"""
Workflow and alert exception hierarchy.

Services raise these types; blueprints map them to HTTP responses once
(see ``holdingmanager.utils.errors.register_domain_error_handlers``).

Caller errors (never retried automatically):
    ForbiddenError, InvalidTransitionError, InvalidPayloadError,
    UnknownWorkflowTypeError, InstanceNotFoundError

Retryable after re-reading state:
    ConflictError (incl. DuplicateStepDecisionError, StepOutOfSequenceError),
    StoreUnavailableError

Usage:
    from holdingmanager.core.exceptions import InstanceNotFoundError

    raise InstanceNotFoundError(42)
    raise InvalidPayloadError("Invalid payload", details={"title": "title is required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "WorkflowInstance", "Alert").
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


class InstanceNotFoundError(NotFoundError):
    def __init__(self, instance_id: int) -> None:
        super().__init__("WorkflowInstance", instance_id)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown, keyed by field name.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidPayloadError(ValidationError):
    """Missing or invalid required fields."""


class UnknownWorkflowTypeError(ValidationError):
    def __init__(self, workflow_type: str) -> None:
        self.workflow_type = workflow_type
        super().__init__(
            f"Unknown workflow type: {workflow_type!r}",
            details={"type": "not a registered workflow type"},
        )


class InvalidTransitionError(Exception):
    """Raised when a lifecycle action is not allowed from the current status."""

    def __init__(self, numero: str, action: str, current: str, reason: str | None = None) -> None:
        msg = f"Cannot '{action}' request {numero} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.numero = numero
        self.action = action
        self.current_status = current


class ForbiddenError(Exception):
    """Raised when the caller's role does not grant the action."""

    def __init__(self, user_id: str | None, action: str, required_role: str | None = None) -> None:
        msg = f"User {user_id} is not allowed to {action}"
        if required_role:
            msg += f" (requires role '{required_role}' or higher)"
        super().__init__(msg)
        self.user_id = user_id
        self.action = action
        self.required_role = required_role


class ConflictError(Exception):
    """Raised when state changed concurrently; safe to retry after a re-read.

    ``current_state`` carries the re-read instance (as a dict) when the
    lifecycle service could load it, so callers can refresh their view.
    """

    retryable = True

    def __init__(self, message: str, *, resource: str | None = None,
                 resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.current_state: dict | None = None
        super().__init__(message)


class DuplicateStepDecisionError(ConflictError):
    """A decision already exists for this (instance, step ordinal)."""

    def __init__(self, instance_id: int, step_ordinal: int) -> None:
        self.step_ordinal = step_ordinal
        super().__init__(
            f"Step {step_ordinal} of workflow instance {instance_id} has already been decided",
            resource="WorkflowInstance",
            resource_id=instance_id,
        )


class StepOutOfSequenceError(ConflictError):
    """The decided ordinal is not the instance's current step."""

    def __init__(self, instance_id: int, step_ordinal: int, current_step: int) -> None:
        self.step_ordinal = step_ordinal
        self.current_step = current_step
        super().__init__(
            f"Step {step_ordinal} is not the current step ({current_step}) "
            f"of workflow instance {instance_id}",
            resource="WorkflowInstance",
            resource_id=instance_id,
        )


class StoreUnavailableError(Exception):
    """Transient failure of the backing store (connection, lock timeout)."""

    retryable = True
