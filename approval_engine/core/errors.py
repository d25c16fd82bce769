"""
Error taxonomy for the approval engine.

Callers distinguish retryable failures (a lost conditional write) from
non-retryable ones through the ``retryable`` flag.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False
    code: str = "WORKFLOW_ERROR"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(WorkflowError):
    """A template, instance, or step execution does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}", entity=entity, id=str(entity_id))


@dataclass
class ValidationIssue:
    """Represents a single validation failure."""

    code: str
    message: str
    step_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


class ValidationError(WorkflowError):
    """Malformed input, e.g. a template with no steps or duplicate orders."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, issues: Optional[list[ValidationIssue]] = None):
        self.issues = issues or []
        super().__init__(
            message,
            issues=[{"code": i.code, "message": i.message, "step_id": i.step_id} for i in self.issues],
        )


class InvalidStateError(WorkflowError):
    """The target record is not in a state that allows the operation."""

    code = "INVALID_STATE"


class ConcurrencyConflictError(WorkflowError):
    """A conditional write lost a race against another writer."""

    code = "CONCURRENCY_CONFLICT"
    retryable = True
