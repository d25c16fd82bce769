"""Core domain models and business logic."""

from approval_engine.core.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from approval_engine.core.models import (
    AssigneeType,
    PendingTask,
    StepContext,
    StepKind,
    SweepReport,
    TemplateDefinition,
    TriggerEvent,
    TriggerKind,
    WorkflowInstance,
    WorkflowStep,
    WorkflowStepExecution,
    WorkflowTemplate,
)
from approval_engine.core.state_machine import (
    Decision,
    InstanceStateMachine,
    InstanceStatus,
    StepStateMachine,
    StepStatus,
)

__all__ = [
    "ConcurrencyConflictError",
    "InvalidStateError",
    "NotFoundError",
    "ValidationError",
    "WorkflowError",
    "AssigneeType",
    "PendingTask",
    "StepContext",
    "StepKind",
    "SweepReport",
    "TemplateDefinition",
    "TriggerEvent",
    "TriggerKind",
    "WorkflowInstance",
    "WorkflowStep",
    "WorkflowStepExecution",
    "WorkflowTemplate",
    "Decision",
    "InstanceStateMachine",
    "InstanceStatus",
    "StepStateMachine",
    "StepStatus",
]
