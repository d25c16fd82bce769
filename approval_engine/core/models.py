"""
Domain models for the approval engine.

All models use Pydantic for validation and serialization with full Python 3.10+ type hints.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from approval_engine.core.state_machine import (
    Decision,
    InstanceStateMachine,
    InstanceStatus,
    StepStatus,
)


class StepKind(str, Enum):
    """What a step asks of its assignee."""

    APPROVAL = "approval"
    REVIEW = "review"
    NOTIFICATION = "notification"
    ACTION = "action"


class AssigneeType(str, Enum):
    """Kind of entity responsible for a step."""

    USER = "user"
    ROLE = "role"
    DEPARTMENT = "department"
    SYSTEM = "system"


class TriggerKind(str, Enum):
    """Subject events that start workflows."""

    CREATE = "create"
    UPDATE = "update"
    REVIEW = "review"
    EXPIRY = "expiry"
    MANUAL = "manual"


class WorkflowStep(BaseModel):
    """A single step of a template. Immutable once the template is in use."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        default_factory=lambda: uuid4().hex,
        min_length=1,
        max_length=255,
        description="Step identifier, unique within its template",
    )
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None)
    kind: StepKind = Field(default=StepKind.APPROVAL)
    assignee_type: AssigneeType = Field(default=AssigneeType.USER)
    assignee_id: str = Field(default="", max_length=255, description="Resolved by the registry")
    order: int = Field(..., ge=1, description="Position in the template; unique")
    required: bool = Field(default=True, description="Required steps are never skipped on timeout")
    timeout_hours: Optional[float] = Field(default=None, gt=0)
    auto_approve: bool = Field(default=False)
    conditions: Optional[dict[str, Any]] = Field(
        default=None,
        description="Auto-approval condition; None means unconditional",
    )

    @property
    def timeout(self) -> Optional[timedelta]:
        """Step timeout as a timedelta, if declared."""
        if self.timeout_hours is None:
            return None
        return timedelta(hours=self.timeout_hours)


class TemplateDefinition(BaseModel):
    """Input for creating or replacing a template."""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None)
    trigger: TriggerKind = Field(default=TriggerKind.MANUAL)
    subject_category: Optional[str] = Field(default=None, max_length=255)
    subject_type: Optional[str] = Field(default=None, max_length=255)
    steps: list[WorkflowStep] = Field(default_factory=list)
    is_active: bool = Field(default=True)
    created_by: str = Field(default="system", min_length=1, max_length=255)


class WorkflowTemplate(BaseModel):
    """Reusable, ordered definition of approval/review steps."""

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None)
    trigger: TriggerKind = Field(...)
    subject_category: Optional[str] = Field(default=None)
    subject_type: Optional[str] = Field(default=None)
    steps: list[WorkflowStep] = Field(..., min_length=1)
    is_active: bool = Field(default=True)
    created_by: str = Field(...)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("steps")
    @classmethod
    def validate_step_order(cls, v: list[WorkflowStep]) -> list[WorkflowStep]:
        """Ensure step orders are unique and keep steps sorted by order."""
        orders = [step.order for step in v]
        if len(orders) != len(set(orders)):
            duplicates = {x for x in orders if orders.count(x) > 1}
            raise ValueError(f"Duplicate step orders found: {duplicates}")
        return sorted(v, key=lambda step: step.order)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        """Get step by ID."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def matches(
        self,
        trigger: TriggerKind,
        subject_category: Optional[str] = None,
        subject_type: Optional[str] = None,
    ) -> bool:
        """Check whether this template applies to a trigger event."""
        if not self.is_active or self.trigger != TriggerKind(trigger):
            return False
        if self.subject_category is not None and self.subject_category != subject_category:
            return False
        if self.subject_type is not None and self.subject_type != subject_type:
            return False
        return True


class WorkflowInstance(BaseModel):
    """One running execution of a template bound to a subject."""

    id: UUID = Field(default_factory=uuid4)
    template_id: UUID = Field(...)
    subject_id: str = Field(..., min_length=1)
    status: InstanceStatus = Field(default=InstanceStatus.PENDING)
    current_step_execution_id: Optional[UUID] = Field(default=None)
    initiated_by: str = Field(...)
    initiated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = Field(default=None)
    cancellation_reason: Optional[str] = Field(default=None)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """COMPLETED and CANCELLED instances never change again."""
        return InstanceStateMachine.is_terminal(self.status)


class WorkflowStepExecution(BaseModel):
    """Runtime record tracking one template step within an instance."""

    id: UUID = Field(default_factory=uuid4)
    instance_id: UUID = Field(...)
    step_id: str = Field(...)
    step_order: int = Field(..., ge=1)
    status: StepStatus = Field(default=StepStatus.PENDING)
    assignee_id: str = Field(...)
    assigned_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    completed_by: Optional[str] = Field(default=None)
    decision: Optional[Decision] = Field(default=None)
    comments: Optional[str] = Field(default=None)
    revision_count: int = Field(default=0, ge=0)
    escalated_at: Optional[datetime] = Field(default=None)
    version: int = Field(default=1, ge=1, description="Bumped by every write")

    @property
    def awaiting_revision(self) -> bool:
        """Changes were requested and the initiator has not resubmitted yet."""
        return self.status == StepStatus.IN_PROGRESS and self.decision == Decision.REQUEST_CHANGES

    def is_overdue(self, step: WorkflowStep, now: datetime) -> bool:
        """Check whether an active step has outlived its timeout."""
        if self.status != StepStatus.IN_PROGRESS or step.timeout is None or self.assigned_at is None:
            return False
        return self.assigned_at + step.timeout <= now


class TriggerEvent(BaseModel):
    """Subject event that may start one or more workflows."""

    trigger: TriggerKind = Field(...)
    subject_id: str = Field(..., min_length=1)
    subject_category: Optional[str] = Field(default=None)
    subject_type: Optional[str] = Field(default=None)
    initiated_by: str = Field(default="system", min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PendingTask(BaseModel):
    """An active step execution joined with its instance and step metadata."""

    step_execution: WorkflowStepExecution
    instance: WorkflowInstance
    step: WorkflowStep
    template_id: UUID
    template_name: str


class StepContext(BaseModel):
    """Payload delivered to an assignee when a step needs attention."""

    reason: str = Field(default="step_activated")
    instance_id: UUID
    step_execution_id: UUID
    subject_id: str
    step_id: str
    step_name: str
    step_kind: StepKind
    assignee_type: AssigneeType
    assignee_id: str
    comments: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def for_step(
        cls,
        instance: WorkflowInstance,
        execution: WorkflowStepExecution,
        step: WorkflowStep,
        reason: str = "step_activated",
        comments: Optional[str] = None,
    ) -> "StepContext":
        """Build the context for a step of an instance."""
        return cls(
            reason=reason,
            instance_id=instance.id,
            step_execution_id=execution.id,
            subject_id=instance.subject_id,
            step_id=step.id,
            step_name=step.name,
            step_kind=step.kind,
            assignee_type=step.assignee_type,
            assignee_id=execution.assignee_id,
            comments=comments,
        )


class SweepReport(BaseModel):
    """Outcome of one background sweep."""

    examined: int = Field(default=0, ge=0)
    acted: list[UUID] = Field(default_factory=list, description="Step executions transitioned")
    skipped: list[UUID] = Field(default_factory=list, description="Candidates left untouched")
    flagged: list[UUID] = Field(default_factory=list, description="Candidates reported without a transition")
    failed: list[UUID] = Field(default_factory=list, description="Candidates that raised")
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = Field(default=None)

    @model_validator(mode="after")
    def validate_finished(self) -> "SweepReport":
        """Ensure finished_at is not before started_at."""
        if self.finished_at is not None and self.finished_at < self.started_at:
            raise ValueError("finished_at must be >= started_at")
        return self
