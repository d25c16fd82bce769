"""
Step execution transitions.

Every change to a step execution is expressed as one of these variants and
applied by the store as a single conditional write: the row is updated only
if its status is one of ``from_statuses`` and its version still matches the
version the caller read. Decision processing and the background sweeps share
this primitive.
"""

from datetime import datetime
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from approval_engine.core.models import WorkflowStepExecution
from approval_engine.core.state_machine import Decision, StepStateMachine, StepStatus


class _StepTransitionBase(BaseModel):
    """Shared behaviour of step transition variants."""

    from_statuses: ClassVar[frozenset[StepStatus]] = frozenset()
    to_status: ClassVar[StepStatus]

    def changes(self, execution: WorkflowStepExecution) -> dict[str, Any]:
        """Column values written by this transition, besides status and version."""
        raise NotImplementedError

    def allows(self, status: StepStatus) -> bool:
        """Check whether the transition may start from a status."""
        return StepStatus(status) in self.from_statuses

    def apply_to(self, execution: WorkflowStepExecution) -> WorkflowStepExecution:
        """
        Return the execution as it looks after this transition.

        Raises:
            InvalidStateTransitionError: If the status change is not allowed
        """
        StepStateMachine.ensure_transition(execution.status, self.to_status)
        return execution.model_copy(
            update={
                **self.changes(execution),
                "status": self.to_status,
                "version": execution.version + 1,
            }
        )


class ActivateStep(_StepTransitionBase):
    """PENDING -> IN_PROGRESS: the step becomes the active one."""

    kind: Literal["activate"] = "activate"
    assigned_at: datetime = Field(default_factory=datetime.utcnow)

    from_statuses: ClassVar[frozenset[StepStatus]] = frozenset({StepStatus.PENDING})
    to_status: ClassVar[StepStatus] = StepStatus.IN_PROGRESS

    def changes(self, execution: WorkflowStepExecution) -> dict[str, Any]:
        return {"assigned_at": self.assigned_at}


class RecordDecision(_StepTransitionBase):
    """IN_PROGRESS -> COMPLETED with an approve or reject decision."""

    kind: Literal["decide"] = "decide"
    actor: str = Field(..., min_length=1)
    decision: Decision
    comments: Optional[str] = None
    completed_at: datetime = Field(default_factory=datetime.utcnow)

    from_statuses: ClassVar[frozenset[StepStatus]] = frozenset({StepStatus.IN_PROGRESS})
    to_status: ClassVar[StepStatus] = StepStatus.COMPLETED

    @field_validator("decision")
    @classmethod
    def validate_final_decision(cls, v: Decision) -> Decision:
        """Only approve and reject complete a step."""
        if v == Decision.REQUEST_CHANGES:
            raise ValueError("request_changes does not complete a step")
        return v

    def changes(self, execution: WorkflowStepExecution) -> dict[str, Any]:
        return {
            "decision": self.decision,
            "completed_by": self.actor,
            "completed_at": self.completed_at,
            "comments": self.comments,
        }


class RequestChanges(_StepTransitionBase):
    """IN_PROGRESS -> IN_PROGRESS: decision recorded, control goes back to the initiator."""

    kind: Literal["request_changes"] = "request_changes"
    actor: str = Field(..., min_length=1)
    comments: Optional[str] = None

    from_statuses: ClassVar[frozenset[StepStatus]] = frozenset({StepStatus.IN_PROGRESS})
    to_status: ClassVar[StepStatus] = StepStatus.IN_PROGRESS

    def changes(self, execution: WorkflowStepExecution) -> dict[str, Any]:
        return {
            "decision": Decision.REQUEST_CHANGES,
            "comments": self.comments,
            "revision_count": execution.revision_count + 1,
        }


class ResubmitStep(_StepTransitionBase):
    """IN_PROGRESS -> IN_PROGRESS: requested changes made, the assignee decides again."""

    kind: Literal["resubmit"] = "resubmit"
    assigned_at: datetime = Field(default_factory=datetime.utcnow)
    comments: Optional[str] = None

    from_statuses: ClassVar[frozenset[StepStatus]] = frozenset({StepStatus.IN_PROGRESS})
    to_status: ClassVar[StepStatus] = StepStatus.IN_PROGRESS

    def changes(self, execution: WorkflowStepExecution) -> dict[str, Any]:
        return {
            "decision": None,
            "assigned_at": self.assigned_at,
            "escalated_at": None,
            "comments": self.comments if self.comments is not None else execution.comments,
        }


class EscalateStep(_StepTransitionBase):
    """IN_PROGRESS -> IN_PROGRESS: overdue step flagged as escalated."""

    kind: Literal["escalate"] = "escalate"
    escalated_at: datetime = Field(default_factory=datetime.utcnow)

    from_statuses: ClassVar[frozenset[StepStatus]] = frozenset({StepStatus.IN_PROGRESS})
    to_status: ClassVar[StepStatus] = StepStatus.IN_PROGRESS

    def changes(self, execution: WorkflowStepExecution) -> dict[str, Any]:
        return {"escalated_at": self.escalated_at}


class SkipStep(_StepTransitionBase):
    """PENDING/IN_PROGRESS -> SKIPPED for a single step."""

    kind: Literal["skip"] = "skip"
    reason: Optional[str] = None
    completed_at: datetime = Field(default_factory=datetime.utcnow)

    from_statuses: ClassVar[frozenset[StepStatus]] = StepStateMachine.OPEN_STATES
    to_status: ClassVar[StepStatus] = StepStatus.SKIPPED

    def changes(self, execution: WorkflowStepExecution) -> dict[str, Any]:
        values: dict[str, Any] = {"completed_at": self.completed_at}
        if self.reason:
            values["comments"] = self.reason
        return values


StepTransition = Annotated[
    Union[ActivateStep, RecordDecision, RequestChanges, ResubmitStep, EscalateStep, SkipStep],
    Field(discriminator="kind"),
]
