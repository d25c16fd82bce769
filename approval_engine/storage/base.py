"""Persistence gateway for templates, instances, and step executions."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

from approval_engine.core.models import (
    TriggerKind,
    WorkflowInstance,
    WorkflowStepExecution,
    WorkflowTemplate,
)
from approval_engine.core.transitions import StepTransition


class WorkflowStore(Protocol):
    """
    Protocol for approval engine persistence backends.

    Every state change is a conditional write. Methods that change state
    return None or False when the record was not in the expected state,
    and never raise for a lost race.
    """

    # Templates

    async def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Persist a new template with its steps."""

    async def get_template(self, template_id: UUID) -> Optional[WorkflowTemplate]:
        """Retrieve a template with its steps, or None."""

    async def list_templates(
        self,
        trigger: Optional[TriggerKind] = None,
        active_only: bool = False,
    ) -> list[WorkflowTemplate]:
        """Return templates, newest first."""

    async def replace_template(self, template: WorkflowTemplate) -> Optional[WorkflowTemplate]:
        """Overwrite a template's definition and steps.

        None if the template does not exist or an instance references it.
        """

    async def set_template_active(
        self, template_id: UUID, is_active: bool
    ) -> Optional[WorkflowTemplate]:
        """Toggle the active flag; None if the template does not exist."""

    async def delete_template(self, template_id: UUID) -> bool:
        """Remove a template that no instance references."""

    async def count_instances_for_template(self, template_id: UUID) -> int:
        """Number of instances created from a template."""

    # Instances and step executions

    async def create_instance(
        self,
        instance: WorkflowInstance,
        executions: list[WorkflowStepExecution],
        template_updated_at: datetime,
    ) -> bool:
        """Persist an instance and all of its step executions in one transaction.

        False when the template is gone or was modified after
        ``template_updated_at``, the revision the executions were built from.
        """

    async def get_instance(self, instance_id: UUID) -> Optional[WorkflowInstance]:
        """Retrieve an instance by id."""

    async def list_instances_for_subject(self, subject_id: str) -> list[WorkflowInstance]:
        """Return every instance for a subject, newest first."""

    async def get_step_execution(self, step_execution_id: UUID) -> Optional[WorkflowStepExecution]:
        """Retrieve a step execution by id."""

    async def list_step_executions(self, instance_id: UUID) -> list[WorkflowStepExecution]:
        """Return the step executions of an instance in step order."""

    async def list_active_step_executions(
        self, assignee_id: Optional[str] = None
    ) -> list[WorkflowStepExecution]:
        """IN_PROGRESS step executions of IN_PROGRESS instances, oldest assignment first."""

    async def apply_step_transition(
        self,
        execution: WorkflowStepExecution,
        transition: StepTransition,
    ) -> Optional[WorkflowStepExecution]:
        """
        Conditionally apply a transition.

        Succeeds only if the stored status is allowed by the transition, the
        stored version equals ``execution.version``, and the parent instance
        is not terminal. Returns the updated record, or None.
        """

    async def activate_instance_step(self, instance_id: UUID, step_execution_id: UUID) -> bool:
        """Point a non-terminal instance at its active step and mark it IN_PROGRESS."""

    async def complete_instance(self, instance_id: UUID, completed_at: datetime) -> bool:
        """IN_PROGRESS -> COMPLETED."""

    async def cancel_instance(
        self,
        instance_id: UUID,
        reason: Optional[str],
        completed_at: datetime,
    ) -> bool:
        """
        Cancel a non-terminal instance.

        In one transaction: the instance becomes CANCELLED and every PENDING
        or IN_PROGRESS step execution becomes SKIPPED.
        """
