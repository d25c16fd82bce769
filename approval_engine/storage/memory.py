"""In-memory implementation of the workflow store."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from approval_engine.core.models import (
    TriggerKind,
    WorkflowInstance,
    WorkflowStepExecution,
    WorkflowTemplate,
)
from approval_engine.core.state_machine import (
    InstanceStateMachine,
    InstanceStatus,
    StepStateMachine,
    StepStatus,
)
from approval_engine.core.transitions import StepTransition
from approval_engine.storage.base import WorkflowStore


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Writes are serialized by a single
    asyncio lock; reads yield to the event loop the way a network backend
    would, so concurrent callers interleave realistically.
    """

    def __init__(self) -> None:
        self._templates: Dict[UUID, WorkflowTemplate] = {}
        self._instances: Dict[UUID, WorkflowInstance] = {}
        self._executions: Dict[UUID, WorkflowStepExecution] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Templates

    async def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        async with self._lock:
            self._templates[template.id] = template.model_copy(deep=True)
        return template

    async def get_template(self, template_id: UUID) -> Optional[WorkflowTemplate]:
        await asyncio.sleep(0)
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    async def list_templates(
        self,
        trigger: Optional[TriggerKind] = None,
        active_only: bool = False,
    ) -> list[WorkflowTemplate]:
        await asyncio.sleep(0)
        templates = [
            t.model_copy(deep=True)
            for t in self._templates.values()
            if (trigger is None or t.trigger == TriggerKind(trigger))
            and (not active_only or t.is_active)
        ]
        return sorted(templates, key=lambda t: t.created_at, reverse=True)

    async def replace_template(self, template: WorkflowTemplate) -> Optional[WorkflowTemplate]:
        async with self._lock:
            if template.id not in self._templates or self._is_referenced(template.id):
                return None
            self._templates[template.id] = template.model_copy(deep=True)
        return template

    async def set_template_active(
        self, template_id: UUID, is_active: bool
    ) -> Optional[WorkflowTemplate]:
        async with self._lock:
            template = self._templates.get(template_id)
            if template is None:
                return None
            updated = template.model_copy(update={"is_active": is_active, "updated_at": datetime.utcnow()})
            self._templates[template_id] = updated
            return updated.model_copy(deep=True)

    async def delete_template(self, template_id: UUID) -> bool:
        async with self._lock:
            if self._is_referenced(template_id):
                return False
            return self._templates.pop(template_id, None) is not None

    async def count_instances_for_template(self, template_id: UUID) -> int:
        await asyncio.sleep(0)
        return sum(1 for i in self._instances.values() if i.template_id == template_id)

    def _is_referenced(self, template_id: UUID) -> bool:
        return any(i.template_id == template_id for i in self._instances.values())

    # ------------------------------------------------------------------
    # Instances

    async def create_instance(
        self,
        instance: WorkflowInstance,
        executions: list[WorkflowStepExecution],
        template_updated_at: datetime,
    ) -> bool:
        async with self._lock:
            template = self._templates.get(instance.template_id)
            if template is None or template.updated_at != template_updated_at:
                return False
            self._instances[instance.id] = instance.model_copy(deep=True)
            for execution in executions:
                self._executions[execution.id] = execution.model_copy(deep=True)
            return True

    async def get_instance(self, instance_id: UUID) -> Optional[WorkflowInstance]:
        await asyncio.sleep(0)
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances_for_subject(self, subject_id: str) -> list[WorkflowInstance]:
        await asyncio.sleep(0)
        instances = [
            i.model_copy(deep=True) for i in self._instances.values() if i.subject_id == subject_id
        ]
        return sorted(instances, key=lambda i: i.initiated_at, reverse=True)

    async def activate_instance_step(self, instance_id: UUID, step_execution_id: UUID) -> bool:
        async with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None or instance.status not in InstanceStateMachine.ACTIVE_STATES:
                return False
            self._instances[instance_id] = instance.model_copy(
                update={
                    "status": InstanceStatus.IN_PROGRESS,
                    "current_step_execution_id": step_execution_id,
                }
            )
            return True

    async def complete_instance(self, instance_id: UUID, completed_at: datetime) -> bool:
        async with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None or instance.status != InstanceStatus.IN_PROGRESS:
                return False
            self._instances[instance_id] = instance.model_copy(
                update={
                    "status": InstanceStatus.COMPLETED,
                    "completed_at": completed_at,
                    "current_step_execution_id": None,
                }
            )
            return True

    async def cancel_instance(
        self,
        instance_id: UUID,
        reason: Optional[str],
        completed_at: datetime,
    ) -> bool:
        async with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None or instance.status not in InstanceStateMachine.ACTIVE_STATES:
                return False

            self._instances[instance_id] = instance.model_copy(
                update={
                    "status": InstanceStatus.CANCELLED,
                    "completed_at": completed_at,
                    "cancellation_reason": reason,
                    "current_step_execution_id": None,
                }
            )
            for execution_id, execution in list(self._executions.items()):
                if execution.instance_id == instance_id and execution.status in StepStateMachine.OPEN_STATES:
                    self._executions[execution_id] = execution.model_copy(
                        update={
                            "status": StepStatus.SKIPPED,
                            "completed_at": completed_at,
                            "version": execution.version + 1,
                        }
                    )
            return True

    # ------------------------------------------------------------------
    # Step executions

    async def get_step_execution(self, step_execution_id: UUID) -> Optional[WorkflowStepExecution]:
        await asyncio.sleep(0)
        execution = self._executions.get(step_execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_step_executions(self, instance_id: UUID) -> list[WorkflowStepExecution]:
        await asyncio.sleep(0)
        executions = [
            e.model_copy(deep=True) for e in self._executions.values() if e.instance_id == instance_id
        ]
        return sorted(executions, key=lambda e: e.step_order)

    async def list_active_step_executions(
        self, assignee_id: Optional[str] = None
    ) -> list[WorkflowStepExecution]:
        await asyncio.sleep(0)
        active = []
        for execution in self._executions.values():
            if execution.status != StepStatus.IN_PROGRESS:
                continue
            if assignee_id is not None and execution.assignee_id != assignee_id:
                continue
            instance = self._instances.get(execution.instance_id)
            if instance is None or instance.status != InstanceStatus.IN_PROGRESS:
                continue
            active.append(execution.model_copy(deep=True))
        return sorted(active, key=lambda e: e.assigned_at or datetime.min)

    async def apply_step_transition(
        self,
        execution: WorkflowStepExecution,
        transition: StepTransition,
    ) -> Optional[WorkflowStepExecution]:
        async with self._lock:
            current = self._executions.get(execution.id)
            if current is None:
                return None
            if not transition.allows(current.status) or current.version != execution.version:
                return None
            instance = self._instances.get(current.instance_id)
            if instance is None or instance.is_terminal:
                return None

            updated = transition.apply_to(current)
            self._executions[execution.id] = updated
            return updated.model_copy(deep=True)
