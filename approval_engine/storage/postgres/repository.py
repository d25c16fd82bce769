"""
SQL implementation of the workflow store.

Every state change is a single conditional UPDATE whose WHERE clause
encodes the expected status, the version the caller read, and that the
parent instance is still active. ``rowcount`` tells the caller whether
its write won.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import and_, delete, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from approval_engine.core.models import (
    TriggerKind,
    WorkflowInstance,
    WorkflowStep,
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
from approval_engine.storage.postgres.database import Database
from approval_engine.storage.postgres.models import (
    WorkflowInstanceModel,
    WorkflowStepExecutionModel,
    WorkflowTemplateModel,
    WorkflowTemplateStepModel,
)


_ACTIVE_INSTANCE_STATES = [s.value for s in InstanceStateMachine.ACTIVE_STATES]
_OPEN_STEP_STATES = [s.value for s in StepStateMachine.OPEN_STATES]


def _column_values(values: dict[str, Any]) -> dict[str, Any]:
    """Store enums by value."""
    return {k: v.value if isinstance(v, Enum) else v for k, v in values.items()}


class SqlWorkflowStore(WorkflowStore):
    """
    Workflow store backed by SQLAlchemy.

    Each method runs in its own session; multi-row writes run in one
    transaction.
    """

    def __init__(self, database: Database):
        self.database = database

    # ==================== Template Operations ====================

    async def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Persist a new template with its steps."""
        model = WorkflowTemplateModel(
            id=template.id,
            name=template.name,
            description=template.description,
            trigger=template.trigger.value,
            subject_category=template.subject_category,
            subject_type=template.subject_type,
            is_active=template.is_active,
            created_by=template.created_by,
            created_at=template.created_at,
            updated_at=template.updated_at,
            steps=[self._step_to_model(template.id, step) for step in template.steps],
        )

        async with self.database.transaction() as session:
            session.add(model)
        return template

    async def get_template(self, template_id: UUID) -> Optional[WorkflowTemplate]:
        """Get template by ID."""
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowTemplateModel).where(WorkflowTemplateModel.id == template_id)
            )
            model = result.scalar_one_or_none()
            return self.model_to_template(model) if model else None

    async def list_templates(
        self,
        trigger: Optional[TriggerKind] = None,
        active_only: bool = False,
    ) -> list[WorkflowTemplate]:
        """List templates, newest first."""
        query = select(WorkflowTemplateModel)
        if trigger is not None:
            query = query.where(WorkflowTemplateModel.trigger == TriggerKind(trigger).value)
        if active_only:
            query = query.where(WorkflowTemplateModel.is_active.is_(True))
        query = query.order_by(WorkflowTemplateModel.created_at.desc())

        async with self.database.session() as session:
            result = await session.execute(query)
            return [self.model_to_template(m) for m in result.scalars().all()]

    async def replace_template(self, template: WorkflowTemplate) -> Optional[WorkflowTemplate]:
        """Overwrite an unreferenced template's definition and its steps."""
        referenced = exists().where(WorkflowInstanceModel.template_id == template.id)

        async with self.database.transaction() as session:
            if not await self._lock_template(session, template.id):
                return None
            result = await session.execute(
                update(WorkflowTemplateModel)
                .where(and_(WorkflowTemplateModel.id == template.id, ~referenced))
                .values(
                    name=template.name,
                    description=template.description,
                    trigger=template.trigger.value,
                    subject_category=template.subject_category,
                    subject_type=template.subject_type,
                    is_active=template.is_active,
                    updated_at=template.updated_at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None

            await session.execute(
                delete(WorkflowTemplateStepModel)
                .where(WorkflowTemplateStepModel.template_id == template.id)
                .execution_options(synchronize_session=False)
            )
            session.add_all(self._step_to_model(template.id, step) for step in template.steps)
        return template

    async def set_template_active(
        self, template_id: UUID, is_active: bool
    ) -> Optional[WorkflowTemplate]:
        """Toggle the active flag."""
        async with self.database.session() as session:
            result = await session.execute(
                update(WorkflowTemplateModel)
                .where(WorkflowTemplateModel.id == template_id)
                .values(is_active=is_active, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
        return await self.get_template(template_id)

    async def delete_template(self, template_id: UUID) -> bool:
        """Delete a template no instance references."""
        referenced = exists().where(WorkflowInstanceModel.template_id == template_id)

        async with self.database.transaction() as session:
            if not await self._lock_template(session, template_id):
                return False
            result = await session.execute(
                delete(WorkflowTemplateModel)
                .where(and_(WorkflowTemplateModel.id == template_id, ~referenced))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            await session.execute(
                delete(WorkflowTemplateStepModel)
                .where(WorkflowTemplateStepModel.template_id == template_id)
                .execution_options(synchronize_session=False)
            )
            return True

    async def count_instances_for_template(self, template_id: UUID) -> int:
        """Count instances created from a template."""
        async with self.database.session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(WorkflowInstanceModel)
                .where(WorkflowInstanceModel.template_id == template_id)
            )
            return int(result.scalar_one())

    async def _lock_template(self, session: AsyncSession, template_id: UUID) -> bool:
        """
        Take the template row lock for the rest of the transaction.

        Instance creation takes the same lock, so the reference check that
        follows sees any instance committed while this call waited.
        """
        result = await session.execute(
            select(WorkflowTemplateModel.id)
            .where(WorkflowTemplateModel.id == template_id)
            .with_for_update()
        )
        return result.scalar_one_or_none() is not None

    # ==================== Instance Operations ====================

    async def create_instance(
        self,
        instance: WorkflowInstance,
        executions: list[WorkflowStepExecution],
        template_updated_at: datetime,
    ) -> bool:
        """Create an instance and its step executions atomically."""
        async with self.database.transaction() as session:
            # No-op write: locks the template row and checks its revision
            result = await session.execute(
                update(WorkflowTemplateModel)
                .where(
                    and_(
                        WorkflowTemplateModel.id == instance.template_id,
                        WorkflowTemplateModel.updated_at == template_updated_at,
                    )
                )
                .values(updated_at=WorkflowTemplateModel.updated_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            session.add(
                WorkflowInstanceModel(
                    id=instance.id,
                    template_id=instance.template_id,
                    subject_id=instance.subject_id,
                    status=instance.status.value,
                    current_step_execution_id=instance.current_step_execution_id,
                    initiated_by=instance.initiated_by,
                    initiated_at=instance.initiated_at,
                    completed_at=instance.completed_at,
                    cancellation_reason=instance.cancellation_reason,
                    metadata_=instance.metadata,
                )
            )
            # Parent row first so the step FK is satisfied
            await session.flush()
            session.add_all(
                WorkflowStepExecutionModel(**_column_values(e.model_dump())) for e in executions
            )
        return True

    async def get_instance(self, instance_id: UUID) -> Optional[WorkflowInstance]:
        """Get instance by ID."""
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowInstanceModel).where(WorkflowInstanceModel.id == instance_id)
            )
            model = result.scalar_one_or_none()
            return self.model_to_instance(model) if model else None

    async def list_instances_for_subject(self, subject_id: str) -> list[WorkflowInstance]:
        """Get every instance for a subject, newest first."""
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowInstanceModel)
                .where(WorkflowInstanceModel.subject_id == subject_id)
                .order_by(WorkflowInstanceModel.initiated_at.desc())
            )
            return [self.model_to_instance(m) for m in result.scalars().all()]

    async def activate_instance_step(self, instance_id: UUID, step_execution_id: UUID) -> bool:
        """Point an active instance at its current step."""
        async with self.database.session() as session:
            result = await session.execute(
                update(WorkflowInstanceModel)
                .where(
                    and_(
                        WorkflowInstanceModel.id == instance_id,
                        WorkflowInstanceModel.status.in_(_ACTIVE_INSTANCE_STATES),
                    )
                )
                .values(
                    status=InstanceStatus.IN_PROGRESS.value,
                    current_step_execution_id=step_execution_id,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def complete_instance(self, instance_id: UUID, completed_at: datetime) -> bool:
        """Mark an IN_PROGRESS instance COMPLETED."""
        async with self.database.session() as session:
            result = await session.execute(
                update(WorkflowInstanceModel)
                .where(
                    and_(
                        WorkflowInstanceModel.id == instance_id,
                        WorkflowInstanceModel.status == InstanceStatus.IN_PROGRESS.value,
                    )
                )
                .values(
                    status=InstanceStatus.COMPLETED.value,
                    completed_at=completed_at,
                    current_step_execution_id=None,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def cancel_instance(
        self,
        instance_id: UUID,
        reason: Optional[str],
        completed_at: datetime,
    ) -> bool:
        """Cancel an active instance and skip its open steps in one transaction."""
        async with self.database.transaction() as session:
            result = await session.execute(
                update(WorkflowInstanceModel)
                .where(
                    and_(
                        WorkflowInstanceModel.id == instance_id,
                        WorkflowInstanceModel.status.in_(_ACTIVE_INSTANCE_STATES),
                    )
                )
                .values(
                    status=InstanceStatus.CANCELLED.value,
                    completed_at=completed_at,
                    cancellation_reason=reason,
                    current_step_execution_id=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            await session.execute(
                update(WorkflowStepExecutionModel)
                .where(
                    and_(
                        WorkflowStepExecutionModel.instance_id == instance_id,
                        WorkflowStepExecutionModel.status.in_(_OPEN_STEP_STATES),
                    )
                )
                .values(
                    status=StepStatus.SKIPPED.value,
                    completed_at=completed_at,
                    version=WorkflowStepExecutionModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            return True

    # ==================== Step Execution Operations ====================

    async def get_step_execution(self, step_execution_id: UUID) -> Optional[WorkflowStepExecution]:
        """Get step execution by ID."""
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowStepExecutionModel)
                .where(WorkflowStepExecutionModel.id == step_execution_id)
            )
            model = result.scalar_one_or_none()
            return self.model_to_step_execution(model) if model else None

    async def list_step_executions(self, instance_id: UUID) -> list[WorkflowStepExecution]:
        """Get the step executions of an instance in step order."""
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowStepExecutionModel)
                .where(WorkflowStepExecutionModel.instance_id == instance_id)
                .order_by(WorkflowStepExecutionModel.step_order)
            )
            return [self.model_to_step_execution(m) for m in result.scalars().all()]

    async def list_active_step_executions(
        self, assignee_id: Optional[str] = None
    ) -> list[WorkflowStepExecution]:
        """Get active steps of active instances, oldest assignment first."""
        query = (
            select(WorkflowStepExecutionModel)
            .join(
                WorkflowInstanceModel,
                WorkflowInstanceModel.id == WorkflowStepExecutionModel.instance_id,
            )
            .where(
                and_(
                    WorkflowStepExecutionModel.status == StepStatus.IN_PROGRESS.value,
                    WorkflowInstanceModel.status == InstanceStatus.IN_PROGRESS.value,
                )
            )
        )
        if assignee_id is not None:
            query = query.where(WorkflowStepExecutionModel.assignee_id == assignee_id)
        query = query.order_by(WorkflowStepExecutionModel.assigned_at)

        async with self.database.session() as session:
            result = await session.execute(query)
            return [self.model_to_step_execution(m) for m in result.scalars().all()]

    async def apply_step_transition(
        self,
        execution: WorkflowStepExecution,
        transition: StepTransition,
    ) -> Optional[WorkflowStepExecution]:
        """
        Conditionally apply a transition.

        The UPDATE only matches when the row still has an allowed status,
        the version the caller read, and an active parent instance.
        """
        if not transition.allows(execution.status):
            return None

        updated = transition.apply_to(execution)
        values = transition.changes(execution)
        values.update(status=updated.status, version=updated.version)

        instance_active = exists().where(
            and_(
                WorkflowInstanceModel.id == WorkflowStepExecutionModel.instance_id,
                WorkflowInstanceModel.status.in_(_ACTIVE_INSTANCE_STATES),
            )
        )

        async with self.database.session() as session:
            result = await session.execute(
                update(WorkflowStepExecutionModel)
                .where(
                    and_(
                        WorkflowStepExecutionModel.id == execution.id,
                        WorkflowStepExecutionModel.status.in_(
                            [s.value for s in transition.from_statuses]
                        ),
                        WorkflowStepExecutionModel.version == execution.version,
                        instance_active,
                    )
                )
                .values(**_column_values(values))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
        return updated

    # ==================== Helper Methods ====================

    def _step_to_model(self, template_id: UUID, step: WorkflowStep) -> WorkflowTemplateStepModel:
        return WorkflowTemplateStepModel(
            template_id=template_id,
            step_id=step.id,
            name=step.name,
            description=step.description,
            kind=step.kind.value,
            assignee_type=step.assignee_type.value,
            assignee_id=step.assignee_id,
            step_order=step.order,
            required=step.required,
            timeout_hours=step.timeout_hours,
            auto_approve=step.auto_approve,
            conditions=step.conditions,
        )

    def model_to_template(self, model: WorkflowTemplateModel) -> WorkflowTemplate:
        """Convert database model to domain model."""
        return WorkflowTemplate(
            id=model.id,
            name=model.name,
            description=model.description,
            trigger=model.trigger,
            subject_category=model.subject_category,
            subject_type=model.subject_type,
            steps=[
                WorkflowStep(
                    id=s.step_id,
                    name=s.name,
                    description=s.description,
                    kind=s.kind,
                    assignee_type=s.assignee_type,
                    assignee_id=s.assignee_id,
                    order=s.step_order,
                    required=s.required,
                    timeout_hours=s.timeout_hours,
                    auto_approve=s.auto_approve,
                    conditions=s.conditions,
                )
                for s in model.steps
            ],
            is_active=model.is_active,
            created_by=model.created_by,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def model_to_instance(self, model: WorkflowInstanceModel) -> WorkflowInstance:
        """Convert database model to domain model."""
        return WorkflowInstance(
            id=model.id,
            template_id=model.template_id,
            subject_id=model.subject_id,
            status=model.status,
            current_step_execution_id=model.current_step_execution_id,
            initiated_by=model.initiated_by,
            initiated_at=model.initiated_at,
            completed_at=model.completed_at,
            cancellation_reason=model.cancellation_reason,
            metadata=model.metadata_ or {},
        )

    def model_to_step_execution(self, model: WorkflowStepExecutionModel) -> WorkflowStepExecution:
        """Convert database model to domain model."""
        return WorkflowStepExecution(
            id=model.id,
            instance_id=model.instance_id,
            step_id=model.step_id,
            step_order=model.step_order,
            status=model.status,
            assignee_id=model.assignee_id,
            assigned_at=model.assigned_at,
            completed_at=model.completed_at,
            completed_by=model.completed_by,
            decision=model.decision,
            comments=model.comments,
            revision_count=model.revision_count,
            escalated_at=model.escalated_at,
            version=model.version,
        )
