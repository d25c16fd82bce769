"""
Workflow orchestrator engine.

Manages the lifecycle of approval workflow instances including:
- Instance creation from templates and trigger events
- Sequential step activation
- Decision processing (approve, reject, request changes)
- Cancellation propagation
- Repair of instances left behind by partial failures
"""

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from approval_engine.config import Settings, get_settings
from approval_engine.core.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from approval_engine.core.models import (
    PendingTask,
    StepContext,
    TriggerEvent,
    WorkflowInstance,
    WorkflowStep,
    WorkflowStepExecution,
    WorkflowTemplate,
)
from approval_engine.core.state_machine import (
    Decision,
    InstanceStatus,
    StepStateMachine,
    StepStatus,
    compute_instance_status_from_steps,
)
from approval_engine.core.transitions import (
    ActivateStep,
    EscalateStep,
    RecordDecision,
    RequestChanges,
    ResubmitStep,
    SkipStep,
    StepTransition,
)
from approval_engine.messaging.events import (
    LoggingEventPublisher,
    WorkflowEvent,
    WorkflowEventPublisher,
    WorkflowEventType,
)
from approval_engine.messaging.notifications import NotificationDispatcher
from approval_engine.registry.templates import TemplateRegistry
from approval_engine.storage.base import WorkflowStore

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """
    Main orchestrator for approval workflows.

    Responsibilities:
    - Start instances for templates and trigger events
    - Activate steps strictly in template order
    - Apply decisions through conditional writes
    - Cancel instances and propagate the cancellation to open steps

    The engine holds no state of its own; every decision is re-validated
    against the store, so any number of engines may share one store.
    """

    def __init__(
        self,
        store: WorkflowStore,
        registry: Optional[TemplateRegistry] = None,
        notifier: Optional[NotificationDispatcher] = None,
        events: Optional[WorkflowEventPublisher] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.registry = registry or TemplateRegistry(store, settings=self.settings)
        self.notifier = notifier or NotificationDispatcher()
        self.events = events or LoggingEventPublisher()

    @property
    def system_actor(self) -> str:
        """Actor id recorded on decisions made by the engine itself."""
        return self.settings.engine.system_actor

    # ==================== Workflow Start ====================

    async def start_workflow(
        self,
        template_id: UUID,
        subject_id: str,
        initiated_by: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """
        Start a new workflow instance for a subject.

        Args:
            template_id: Template to instantiate
            subject_id: Entity the workflow is about
            initiated_by: Actor starting the workflow
            metadata: Free-form data stored on the instance

        Returns:
            The instance, with its first step already active

        Raises:
            NotFoundError: If the template does not exist
            InvalidStateError: If the template is inactive
            ConcurrencyConflictError: If the template was modified meanwhile
        """
        template = await self.registry.get_template(template_id)
        if not template.is_active:
            raise InvalidStateError(
                f"Template '{template.name}' is inactive",
                template_id=str(template_id),
            )

        instance = WorkflowInstance(
            template_id=template.id,
            subject_id=subject_id,
            initiated_by=initiated_by,
            metadata=metadata or {},
        )
        executions = [
            WorkflowStepExecution(
                instance_id=instance.id,
                step_id=step.id,
                step_order=step.order,
                assignee_id=step.assignee_id,
            )
            for step in template.steps
        ]

        if not await self.store.create_instance(instance, executions, template.updated_at):
            await self.registry.get_template(template_id)
            raise ConcurrencyConflictError(
                f"Template '{template.name}' changed while starting a workflow",
                template_id=str(template_id),
            )
        logger.info(
            f"Started instance {instance.id} of template '{template.name}' "
            f"for subject {subject_id} ({len(executions)} steps)"
        )

        await self._activate_next_step(instance.id, template)

        instance = await self.get_instance(instance.id)
        await self._publish(
            WorkflowEvent.for_instance(
                WorkflowEventType.STARTED,
                instance,
                initiated_by=initiated_by,
                template_name=template.name,
            )
        )
        return instance

    async def handle_trigger(self, event: TriggerEvent) -> list[WorkflowInstance]:
        """
        Start one instance per active template matching a trigger event.

        A template that fails to start is logged and skipped.

        Returns:
            The started instances
        """
        templates = await self.registry.find_templates_for_trigger(
            event.trigger,
            event.subject_category,
            event.subject_type,
        )
        if not templates:
            logger.info(
                f"No active template for trigger {event.trigger.value} "
                f"on subject {event.subject_id}"
            )
            return []

        started = []
        for template in templates:
            try:
                instance = await self.start_workflow(
                    template.id,
                    event.subject_id,
                    event.initiated_by,
                    metadata={**event.metadata, "trigger": event.trigger.value},
                )
                started.append(instance)
            except WorkflowError as e:
                logger.warning(
                    f"Could not start template {template.id} for subject {event.subject_id}: {e}"
                )
        return started

    # ==================== Decisions ====================

    async def complete_step(
        self,
        step_execution_id: UUID,
        actor: str,
        decision: Decision,
        comments: Optional[str] = None,
    ) -> WorkflowStepExecution:
        """
        Submit a decision against an active step.

        Args:
            step_execution_id: Step execution to decide
            actor: Who decides
            decision: approve, reject or request_changes
            comments: Optional comments stored with the decision

        Returns:
            The step execution after the decision

        Raises:
            ValidationError: If the decision is not a known value
            NotFoundError: If the step execution or its instance does not exist
            InvalidStateError: If the step is not active or the instance is finished
            ConcurrencyConflictError: If another writer changed the step first
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError(f"Unknown decision: {decision!r}") from None
        execution, instance = await self._load_active(step_execution_id)
        template = await self._get_template(instance.template_id)
        step = self._get_step(template, execution)

        if decision == Decision.REQUEST_CHANGES:
            if execution.awaiting_revision:
                raise InvalidStateError(
                    f"Step '{step.name}' is already awaiting revision",
                    step_execution_id=str(step_execution_id),
                )
            if execution.revision_count < self.settings.engine.max_revisions:
                return await self._request_changes(instance, execution, step, actor, comments)

            logger.info(
                f"Step execution {execution.id} reached the revision limit "
                f"({self.settings.engine.max_revisions}); treating request as reject"
            )
            decision = Decision.REJECT
            comments = comments or f"Revision limit of {self.settings.engine.max_revisions} reached"

        updated = await self._apply(
            execution,
            RecordDecision(actor=actor, decision=decision, comments=comments),
        )
        logger.info(f"Step '{step.name}' of instance {instance.id}: {decision.value} by {actor}")

        if decision == Decision.APPROVE:
            await self._activate_next_step(instance.id, template)
        else:
            await self._cancel(instance, f"Rejected at step {step.name}")
        return updated

    async def resubmit_step(
        self,
        step_execution_id: UUID,
        actor: str,
        comments: Optional[str] = None,
    ) -> WorkflowStepExecution:
        """
        Hand a step awaiting revision back to its assignee.

        Raises:
            NotFoundError: If the step execution does not exist
            InvalidStateError: If the step is not awaiting revision
            ConcurrencyConflictError: If another writer changed the step first
        """
        execution, instance = await self._load_active(step_execution_id)
        if not execution.awaiting_revision:
            raise InvalidStateError(
                f"Step execution {step_execution_id} is not awaiting revision",
                step_execution_id=str(step_execution_id),
            )
        template = await self._get_template(instance.template_id)
        step = self._get_step(template, execution)

        updated = await self._apply(execution, ResubmitStep(comments=comments))
        logger.info(f"Step '{step.name}' of instance {instance.id} resubmitted by {actor}")

        await self.notifier.notify(
            updated.assignee_id,
            StepContext.for_step(instance, updated, step, reason="resubmitted", comments=comments),
        )
        return updated

    async def skip_step(
        self,
        step_execution_id: UUID,
        reason: Optional[str] = None,
    ) -> WorkflowStepExecution:
        """
        Skip an optional step and advance the instance.

        Raises:
            InvalidStateError: If the step is required, already finished, or
                the instance is finished
        """
        execution = await self._get_step_execution(step_execution_id)
        instance = await self._get_instance_for(execution)
        template = await self._get_template(instance.template_id)
        step = self._get_step(template, execution)

        if step.required:
            raise InvalidStateError(
                f"Step '{step.name}' is required and cannot be skipped",
                step_execution_id=str(step_execution_id),
            )
        if instance.is_terminal or StepStateMachine.is_terminal(execution.status):
            raise InvalidStateError(
                f"Step execution {step_execution_id} is {execution.status.value} "
                f"in a {instance.status.value} instance",
                step_execution_id=str(step_execution_id),
            )

        updated = await self._apply(execution, SkipStep(reason=reason))
        logger.info(f"Skipped step '{step.name}' of instance {instance.id}: {reason}")

        await self._activate_next_step(instance.id, template)
        return updated

    async def escalate_step(
        self,
        step_execution_id: UUID,
        notify_assignee_id: Optional[str] = None,
    ) -> WorkflowStepExecution:
        """
        Flag an active step as escalated and notify the escalation contact.

        A step is escalated at most once per assignment.

        Raises:
            InvalidStateError: If the step is not active or already escalated
        """
        execution, instance = await self._load_active(step_execution_id)
        if execution.escalated_at is not None:
            raise InvalidStateError(
                f"Step execution {step_execution_id} was already escalated",
                step_execution_id=str(step_execution_id),
            )
        template = await self._get_template(instance.template_id)
        step = self._get_step(template, execution)

        updated = await self._apply(execution, EscalateStep())
        recipient = (
            notify_assignee_id
            or self.settings.sweep.escalation_assignee_id
            or instance.initiated_by
        )
        logger.warning(
            f"Escalated step '{step.name}' of instance {instance.id} "
            f"(assignee {execution.assignee_id}) to {recipient}"
        )

        await self.notifier.notify(
            recipient,
            StepContext.for_step(instance, updated, step, reason="escalated"),
        )
        return updated

    # ==================== Cancellation ====================

    async def cancel_workflow(
        self,
        instance_id: UUID,
        reason: Optional[str] = None,
    ) -> WorkflowInstance:
        """
        Cancel an instance and skip its open steps.

        Raises:
            NotFoundError: If the instance does not exist
            InvalidStateError: If the instance is already completed or cancelled
        """
        instance = await self.get_instance(instance_id)
        if instance.is_terminal:
            raise InvalidStateError(
                f"Instance {instance_id} is already {instance.status.value}",
                instance_id=str(instance_id),
                status=instance.status.value,
            )

        if not await self._cancel(instance, reason):
            current = await self.get_instance(instance_id)
            raise InvalidStateError(
                f"Instance {instance_id} is already {current.status.value}",
                instance_id=str(instance_id),
                status=current.status.value,
            )
        return await self.get_instance(instance_id)

    async def reconcile_instance(self, instance_id: UUID) -> WorkflowInstance:
        """
        Re-run step activation for an instance.

        Safe to call at any time; repairs instances whose activation was
        interrupted after a decision was recorded.
        """
        instance = await self.get_instance(instance_id)
        if not instance.is_terminal:
            await self._activate_next_step(instance_id)
            instance = await self.get_instance(instance_id)

        executions = await self.store.list_step_executions(instance_id)
        derived = compute_instance_status_from_steps(
            [e.status for e in executions],
            cancelled=instance.status == InstanceStatus.CANCELLED,
        )
        if derived != instance.status:
            logger.warning(
                f"Instance {instance_id} is {instance.status.value} "
                f"but its steps imply {derived.value}"
            )
        return instance

    # ==================== Queries ====================

    async def get_instance(self, instance_id: UUID) -> WorkflowInstance:
        """
        Get an instance by ID.

        Raises:
            NotFoundError: If the instance does not exist
        """
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("Instance", instance_id)
        return instance

    async def get_instances_for_subject(self, subject_id: str) -> list[WorkflowInstance]:
        """All instances for a subject, newest first."""
        return await self.store.list_instances_for_subject(subject_id)

    async def get_step_executions(self, instance_id: UUID) -> list[WorkflowStepExecution]:
        """Step executions of an instance, in step order."""
        await self.get_instance(instance_id)
        return await self.store.list_step_executions(instance_id)

    async def get_pending_tasks(self, assignee_id: str) -> list[PendingTask]:
        """
        Active steps assigned to an actor, oldest assignment first.

        Each task carries its instance and the template step definition.
        """
        executions = await self.store.list_active_step_executions(assignee_id)
        templates: dict[UUID, WorkflowTemplate] = {}
        tasks = []

        for execution in executions:
            instance = await self.store.get_instance(execution.instance_id)
            if instance is None or instance.is_terminal:
                continue
            if instance.template_id not in templates:
                templates[instance.template_id] = await self._get_template(instance.template_id)
            template = templates[instance.template_id]
            step = template.get_step(execution.step_id)
            if step is None:
                logger.error(f"Step {execution.step_id} missing from template {template.id}")
                continue

            tasks.append(
                PendingTask(
                    step_execution=execution,
                    instance=instance,
                    step=step,
                    template_id=template.id,
                    template_name=template.name,
                )
            )
        return tasks

    # ==================== Step Activation ====================

    async def _activate_next_step(
        self,
        instance_id: UUID,
        template: Optional[WorkflowTemplate] = None,
    ) -> Optional[WorkflowStepExecution]:
        """
        Activate the first open step of an instance, or complete it.

        Idempotent: an already active step is left alone apart from
        repairing a stale instance pointer.
        """
        instance = await self.store.get_instance(instance_id)
        if instance is None or instance.is_terminal:
            return None

        executions = await self.store.list_step_executions(instance_id)
        next_execution = next(
            (e for e in executions if e.status in StepStateMachine.OPEN_STATES),
            None,
        )

        if next_execution is None:
            if await self.store.complete_instance(instance_id, datetime.utcnow()):
                completed = await self.get_instance(instance_id)
                logger.info(f"Instance {instance_id} completed")
                await self._publish(
                    WorkflowEvent.for_instance(WorkflowEventType.COMPLETED, completed)
                )
            return None

        if next_execution.status == StepStatus.IN_PROGRESS:
            if (
                instance.current_step_execution_id != next_execution.id
                or instance.status != InstanceStatus.IN_PROGRESS
            ):
                logger.warning(
                    f"Repairing step pointer of instance {instance_id} -> {next_execution.id}"
                )
                await self.store.activate_instance_step(instance_id, next_execution.id)
            return next_execution

        activated = await self.store.apply_step_transition(next_execution, ActivateStep())
        if activated is None:
            # Another writer activated the step or finished the instance
            logger.debug(f"Activation of step execution {next_execution.id} lost a race")
            return None

        if not await self.store.activate_instance_step(instance_id, activated.id):
            logger.info(f"Instance {instance_id} finished while step {activated.id} was activated")
            return None

        template = template or await self._get_template(instance.template_id)
        step = self._get_step(template, activated)
        logger.info(
            f"Activated step '{step.name}' of instance {instance_id} for {activated.assignee_id}"
        )

        await self.notifier.notify(
            activated.assignee_id,
            StepContext.for_step(instance, activated, step),
        )
        await self._publish(
            WorkflowEvent.for_instance(
                WorkflowEventType.STEP_ACTIVATED,
                instance,
                step_execution_id=activated.id,
                step_id=step.id,
                assignee_id=activated.assignee_id,
            )
        )
        return activated

    # ==================== Helper Methods ====================

    async def _request_changes(
        self,
        instance: WorkflowInstance,
        execution: WorkflowStepExecution,
        step: WorkflowStep,
        actor: str,
        comments: Optional[str],
    ) -> WorkflowStepExecution:
        updated = await self._apply(execution, RequestChanges(actor=actor, comments=comments))
        logger.info(
            f"Changes requested on step '{step.name}' of instance {instance.id} by {actor} "
            f"(revision {updated.revision_count})"
        )

        await self.notifier.notify(
            instance.initiated_by,
            StepContext.for_step(
                instance, updated, step, reason="changes_requested", comments=comments
            ),
        )
        return updated

    async def _cancel(self, instance: WorkflowInstance, reason: Optional[str]) -> bool:
        cancelled = await self.store.cancel_instance(instance.id, reason, datetime.utcnow())
        if not cancelled:
            logger.info(f"Instance {instance.id} was already finished; cancel ignored")
            return False

        logger.info(f"Cancelled instance {instance.id}: {reason}")
        current = await self.get_instance(instance.id)
        await self._publish(
            WorkflowEvent.for_instance(WorkflowEventType.CANCELLED, current, reason=reason)
        )
        return True

    async def _apply(
        self,
        execution: WorkflowStepExecution,
        transition: StepTransition,
    ) -> WorkflowStepExecution:
        updated = await self.store.apply_step_transition(execution, transition)
        if updated is None:
            raise ConcurrencyConflictError(
                f"Step execution {execution.id} changed concurrently; "
                f"'{transition.kind}' not applied",
                step_execution_id=str(execution.id),
                transition=transition.kind,
            )
        return updated

    async def _load_active(
        self, step_execution_id: UUID
    ) -> tuple[WorkflowStepExecution, WorkflowInstance]:
        """Load a step execution that must be IN_PROGRESS in an active instance."""
        execution = await self._get_step_execution(step_execution_id)
        instance = await self._get_instance_for(execution)

        if instance.is_terminal:
            raise InvalidStateError(
                f"Instance {instance.id} is already {instance.status.value}",
                instance_id=str(instance.id),
                status=instance.status.value,
            )
        if execution.status != StepStatus.IN_PROGRESS:
            raise InvalidStateError(
                f"Step execution {step_execution_id} is {execution.status.value}, not IN_PROGRESS",
                step_execution_id=str(step_execution_id),
                status=execution.status.value,
            )
        return execution, instance

    async def _get_step_execution(self, step_execution_id: UUID) -> WorkflowStepExecution:
        execution = await self.store.get_step_execution(step_execution_id)
        if execution is None:
            raise NotFoundError("StepExecution", step_execution_id)
        return execution

    async def _get_instance_for(self, execution: WorkflowStepExecution) -> WorkflowInstance:
        instance = await self.store.get_instance(execution.instance_id)
        if instance is None:
            raise NotFoundError("Instance", execution.instance_id)
        return instance

    async def _get_template(self, template_id: UUID) -> WorkflowTemplate:
        return await self.registry.get_template(template_id)

    def _get_step(
        self,
        template: WorkflowTemplate,
        execution: WorkflowStepExecution,
    ) -> WorkflowStep:
        step = template.get_step(execution.step_id)
        if step is None:
            raise NotFoundError("Step", f"{template.id}/{execution.step_id}")
        return step

    async def _publish(self, event: WorkflowEvent) -> None:
        try:
            await self.events.publish(event)
        except Exception as e:
            logger.warning(f"Failed to publish {event.type.value} for instance {event.instance_id}: {e}")
