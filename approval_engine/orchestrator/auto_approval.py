"""
Auto-approval sweep.

Approves active steps that are marked ``auto_approve`` once their
conditions hold for the subject's current attributes. Approval goes through
the same decision path as a human approver, so a sweep racing a human
simply loses or wins the conditional write.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from approval_engine.core.conditions import ConditionError, evaluate_conditions
from approval_engine.core.errors import ConcurrencyConflictError, InvalidStateError
from approval_engine.core.models import (
    SweepReport,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
)
from approval_engine.core.state_machine import Decision, InstanceStatus
from approval_engine.orchestrator.engine import WorkflowEngine
from approval_engine.subjects.reader import SubjectAttributeReader

logger = logging.getLogger(__name__)


class AutoApprovalEvaluator:
    """Evaluates and applies auto-approval for unattended steps."""

    def __init__(self, engine: WorkflowEngine, subjects: SubjectAttributeReader):
        self.engine = engine
        self.store = engine.store
        self.subjects = subjects

    async def evaluate(self, instance: WorkflowInstance, step: WorkflowStep) -> bool:
        """
        Check whether a step may be auto-approved right now.

        Steps without conditions always qualify. A subject that no longer
        exists never qualifies.
        """
        if not step.auto_approve:
            return False
        if not step.conditions:
            return True

        attributes = await self.subjects.get_attributes(instance.subject_id)
        if attributes is None:
            logger.info(f"Subject {instance.subject_id} not found; step '{step.name}' not auto-approved")
            return False
        return evaluate_conditions(step.conditions, attributes)

    async def sweep(self) -> SweepReport:
        """
        Run one auto-approval pass over every active step.

        Errors are recorded per step and never stop the sweep.
        """
        report = SweepReport()
        templates: dict[UUID, Optional[WorkflowTemplate]] = {}

        for execution in await self.store.list_active_step_executions():
            instance = await self.store.get_instance(execution.instance_id)
            if instance is None or instance.status != InstanceStatus.IN_PROGRESS:
                continue

            if instance.template_id not in templates:
                templates[instance.template_id] = await self.store.get_template(instance.template_id)
            template = templates[instance.template_id]
            step = template.get_step(execution.step_id) if template else None
            if step is None or not step.auto_approve:
                continue

            report.examined += 1
            if execution.awaiting_revision:
                report.skipped.append(execution.id)
                continue

            try:
                if not await self.evaluate(instance, step):
                    report.skipped.append(execution.id)
                    continue

                await self.engine.complete_step(
                    execution.id,
                    self.engine.system_actor,
                    Decision.APPROVE,
                    comments="Auto-approved",
                )
                report.acted.append(execution.id)
                logger.info(f"Auto-approved step '{step.name}' of instance {instance.id}")
            except (ConcurrencyConflictError, InvalidStateError) as e:
                # Someone else decided or cancelled first
                logger.info(f"Auto-approval of {execution.id} skipped: {e}")
                report.skipped.append(execution.id)
            except ConditionError as e:
                logger.error(f"Invalid conditions on step '{step.name}' of template {template.id}: {e}")
                report.failed.append(execution.id)
            except Exception as e:
                logger.error(f"Auto-approval of {execution.id} failed: {e}", exc_info=True)
                report.failed.append(execution.id)

        report.finished_at = datetime.utcnow()
        logger.info(
            f"Auto-approval sweep: examined={report.examined} approved={len(report.acted)} "
            f"skipped={len(report.skipped)} failed={len(report.failed)}"
        )
        return report
