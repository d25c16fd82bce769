"""
Timeout sweep.

Acts on active steps whose ``assigned_at + timeout_hours`` has passed:
optional steps are skipped, required steps are escalated, rejected, or
only reported, depending on ``SWEEP_TIMEOUT_ACTION``.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from approval_engine.config import Settings, TimeoutAction
from approval_engine.core.errors import ConcurrencyConflictError, InvalidStateError
from approval_engine.core.models import SweepReport, WorkflowTemplate
from approval_engine.core.state_machine import Decision, InstanceStatus
from approval_engine.orchestrator.engine import WorkflowEngine

logger = logging.getLogger(__name__)


class TimeoutSweeper:
    """Applies the configured timeout policy to overdue steps."""

    def __init__(self, engine: WorkflowEngine, settings: Optional[Settings] = None):
        self.engine = engine
        self.store = engine.store
        self.settings = settings or engine.settings

    @property
    def action(self) -> TimeoutAction:
        return self.settings.sweep.timeout_action

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run one timeout pass.

        Args:
            now: Reference time; defaults to the current UTC time

        Returns:
            SweepReport listing overdue steps acted on, skipped, flagged or failed
        """
        now = now or datetime.utcnow()
        report = SweepReport(started_at=now)
        templates: dict[UUID, Optional[WorkflowTemplate]] = {}

        for execution in await self.store.list_active_step_executions():
            instance = await self.store.get_instance(execution.instance_id)
            if instance is None or instance.status != InstanceStatus.IN_PROGRESS:
                continue

            if instance.template_id not in templates:
                templates[instance.template_id] = await self.store.get_template(instance.template_id)
            template = templates[instance.template_id]
            step = template.get_step(execution.step_id) if template else None
            if step is None or not execution.is_overdue(step, now):
                continue

            report.examined += 1
            # The clock belongs to the initiator while changes are pending
            if execution.awaiting_revision:
                report.skipped.append(execution.id)
                continue

            try:
                if not step.required:
                    await self.engine.skip_step(
                        execution.id,
                        reason=f"Timed out after {step.timeout_hours:g}h",
                    )
                    report.acted.append(execution.id)
                elif self.action == TimeoutAction.REJECT:
                    await self.engine.complete_step(
                        execution.id,
                        self.engine.system_actor,
                        Decision.REJECT,
                        comments=f"Timed out after {step.timeout_hours:g}h",
                    )
                    report.acted.append(execution.id)
                elif self.action == TimeoutAction.ESCALATE:
                    if execution.escalated_at is not None:
                        report.skipped.append(execution.id)
                        continue
                    await self.engine.escalate_step(execution.id)
                    report.acted.append(execution.id)
                else:
                    logger.warning(
                        f"Step '{step.name}' of instance {instance.id} is overdue "
                        f"(assigned {execution.assigned_at.isoformat()}, timeout {step.timeout_hours:g}h)"
                    )
                    report.flagged.append(execution.id)
            except (ConcurrencyConflictError, InvalidStateError) as e:
                logger.info(f"Timeout handling of {execution.id} skipped: {e}")
                report.skipped.append(execution.id)
            except Exception as e:
                logger.error(f"Timeout handling of {execution.id} failed: {e}", exc_info=True)
                report.failed.append(execution.id)

        report.finished_at = max(datetime.utcnow(), report.started_at)
        logger.info(
            f"Timeout sweep ({self.action.value}): examined={report.examined} "
            f"acted={len(report.acted)} flagged={len(report.flagged)} "
            f"skipped={len(report.skipped)} failed={len(report.failed)}"
        )
        return report
