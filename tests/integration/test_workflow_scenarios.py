"""
Integration tests for workflow scenarios.

Tests the key scenarios against the in-memory store:
- Scenario A (Linear): A → B, both approved, instance completes
- Scenario B (Reject): A rejected, B skipped, instance cancelled
- Scenario C (Auto-approval): one sweep approves and advances exactly like a human
- Scenario D (Race Conditions): concurrent decisions on one step, one wins
"""

import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from approval_engine.config import EngineSettings, Environment, Settings
from approval_engine.core.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from approval_engine.core.models import TriggerEvent, TriggerKind, WorkflowStep
from approval_engine.core.state_machine import Decision, InstanceStatus, StepStatus
from approval_engine.core.transitions import EscalateStep, RecordDecision
from approval_engine.messaging.events import WorkflowEventType
from approval_engine.messaging.notifications import NotificationDispatcher
from approval_engine.orchestrator.auto_approval import AutoApprovalEvaluator
from approval_engine.orchestrator.engine import WorkflowEngine
from approval_engine.subjects.reader import SubjectUnavailableError


async def _executions(engine, instance):
    return await engine.get_step_executions(instance.id)


def _event_types(event_publisher) -> list[WorkflowEventType]:
    return [call.args[0].type for call in event_publisher.publish.await_args_list]


def _notified(notification_sink) -> list[tuple[str, str]]:
    return [(call.args[0], call.args[1].reason) for call in notification_sink.send.await_args_list]


# ==================== Scenario A: Linear ====================


class TestScenarioALinear:
    """A → B approved in order."""

    @pytest.mark.asyncio
    async def test_start_activates_first_step(self, engine, two_step_template, notification_sink):
        """Test starting a workflow activates only the first step."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, exec_b = await _executions(engine, instance)

        assert instance.status == InstanceStatus.IN_PROGRESS
        assert instance.current_step_execution_id == exec_a.id
        assert exec_a.status == StepStatus.IN_PROGRESS
        assert exec_a.assigned_at is not None
        assert exec_b.status == StepStatus.PENDING
        assert _notified(notification_sink) == [("alice", "step_activated")]

    @pytest.mark.asyncio
    async def test_approve_all_completes(self, engine, two_step_template, event_publisher):
        """Test approving every step completes the instance."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, exec_b = await _executions(engine, instance)

        await engine.complete_step(exec_a.id, "alice", Decision.APPROVE, "looks good")
        instance = await engine.get_instance(instance.id)
        exec_a, exec_b = await _executions(engine, instance)

        assert exec_a.status == StepStatus.COMPLETED
        assert exec_a.decision == Decision.APPROVE
        assert exec_a.completed_by == "alice"
        assert exec_b.status == StepStatus.IN_PROGRESS
        assert instance.status == InstanceStatus.IN_PROGRESS
        assert instance.current_step_execution_id == exec_b.id

        await engine.complete_step(exec_b.id, "legal-lead", Decision.APPROVE)
        instance = await engine.get_instance(instance.id)
        exec_a, exec_b = await _executions(engine, instance)

        assert exec_b.status == StepStatus.COMPLETED
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.completed_at is not None
        assert instance.current_step_execution_id is None
        assert _event_types(event_publisher) == [
            WorkflowEventType.STEP_ACTIVATED,
            WorkflowEventType.STARTED,
            WorkflowEventType.STEP_ACTIVATED,
            WorkflowEventType.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_decision_on_pending_step_rejected(self, engine, two_step_template):
        """Test a step cannot be decided before it is activated."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        _, exec_b = await _executions(engine, instance)

        with pytest.raises(InvalidStateError):
            await engine.complete_step(exec_b.id, "legal-lead", Decision.APPROVE)

    @pytest.mark.asyncio
    async def test_decision_on_completed_step_rejected(self, engine, two_step_template):
        """Test a decided step cannot be decided again."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)
        await engine.complete_step(exec_a.id, "alice", Decision.APPROVE)

        with pytest.raises(InvalidStateError):
            await engine.complete_step(exec_a.id, "alice", Decision.REJECT)

    @pytest.mark.asyncio
    async def test_unknown_decision_rejected(self, engine, two_step_template):
        """Test an unknown decision value raises ValidationError and changes nothing."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)

        with pytest.raises(ValidationError):
            await engine.complete_step(exec_a.id, "alice", "maybe")

        exec_a, _ = await _executions(engine, instance)
        assert exec_a.status == StepStatus.IN_PROGRESS
        assert exec_a.decision is None

    @pytest.mark.asyncio
    async def test_unknown_ids(self, engine):
        """Test unknown ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await engine.start_workflow(uuid4(), "doc-1", "u1")
        with pytest.raises(NotFoundError):
            await engine.complete_step(uuid4(), "alice", Decision.APPROVE)
        with pytest.raises(NotFoundError):
            await engine.cancel_workflow(uuid4())

    @pytest.mark.asyncio
    async def test_inactive_template_cannot_start(self, engine, registry, two_step_template):
        """Test deactivated templates cannot be instantiated."""
        await registry.set_template_active(two_step_template.id, False)

        with pytest.raises(InvalidStateError):
            await engine.start_workflow(two_step_template.id, "doc-1", "u1")


# ==================== Scenario B: Reject ====================


class TestScenarioBReject:
    """A rejected, remaining steps skipped."""

    @pytest.mark.asyncio
    async def test_reject_cancels_instance(self, engine, two_step_template, event_publisher):
        """Test a reject cancels the instance and skips the rest."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)

        await engine.complete_step(exec_a.id, "alice", Decision.REJECT, "missing annex")
        instance = await engine.get_instance(instance.id)
        exec_a, exec_b = await _executions(engine, instance)

        assert exec_a.status == StepStatus.COMPLETED
        assert exec_a.decision == Decision.REJECT
        assert exec_a.comments == "missing annex"
        assert exec_b.status == StepStatus.SKIPPED
        assert instance.status == InstanceStatus.CANCELLED
        assert instance.cancellation_reason == "Rejected at step Manager Review"
        assert _event_types(event_publisher)[-1] == WorkflowEventType.CANCELLED


# ==================== Scenario C: Auto-approval ====================


class TestScenarioCAutoApproval:
    """Auto-approve steps approved by the sweep."""

    @pytest.mark.asyncio
    async def test_sweep_approves_and_advances(self, engine, auto_approval, auto_approve_template):
        """Test one sweep approves the step and activates the next."""
        instance = await engine.start_workflow(auto_approve_template.id, "doc-1", "u1")
        auto_exec, _ = await _executions(engine, instance)
        assert auto_exec.assignee_id == "system"

        report = await auto_approval.sweep()
        auto_exec, final_exec = await _executions(engine, instance)

        assert report.acted == [auto_exec.id]
        assert report.examined == 1
        assert report.finished_at is not None
        assert auto_exec.status == StepStatus.COMPLETED
        assert auto_exec.decision == Decision.APPROVE
        assert auto_exec.completed_by == "system"
        assert auto_exec.comments == "Auto-approved"
        assert final_exec.status == StepStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_conditions_not_met(self, engine, auto_approval, auto_approve_template):
        """Test a subject failing the conditions is left for later."""
        instance = await engine.start_workflow(auto_approve_template.id, "doc-2", "u1")
        auto_exec, _ = await _executions(engine, instance)

        report = await auto_approval.sweep()

        assert report.acted == []
        assert report.skipped == [auto_exec.id]
        assert (await _executions(engine, instance))[0].status == StepStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_conditions_met_later(self, engine, auto_approval, subjects, auto_approve_template):
        """Test conditions are re-read from the subject on every sweep."""
        instance = await engine.start_workflow(auto_approve_template.id, "doc-2", "u1")
        await auto_approval.sweep()

        subjects.set_attributes("doc-2", {"status": "draft"})
        report = await auto_approval.sweep()

        assert len(report.acted) == 1
        assert (await _executions(engine, instance))[0].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_subject_never_approved(self, engine, auto_approval, auto_approve_template):
        """Test a subject that does not exist never qualifies."""
        await engine.start_workflow(auto_approve_template.id, "doc-gone", "u1")

        report = await auto_approval.sweep()

        assert report.acted == []
        assert len(report.skipped) == 1

    @pytest.mark.asyncio
    async def test_cancelled_instance_ignored(self, engine, auto_approval, auto_approve_template):
        """Test the sweep never touches cancelled instances."""
        instance = await engine.start_workflow(auto_approve_template.id, "doc-1", "u1")
        await engine.cancel_workflow(instance.id, "withdrawn")

        report = await auto_approval.sweep()

        assert report.examined == 0
        assert report.acted == []
        assert all(e.status == StepStatus.SKIPPED for e in await _executions(engine, instance))

    @pytest.mark.asyncio
    async def test_step_awaiting_revision_ignored(self, engine, auto_approval, auto_approve_template):
        """Test a step with pending change requests is not auto-approved."""
        instance = await engine.start_workflow(auto_approve_template.id, "doc-1", "u1")
        auto_exec, _ = await _executions(engine, instance)
        await engine.complete_step(auto_exec.id, "reviewer", Decision.REQUEST_CHANGES, "fix title")

        report = await auto_approval.sweep()

        assert report.skipped == [auto_exec.id]
        assert (await _executions(engine, instance))[0].status == StepStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_manual_steps_ignored(self, engine, auto_approval, two_step_template):
        """Test steps without auto_approve are not examined."""
        await engine.start_workflow(two_step_template.id, "doc-1", "u1")

        report = await auto_approval.sweep()

        assert report.examined == 0


# ==================== Scenario D: Race Conditions ====================


class TestScenarioDRaceConditions:
    """Concurrent writers against one step."""

    @pytest.mark.asyncio
    async def test_concurrent_approvals_one_wins(self, engine, two_step_template, event_publisher):
        """Test two concurrent approvals record exactly one decision."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)

        results = await asyncio.gather(
            engine.complete_step(exec_a.id, "alice", Decision.APPROVE),
            engine.complete_step(exec_a.id, "alice-delegate", Decision.APPROVE),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], (ConcurrencyConflictError, InvalidStateError))

        _, exec_b = await _executions(engine, instance)
        assert exec_b.status == StepStatus.IN_PROGRESS
        assert _event_types(event_publisher).count(WorkflowEventType.STEP_ACTIVATED) == 2

    @pytest.mark.asyncio
    async def test_approve_races_reject(self, engine, two_step_template):
        """Test an approve racing a reject leaves a consistent instance."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)

        results = await asyncio.gather(
            engine.complete_step(exec_a.id, "alice", Decision.APPROVE),
            engine.complete_step(exec_a.id, "bob", Decision.REJECT),
            return_exceptions=True,
        )
        winner = next(r for r in results if not isinstance(r, Exception))
        instance = await engine.get_instance(instance.id)
        _, exec_b = await _executions(engine, instance)

        if winner.decision == Decision.APPROVE:
            assert instance.status == InstanceStatus.IN_PROGRESS
            assert exec_b.status == StepStatus.IN_PROGRESS
        else:
            assert instance.status == InstanceStatus.CANCELLED
            assert exec_b.status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_cancel_races_approve(self, engine, two_step_template):
        """Test no step is activated after a concurrent cancellation wins."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)

        await asyncio.gather(
            engine.cancel_workflow(instance.id, "withdrawn"),
            engine.complete_step(exec_a.id, "alice", Decision.APPROVE),
            return_exceptions=True,
        )
        instance = await engine.get_instance(instance.id)
        executions = await _executions(engine, instance)

        if instance.status == InstanceStatus.CANCELLED:
            assert all(e.status != StepStatus.IN_PROGRESS for e in executions)
        else:
            assert instance.status == InstanceStatus.IN_PROGRESS
            assert executions[1].status == StepStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_stale_version_conflict(self, engine, store, two_step_template):
        """Test a write based on a stale read is refused."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)

        assert await store.apply_step_transition(exec_a, EscalateStep()) is not None
        assert await store.apply_step_transition(exec_a, EscalateStep()) is None

    @pytest.mark.asyncio
    async def test_update_races_start(
        self, engine, registry, store, two_step_template, two_step_definition, monkeypatch
    ):
        """Test a template replaced while an instance is being created never leaves mismatched steps."""
        create_instance = store.create_instance

        async def slow_create_instance(*args, **kwargs):
            await asyncio.sleep(0.01)
            return await create_instance(*args, **kwargs)

        monkeypatch.setattr(store, "create_instance", slow_create_instance)
        replacement = two_step_definition.model_copy(
            update={"steps": [WorkflowStep(id="z", name="Director", assignee_id="dir", order=1)]}
        )

        updated, started = await asyncio.gather(
            registry.update_template(two_step_template.id, replacement),
            engine.start_workflow(two_step_template.id, "doc-1", "u1"),
            return_exceptions=True,
        )

        assert [s.id for s in updated.steps] == ["z"]
        assert isinstance(started, ConcurrencyConflictError)
        assert started.retryable is True
        assert await engine.get_instances_for_subject("doc-1") == []

    @pytest.mark.asyncio
    async def test_delete_races_start(self, engine, registry, store, two_step_template, monkeypatch):
        """Test deleting a template while an instance is being created leaves no orphan instance."""
        create_instance = store.create_instance

        async def slow_create_instance(*args, **kwargs):
            await asyncio.sleep(0.01)
            return await create_instance(*args, **kwargs)

        monkeypatch.setattr(store, "create_instance", slow_create_instance)

        deleted, started = await asyncio.gather(
            registry.delete_template(two_step_template.id),
            engine.start_workflow(two_step_template.id, "doc-1", "u1"),
            return_exceptions=True,
        )

        assert deleted is None
        assert isinstance(started, NotFoundError)
        assert await engine.get_instances_for_subject("doc-1") == []

    @pytest.mark.asyncio
    async def test_update_after_start_refused(
        self, engine, registry, store, two_step_template, two_step_definition
    ):
        """Test the store itself refuses to replace a referenced template."""
        await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        replacement = two_step_template.model_copy(update={"name": "Replaced"})

        assert await store.replace_template(replacement) is None
        with pytest.raises(InvalidStateError):
            await registry.update_template(two_step_template.id, two_step_definition)
        assert (await registry.get_template(two_step_template.id)).name == two_step_template.name


# ==================== Cancellation ====================


class TestCancellation:
    """Tests for cancel_workflow."""

    @pytest.mark.asyncio
    async def test_cancel_skips_open_steps(self, engine, two_step_template):
        """Test cancelling skips active and pending steps."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")

        cancelled = await engine.cancel_workflow(instance.id, "withdrawn")
        executions = await _executions(engine, instance)

        assert cancelled.status == InstanceStatus.CANCELLED
        assert cancelled.cancellation_reason == "withdrawn"
        assert cancelled.completed_at is not None
        assert [e.status for e in executions] == [StepStatus.SKIPPED, StepStatus.SKIPPED]

    @pytest.mark.asyncio
    async def test_second_cancel_rejected(self, engine, two_step_template):
        """Test cancelling twice raises and leaves the first reason."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        await engine.cancel_workflow(instance.id, "first")

        with pytest.raises(InvalidStateError):
            await engine.cancel_workflow(instance.id, "second")

        assert (await engine.get_instance(instance.id)).cancellation_reason == "first"

    @pytest.mark.asyncio
    async def test_cancel_completed_rejected(self, engine, two_step_template):
        """Test completed instances cannot be cancelled."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        for execution in await _executions(engine, instance):
            await engine.complete_step(execution.id, "x", Decision.APPROVE)

        with pytest.raises(InvalidStateError):
            await engine.cancel_workflow(instance.id)

    @pytest.mark.asyncio
    async def test_decisions_after_cancel_rejected(self, engine, two_step_template):
        """Test no decision lands on a cancelled instance."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)
        await engine.cancel_workflow(instance.id)

        with pytest.raises(InvalidStateError):
            await engine.complete_step(exec_a.id, "alice", Decision.APPROVE)


# ==================== Request Changes ====================


class TestRequestChanges:
    """Tests for the revision loop."""

    @pytest.mark.asyncio
    async def test_request_resubmit_approve(self, engine, two_step_template, notification_sink):
        """Test the full revision loop ends in a normal approval."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)

        requested = await engine.complete_step(
            exec_a.id, "alice", Decision.REQUEST_CHANGES, "fix section 2"
        )
        assert requested.status == StepStatus.IN_PROGRESS
        assert requested.awaiting_revision
        assert requested.revision_count == 1

        resubmitted = await engine.resubmit_step(exec_a.id, "u1", "fixed")
        assert not resubmitted.awaiting_revision
        assert resubmitted.decision is None

        await engine.complete_step(exec_a.id, "alice", Decision.APPROVE)
        _, exec_b = await _executions(engine, instance)

        assert exec_b.status == StepStatus.IN_PROGRESS
        assert _notified(notification_sink) == [
            ("alice", "step_activated"),
            ("u1", "changes_requested"),
            ("alice", "resubmitted"),
            ("legal", "step_activated"),
        ]

    @pytest.mark.asyncio
    async def test_decision_while_awaiting_revision(self, engine, two_step_template):
        """Test the assignee can still approve or reject while awaiting revision."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)
        await engine.complete_step(exec_a.id, "alice", Decision.REQUEST_CHANGES)

        with pytest.raises(InvalidStateError):
            await engine.complete_step(exec_a.id, "alice", Decision.REQUEST_CHANGES)

        await engine.complete_step(exec_a.id, "alice", Decision.REJECT)
        assert (await engine.get_instance(instance.id)).status == InstanceStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_resubmit_requires_pending_changes(self, engine, two_step_template):
        """Test resubmitting a step without change requests is refused."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)

        with pytest.raises(InvalidStateError):
            await engine.resubmit_step(exec_a.id, "u1")

    @pytest.mark.asyncio
    async def test_revision_limit_becomes_reject(
        self, store, registry, notification_sink, event_publisher, two_step_template
    ):
        """Test a change request beyond the limit rejects the step."""
        settings = Settings(environment=Environment.TEST, engine=EngineSettings(max_revisions=1))
        engine = WorkflowEngine(
            store,
            registry=registry,
            notifier=NotificationDispatcher(notification_sink),
            events=event_publisher,
            settings=settings,
        )
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)

        await engine.complete_step(exec_a.id, "alice", Decision.REQUEST_CHANGES)
        await engine.resubmit_step(exec_a.id, "u1")
        final = await engine.complete_step(exec_a.id, "alice", Decision.REQUEST_CHANGES)

        assert final.status == StepStatus.COMPLETED
        assert final.decision == Decision.REJECT
        assert final.comments == "Revision limit of 1 reached"
        assert (await engine.get_instance(instance.id)).status == InstanceStatus.CANCELLED


# ==================== Triggers and Queries ====================


class TestTriggers:
    """Tests for handle_trigger."""

    @pytest.mark.asyncio
    async def test_trigger_starts_matching_templates(self, engine, two_step_template, auto_approve_template):
        """Test only templates for the trigger and category start."""
        started = await engine.handle_trigger(
            TriggerEvent(
                trigger=TriggerKind.CREATE,
                subject_id="doc-1",
                subject_category="policy",
                initiated_by="u1",
                metadata={"source": "upload"},
            )
        )

        assert [i.template_id for i in started] == [two_step_template.id]
        assert started[0].metadata == {"source": "upload", "trigger": "create"}
        assert started[0].status == InstanceStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_no_matching_template(self, engine, two_step_template):
        """Test a trigger without templates starts nothing."""
        started = await engine.handle_trigger(
            TriggerEvent(trigger=TriggerKind.CREATE, subject_id="doc-2", subject_category="contract")
        )
        assert started == []


class TestQueries:
    """Tests for pending tasks, subject lookups and reconciliation."""

    @pytest.mark.asyncio
    async def test_pending_tasks(self, engine, two_step_template):
        """Test tasks list only active steps of the assignee."""
        first = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        second = await engine.start_workflow(two_step_template.id, "doc-2", "u1")
        exec_a, _ = await _executions(engine, second)
        await engine.complete_step(exec_a.id, "alice", Decision.APPROVE)

        alice_tasks = await engine.get_pending_tasks("alice")
        legal_tasks = await engine.get_pending_tasks("legal")

        assert [t.instance.id for t in alice_tasks] == [first.id]
        assert alice_tasks[0].step.name == "Manager Review"
        assert alice_tasks[0].template_name == "Two Step Review"
        assert [t.instance.id for t in legal_tasks] == [second.id]

    @pytest.mark.asyncio
    async def test_cancelled_tasks_disappear(self, engine, two_step_template):
        """Test cancelled instances leave no tasks behind."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        await engine.cancel_workflow(instance.id)

        assert await engine.get_pending_tasks("alice") == []

    @pytest.mark.asyncio
    async def test_instances_for_subject(self, engine, two_step_template):
        """Test subject lookups return every instance for the subject."""
        first = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        second = await engine.start_workflow(two_step_template.id, "doc-1", "u2")
        await engine.start_workflow(two_step_template.id, "doc-2", "u1")

        instances = await engine.get_instances_for_subject("doc-1")

        assert {i.id for i in instances} == {first.id, second.id}

    @pytest.mark.asyncio
    async def test_reconcile_activates_stranded_step(self, engine, store, two_step_template):
        """Test reconciliation activates a step left pending after a decision."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)
        # Decision recorded without the follow-up activation
        await store.apply_step_transition(
            exec_a, RecordDecision(actor="alice", decision=Decision.APPROVE)
        )

        repaired = await engine.reconcile_instance(instance.id)
        _, exec_b = await _executions(engine, instance)

        assert exec_b.status == StepStatus.IN_PROGRESS
        assert repaired.current_step_execution_id == exec_b.id

    @pytest.mark.asyncio
    async def test_reconcile_is_idempotent(self, engine, two_step_template):
        """Test reconciling a healthy instance changes nothing."""
        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        before = await _executions(engine, instance)

        await engine.reconcile_instance(instance.id)
        await engine.reconcile_instance(instance.id)

        assert await _executions(engine, instance) == before


class TestAutoApprovalFailures:
    """Auto-approval when the subject service misbehaves."""

    @pytest.mark.asyncio
    async def test_subject_unavailable_recorded(self, engine, auto_approve_template):
        """Test reader failures are recorded and leave the step active."""
        subjects = AsyncMock()
        subjects.get_attributes.side_effect = SubjectUnavailableError("subject service down")
        evaluator = AutoApprovalEvaluator(engine, subjects)
        instance = await engine.start_workflow(auto_approve_template.id, "doc-1", "u1")
        auto_exec, _ = await _executions(engine, instance)

        report = await evaluator.sweep()

        assert report.failed == [auto_exec.id]
        assert (await _executions(engine, instance))[0].status == StepStatus.IN_PROGRESS


class TestNotificationFailures:
    """Delivery failures never fail or roll back engine operations."""

    @pytest.mark.asyncio
    async def test_workflow_advances_when_delivery_fails(
        self, engine, two_step_template, notification_sink, event_publisher
    ):
        """Test start and approvals succeed while the sink and publisher raise."""
        notification_sink.send.side_effect = RuntimeError("smtp down")
        event_publisher.publish.side_effect = ConnectionError("broker down")

        instance = await engine.start_workflow(two_step_template.id, "doc-1", "u1")
        exec_a, _ = await _executions(engine, instance)
        assert instance.status == InstanceStatus.IN_PROGRESS
        assert exec_a.status == StepStatus.IN_PROGRESS

        await engine.complete_step(exec_a.id, "alice", Decision.APPROVE)
        instance = await engine.get_instance(instance.id)
        exec_a, exec_b = await _executions(engine, instance)
        assert exec_a.status == StepStatus.COMPLETED
        assert exec_b.status == StepStatus.IN_PROGRESS
        assert instance.current_step_execution_id == exec_b.id

        await engine.complete_step(exec_b.id, "legal-lead", Decision.APPROVE)
        instance = await engine.get_instance(instance.id)
        assert instance.status == InstanceStatus.COMPLETED

        assert notification_sink.send.await_count >= 2
        assert event_publisher.publish.await_count >= 3
