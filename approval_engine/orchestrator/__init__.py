"""Workflow engine and background sweeps."""

from approval_engine.orchestrator.auto_approval import AutoApprovalEvaluator
from approval_engine.orchestrator.engine import WorkflowEngine
from approval_engine.orchestrator.scheduler import SweepRunner
from approval_engine.orchestrator.timeouts import TimeoutSweeper

__all__ = ["AutoApprovalEvaluator", "WorkflowEngine", "SweepRunner", "TimeoutSweeper"]
