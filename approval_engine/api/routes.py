"""
FastAPI routes for the approval engine API.

Implements the API endpoints:
- /v1/templates - Template registry
- POST /v1/triggers - Start workflows for a subject event
- /v1/workflows - Start, inspect, cancel and reconcile instances
- POST /v1/step-executions/:id/decision - Approve, reject or request changes
- GET /v1/tasks/:assignee_id - Pending tasks of an actor
- POST /v1/sweeps/* - Run a background sweep on demand
- GET /v1/health - Health check

Actor ids are supplied by the caller; authentication happens upstream.
"""

import logging
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import text

from approval_engine import __version__
from approval_engine.core.models import (
    PendingTask,
    SweepReport,
    TemplateDefinition,
    TriggerEvent,
    WorkflowInstance,
    WorkflowStepExecution,
    WorkflowTemplate,
)
from approval_engine.core.state_machine import Decision
from approval_engine.orchestrator.auto_approval import AutoApprovalEvaluator
from approval_engine.orchestrator.engine import WorkflowEngine
from approval_engine.orchestrator.timeouts import TimeoutSweeper
from approval_engine.registry.templates import TemplateRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


# ==================== Request/Response Models ====================

class StartWorkflowRequest(BaseModel):
    """Request body for starting a workflow."""

    template_id: UUID
    subject_id: str = Field(..., min_length=1)
    initiated_by: str = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CancelWorkflowRequest(BaseModel):
    """Request body for cancelling a workflow."""

    reason: Optional[str] = Field(default=None, max_length=2000)


class DecisionRequest(BaseModel):
    """Request body for a step decision."""

    actor: str = Field(..., min_length=1)
    decision: Decision
    comments: Optional[str] = Field(default=None, max_length=5000)

    model_config = {
        "json_schema_extra": {
            "example": {"actor": "alice", "decision": "approve", "comments": "Looks good"}
        }
    }


class ResubmitRequest(BaseModel):
    """Request body for resubmitting a step after requested changes."""

    actor: str = Field(..., min_length=1)
    comments: Optional[str] = Field(default=None, max_length=5000)


class InstanceDetailResponse(BaseModel):
    """An instance with its step executions."""

    instance: WorkflowInstance
    steps: list[WorkflowStepExecution]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    services: dict[str, str]


# ==================== Dependency Injection ====================

async def get_engine(request: Request) -> WorkflowEngine:
    """Get the workflow engine from app state."""
    return request.app.state.engine


async def get_registry(request: Request) -> TemplateRegistry:
    """Get the template registry from app state."""
    return request.app.state.registry


async def get_auto_approval(request: Request) -> AutoApprovalEvaluator:
    return request.app.state.auto_approval


async def get_timeouts(request: Request) -> TimeoutSweeper:
    return request.app.state.timeouts


# ==================== Template Routes ====================

@router.post(
    "/templates",
    response_model=WorkflowTemplate,
    status_code=status.HTTP_201_CREATED,
    tags=["templates"],
    summary="Create a template",
)
async def create_template(
    definition: TemplateDefinition,
    registry: TemplateRegistry = Depends(get_registry),
) -> WorkflowTemplate:
    return await registry.create_template(definition)


@router.get("/templates", response_model=list[WorkflowTemplate], tags=["templates"])
async def list_templates(
    active_only: bool = Query(default=False),
    registry: TemplateRegistry = Depends(get_registry),
) -> list[WorkflowTemplate]:
    return await registry.list_templates(active_only=active_only)


@router.get("/templates/{template_id}", response_model=WorkflowTemplate, tags=["templates"])
async def get_template(
    template_id: UUID,
    registry: TemplateRegistry = Depends(get_registry),
) -> WorkflowTemplate:
    return await registry.get_template(template_id)


@router.put(
    "/templates/{template_id}",
    response_model=WorkflowTemplate,
    tags=["templates"],
    summary="Replace a template",
    description="Only allowed while no workflow instance references the template.",
)
async def update_template(
    template_id: UUID,
    definition: TemplateDefinition,
    registry: TemplateRegistry = Depends(get_registry),
) -> WorkflowTemplate:
    return await registry.update_template(template_id, definition)


@router.post("/templates/{template_id}/activate", response_model=WorkflowTemplate, tags=["templates"])
async def activate_template(
    template_id: UUID,
    registry: TemplateRegistry = Depends(get_registry),
) -> WorkflowTemplate:
    return await registry.set_template_active(template_id, True)


@router.post("/templates/{template_id}/deactivate", response_model=WorkflowTemplate, tags=["templates"])
async def deactivate_template(
    template_id: UUID,
    registry: TemplateRegistry = Depends(get_registry),
) -> WorkflowTemplate:
    return await registry.set_template_active(template_id, False)


@router.delete(
    "/templates/{template_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["templates"],
)
async def delete_template(
    template_id: UUID,
    registry: TemplateRegistry = Depends(get_registry),
) -> Response:
    await registry.delete_template(template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ==================== Workflow Routes ====================

@router.post(
    "/triggers",
    response_model=list[WorkflowInstance],
    status_code=status.HTTP_202_ACCEPTED,
    tags=["workflows"],
    summary="Handle a subject event",
    description="Starts one workflow per active template matching the trigger.",
)
async def handle_trigger(
    event: TriggerEvent,
    engine: WorkflowEngine = Depends(get_engine),
) -> list[WorkflowInstance]:
    return await engine.handle_trigger(event)


@router.post(
    "/workflows",
    response_model=WorkflowInstance,
    status_code=status.HTTP_201_CREATED,
    tags=["workflows"],
    summary="Start a workflow",
)
async def start_workflow(
    body: StartWorkflowRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> WorkflowInstance:
    return await engine.start_workflow(
        body.template_id,
        body.subject_id,
        body.initiated_by,
        metadata=body.metadata,
    )


@router.get("/workflows/{instance_id}", response_model=InstanceDetailResponse, tags=["workflows"])
async def get_workflow(
    instance_id: UUID,
    engine: WorkflowEngine = Depends(get_engine),
) -> InstanceDetailResponse:
    instance = await engine.get_instance(instance_id)
    steps = await engine.get_step_executions(instance_id)
    return InstanceDetailResponse(instance=instance, steps=steps)


@router.get(
    "/subjects/{subject_id}/workflows",
    response_model=list[WorkflowInstance],
    tags=["workflows"],
)
async def get_workflows_for_subject(
    subject_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> list[WorkflowInstance]:
    return await engine.get_instances_for_subject(subject_id)


@router.post("/workflows/{instance_id}/cancel", response_model=WorkflowInstance, tags=["workflows"])
async def cancel_workflow(
    instance_id: UUID,
    body: Optional[CancelWorkflowRequest] = None,
    engine: WorkflowEngine = Depends(get_engine),
) -> WorkflowInstance:
    return await engine.cancel_workflow(instance_id, body.reason if body else None)


@router.post("/workflows/{instance_id}/reconcile", response_model=WorkflowInstance, tags=["workflows"])
async def reconcile_workflow(
    instance_id: UUID,
    engine: WorkflowEngine = Depends(get_engine),
) -> WorkflowInstance:
    return await engine.reconcile_instance(instance_id)


# ==================== Step Routes ====================

@router.post(
    "/step-executions/{step_execution_id}/decision",
    response_model=WorkflowStepExecution,
    tags=["steps"],
    summary="Decide an active step",
)
async def complete_step(
    step_execution_id: UUID,
    body: DecisionRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> WorkflowStepExecution:
    return await engine.complete_step(step_execution_id, body.actor, body.decision, body.comments)


@router.post(
    "/step-executions/{step_execution_id}/resubmit",
    response_model=WorkflowStepExecution,
    tags=["steps"],
)
async def resubmit_step(
    step_execution_id: UUID,
    body: ResubmitRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> WorkflowStepExecution:
    return await engine.resubmit_step(step_execution_id, body.actor, body.comments)


@router.get("/tasks/{assignee_id}", response_model=list[PendingTask], tags=["steps"])
async def get_pending_tasks(
    assignee_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> list[PendingTask]:
    return await engine.get_pending_tasks(assignee_id)


# ==================== Sweep Routes ====================

@router.post("/sweeps/auto-approval", response_model=SweepReport, tags=["sweeps"])
async def run_auto_approval_sweep(
    evaluator: AutoApprovalEvaluator = Depends(get_auto_approval),
) -> SweepReport:
    return await evaluator.sweep()


@router.post("/sweeps/timeouts", response_model=SweepReport, tags=["sweeps"])
async def run_timeout_sweep(
    sweeper: TimeoutSweeper = Depends(get_timeouts),
) -> SweepReport:
    return await sweeper.sweep()


# ==================== Health Check Routes ====================

@router.get(
    "/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check",
    description="Check the health status of the engine's backing services.",
)
async def health_check(request: Request) -> HealthResponse:
    """Check health of all services."""
    services = {}

    database = getattr(request.app.state, "database", None)
    if database is not None:
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            services["database"] = "healthy"
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            services["database"] = "unhealthy"
    else:
        services["database"] = "memory"

    redis_connection = getattr(request.app.state, "redis", None)
    if redis_connection is not None:
        services["redis"] = "healthy" if await redis_connection.health_check() else "unhealthy"
    else:
        services["redis"] = "disabled"

    sweep_runner = getattr(request.app.state, "sweep_runner", None)
    if sweep_runner is not None:
        services["sweeps"] = "running" if sweep_runner.is_running else "stopped"

    unhealthy_count = sum(1 for s in services.values() if s == "unhealthy")
    if unhealthy_count == 0:
        overall_status = "healthy"
    elif unhealthy_count == len(services):
        overall_status = "unhealthy"
    else:
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        services=services,
    )
