"""
Pytest fixtures and configuration for tests.
"""

from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from approval_engine.config import Environment, Settings
from approval_engine.core.models import (
    AssigneeType,
    TemplateDefinition,
    TriggerKind,
    WorkflowStep,
    WorkflowTemplate,
)
from approval_engine.messaging.notifications import NotificationDispatcher
from approval_engine.orchestrator.auto_approval import AutoApprovalEvaluator
from approval_engine.orchestrator.engine import WorkflowEngine
from approval_engine.orchestrator.timeouts import TimeoutSweeper
from approval_engine.registry.templates import TemplateRegistry
from approval_engine.storage.memory import InMemoryWorkflowStore
from approval_engine.subjects.reader import InMemorySubjectAttributeReader


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        environment=Environment.TEST,
        debug=True,
        log_level="DEBUG",
    )


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    """Fresh in-memory store."""
    return InMemoryWorkflowStore()


@pytest.fixture
def notification_sink() -> AsyncMock:
    """Sink that records every notification."""
    return AsyncMock()


@pytest.fixture
def event_publisher() -> AsyncMock:
    """Publisher that records every lifecycle event."""
    return AsyncMock()


@pytest.fixture
def registry(store, test_settings) -> TemplateRegistry:
    return TemplateRegistry(store, settings=test_settings)


@pytest.fixture
def engine(store, registry, notification_sink, event_publisher, test_settings) -> WorkflowEngine:
    """Engine wired to the in-memory store and recording sinks."""
    return WorkflowEngine(
        store,
        registry=registry,
        notifier=NotificationDispatcher(notification_sink),
        events=event_publisher,
        settings=test_settings,
    )


@pytest.fixture
def subjects() -> InMemorySubjectAttributeReader:
    return InMemorySubjectAttributeReader(
        {
            "doc-1": {"status": "draft", "category": "policy", "pages": 4},
            "doc-2": {"status": "published", "category": "contract", "pages": 40},
        }
    )


@pytest.fixture
def auto_approval(engine, subjects) -> AutoApprovalEvaluator:
    return AutoApprovalEvaluator(engine, subjects)


@pytest.fixture
def timeouts(engine, test_settings) -> TimeoutSweeper:
    return TimeoutSweeper(engine, test_settings)


@pytest.fixture
def two_step_definition() -> TemplateDefinition:
    """Sequential template: A (order 1) -> B (order 2)."""
    return TemplateDefinition(
        name="Two Step Review",
        trigger=TriggerKind.CREATE,
        subject_category="policy",
        steps=[
            WorkflowStep(id="a", name="Manager Review", assignee_id="alice", order=1),
            WorkflowStep(
                id="b",
                name="Legal Approval",
                assignee_type=AssigneeType.ROLE,
                assignee_id="legal",
                order=2,
            ),
        ],
        created_by="admin",
    )


@pytest.fixture
def auto_approve_definition() -> TemplateDefinition:
    """Single auto-approve step gated on the subject being a draft."""
    return TemplateDefinition(
        name="Draft Auto Check",
        trigger=TriggerKind.UPDATE,
        steps=[
            WorkflowStep(
                id="auto",
                name="Automatic Check",
                assignee_type=AssigneeType.SYSTEM,
                order=1,
                auto_approve=True,
                conditions={"status": "draft"},
            ),
            WorkflowStep(id="final", name="Final Sign-off", assignee_id="bob", order=2),
        ],
        created_by="admin",
    )


@pytest.fixture
def timed_definition() -> TemplateDefinition:
    """Optional step with a timeout followed by a required one with a timeout."""
    return TemplateDefinition(
        name="Timed Review",
        trigger=TriggerKind.REVIEW,
        steps=[
            WorkflowStep(
                id="peer",
                name="Peer Review",
                assignee_id="carol",
                order=1,
                required=False,
                timeout_hours=24,
            ),
            WorkflowStep(
                id="owner",
                name="Owner Approval",
                assignee_id="dave",
                order=2,
                timeout_hours=48,
            ),
        ],
        created_by="admin",
    )


@pytest_asyncio.fixture
async def two_step_template(registry, two_step_definition) -> WorkflowTemplate:
    return await registry.create_template(two_step_definition)


@pytest_asyncio.fixture
async def auto_approve_template(registry, auto_approve_definition) -> WorkflowTemplate:
    return await registry.create_template(auto_approve_definition)


@pytest_asyncio.fixture
async def timed_template(registry, timed_definition) -> WorkflowTemplate:
    return await registry.create_template(timed_definition)


@pytest_asyncio.fixture
async def sql_database(tmp_path) -> AsyncGenerator:
    """SQLite-backed database with the schema created."""
    from approval_engine.storage.postgres.database import Database

    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'approvals.db'}")
    await database.init()
    await database.create_all()
    yield database
    await database.close()
