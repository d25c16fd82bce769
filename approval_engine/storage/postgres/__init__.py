"""SQL storage layer (PostgreSQL in production, SQLite in tests)."""

from approval_engine.storage.postgres.database import Database, close_database, get_database
from approval_engine.storage.postgres.models import (
    Base,
    WorkflowInstanceModel,
    WorkflowStepExecutionModel,
    WorkflowTemplateModel,
    WorkflowTemplateStepModel,
)
from approval_engine.storage.postgres.repository import SqlWorkflowStore

__all__ = [
    "Base",
    "WorkflowTemplateModel",
    "WorkflowTemplateStepModel",
    "WorkflowInstanceModel",
    "WorkflowStepExecutionModel",
    "SqlWorkflowStore",
    "Database",
    "get_database",
    "close_database",
]
