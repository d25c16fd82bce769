"""Storage layer for workflow persistence."""

from approval_engine.storage.base import WorkflowStore
from approval_engine.storage.memory import InMemoryWorkflowStore
from approval_engine.storage.postgres.repository import SqlWorkflowStore

__all__ = ["WorkflowStore", "InMemoryWorkflowStore", "SqlWorkflowStore"]
