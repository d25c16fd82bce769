"""
Workflow lifecycle events.

Other services (search indexing, audit, the subject's owning service)
follow workflows through these events instead of polling the engine.
"""

import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol
from uuid import UUID

import redis.asyncio as redis
from redis.exceptions import RedisError
from pydantic import BaseModel, Field

from approval_engine.config import RedisSettings, get_settings
from approval_engine.core.models import WorkflowInstance

logger = logging.getLogger(__name__)


class WorkflowEventType(str, Enum):
    """Lifecycle events published by the engine."""

    STARTED = "workflow.started"
    STEP_ACTIVATED = "workflow.step_activated"
    COMPLETED = "workflow.completed"
    CANCELLED = "workflow.cancelled"


class WorkflowEvent(BaseModel):
    """Event payload."""

    type: WorkflowEventType
    instance_id: UUID
    template_id: UUID
    subject_id: str
    status: str
    step_execution_id: Optional[UUID] = Field(default=None)
    data: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def for_instance(
        cls,
        event_type: WorkflowEventType,
        instance: WorkflowInstance,
        step_execution_id: Optional[UUID] = None,
        **data: Any,
    ) -> "WorkflowEvent":
        return cls(
            type=event_type,
            instance_id=instance.id,
            template_id=instance.template_id,
            subject_id=instance.subject_id,
            status=instance.status.value,
            step_execution_id=step_execution_id,
            data=data,
        )


class WorkflowEventPublisher(Protocol):
    """Publishes lifecycle events."""

    async def publish(self, event: WorkflowEvent) -> None:
        """Publish one event. Must not raise."""


class LoggingEventPublisher:
    """Publisher that writes events to the log only."""

    async def publish(self, event: WorkflowEvent) -> None:
        logger.info(f"Event {event.type.value} for instance {event.instance_id}")


class RedisStreamEventPublisher:
    """Publisher that appends events to a Redis stream."""

    def __init__(self, client: redis.Redis, settings: RedisSettings | None = None):
        self.client = client
        self.settings = settings or get_settings().redis
        self.stream_key = self.settings.event_stream

    async def publish(self, event: WorkflowEvent) -> None:
        data = {
            "type": event.type.value,
            "instance_id": str(event.instance_id),
            "template_id": str(event.template_id),
            "subject_id": event.subject_id,
            "status": event.status,
            "step_execution_id": str(event.step_execution_id) if event.step_execution_id else "",
            "data": json.dumps(event.data, default=str),
            "occurred_at": event.occurred_at.isoformat(),
        }

        try:
            await self.client.xadd(
                self.stream_key,
                data,
                maxlen=self.settings.stream_max_length,
                approximate=True,
            )
        except RedisError as e:
            # State is already committed; a missed event is recoverable by reading the instance
            logger.warning(f"Failed to publish {event.type.value} for instance {event.instance_id}: {e}")
