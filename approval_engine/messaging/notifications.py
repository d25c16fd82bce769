"""
Assignee notifications.

Notifications are fire-and-forget: a failed delivery is logged and never
affects workflow state.
"""

import json
import logging
from typing import Protocol

import redis.asyncio as redis

from approval_engine.config import RedisSettings, get_settings
from approval_engine.core.models import StepContext

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Delivers a notification to its destination."""

    async def send(self, assignee_id: str, context: StepContext) -> None:
        """Deliver one notification. May raise on failure."""


class LoggingNotificationSink:
    """Sink that only writes notifications to the log."""

    async def send(self, assignee_id: str, context: StepContext) -> None:
        logger.info(
            f"Notify {assignee_id}: {context.reason} for step '{context.step_name}' "
            f"of instance {context.instance_id}"
        )


class RedisStreamNotificationSink:
    """
    Sink that appends notifications to a Redis stream.

    Delivery channels (email, chat, in-app) consume the stream on their own.
    """

    def __init__(self, client: redis.Redis, settings: RedisSettings | None = None):
        self.client = client
        self.settings = settings or get_settings().redis
        self.stream_key = self.settings.notification_stream

    async def send(self, assignee_id: str, context: StepContext) -> None:
        data = {
            "assignee_id": assignee_id,
            "reason": context.reason,
            "instance_id": str(context.instance_id),
            "step_execution_id": str(context.step_execution_id),
            "subject_id": context.subject_id,
            "step_id": context.step_id,
            "step_name": context.step_name,
            "step_kind": context.step_kind.value,
            "assignee_type": context.assignee_type.value,
            "comments": context.comments or "",
            "created_at": context.created_at.isoformat(),
            "context": json.dumps(context.model_dump(mode="json")),
        }

        await self.client.xadd(
            self.stream_key,
            data,
            maxlen=self.settings.stream_max_length,
            approximate=True,
        )


class NotificationDispatcher:
    """Sends notifications through a sink without ever failing the caller."""

    def __init__(self, sink: NotificationSink | None = None):
        self.sink = sink or LoggingNotificationSink()

    async def notify(self, assignee_id: str, context: StepContext) -> bool:
        """
        Notify an assignee.

        Args:
            assignee_id: Who to notify
            context: Step context delivered with the notification

        Returns:
            True if the sink accepted the notification
        """
        if not assignee_id:
            logger.warning(f"No assignee to notify for step execution {context.step_execution_id}")
            return False

        try:
            await self.sink.send(assignee_id, context)
            return True
        except Exception as e:
            logger.warning(
                f"Notification to {assignee_id} for step execution "
                f"{context.step_execution_id} failed: {e}"
            )
            return False
