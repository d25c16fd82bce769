"""Notifications and lifecycle events over Redis Streams."""

from approval_engine.messaging.events import (
    LoggingEventPublisher,
    RedisStreamEventPublisher,
    WorkflowEvent,
    WorkflowEventPublisher,
    WorkflowEventType,
)
from approval_engine.messaging.notifications import (
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationSink,
    RedisStreamNotificationSink,
)

__all__ = [
    "LoggingEventPublisher",
    "RedisStreamEventPublisher",
    "WorkflowEvent",
    "WorkflowEventPublisher",
    "WorkflowEventType",
    "LoggingNotificationSink",
    "NotificationDispatcher",
    "NotificationSink",
    "RedisStreamNotificationSink",
]
