"""Artifact ingestion, downstream fan-out and notifications."""

from .fan_out import (
    AuthorizationPredicate,
    AutoTriggerFanOutEngine,
    DownstreamTarget,
    FanOutResult,
    TriggerExecutor,
)
from .notifications import (
    HttpNotificationSink,
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationEvent,
    NotificationSink,
    close_notification_dispatcher,
    get_notification_dispatcher,
)
from .trigger import PipelineTriggerExecutor, render_image_descriptor
from .webhook import IngestionResult, WebhookService

__all__ = [
    "AuthorizationPredicate",
    "AutoTriggerFanOutEngine",
    "DownstreamTarget",
    "FanOutResult",
    "HttpNotificationSink",
    "IngestionResult",
    "LoggingNotificationSink",
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationSink",
    "PipelineTriggerExecutor",
    "TriggerExecutor",
    "WebhookService",
    "close_notification_dispatcher",
    "get_notification_dispatcher",
    "render_image_descriptor",
]
