"""
Best-effort build notifications.

Sends run as detached asyncio tasks: the caller never awaits them and a
failing sink is only logged.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Set

import httpx
import structlog

from ..config import Settings, get_settings
from ..db.models import utc_now

logger = structlog.get_logger()


@dataclass
class NotificationEvent:
    """A CI success or failure event for the notification service."""

    event_type: str  # "success" | "fail"
    pipeline_type: str
    app_id: int
    pipeline_id: int
    app_name: Optional[str] = None
    pipeline_name: Optional[str] = None
    docker_image_url: Optional[str] = None
    ci_artifact_id: int = 0
    ci_workflow_runner_id: Optional[int] = None
    user_id: Optional[int] = None
    source: str = ""
    git_triggers: Dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None
    event_time: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_time"] = self.event_time.isoformat()
        return data


class NotificationSink(Protocol):
    async def send(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationSink:
    """Sink used when no notifier service is configured."""

    async def send(self, event: NotificationEvent) -> None:
        logger.info(
            "notification_event",
            event_type=event.event_type,
            app_id=event.app_id,
            pipeline_id=event.pipeline_id,
            ci_artifact_id=event.ci_artifact_id,
        )


class HttpNotificationSink:
    """Posts events to ``{base_url}/notify``."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        await self.client.aclose()

    async def send(self, event: NotificationEvent) -> None:
        response = await self.client.post(f"{self.base_url}/notify", json=event.to_dict())
        response.raise_for_status()


def create_notification_sink(settings: Optional[Settings] = None) -> NotificationSink:
    settings = settings or get_settings()
    if settings.notifier_url:
        return HttpNotificationSink(settings.notifier_url, timeout=settings.notification_timeout_seconds)
    return LoggingNotificationSink()


class NotificationDispatcher:
    """Fire-and-forget wrapper around a sink."""

    def __init__(self, sink: Optional[NotificationSink] = None):
        self.sink = sink or create_notification_sink()
        # strong references so pending sends are not garbage collected
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, event: NotificationEvent) -> asyncio.Task:
        """Schedule ``event`` for delivery and return immediately.

        Must be called from a running event loop.
        """
        task = asyncio.get_running_loop().create_task(self._send(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send(self, event: NotificationEvent) -> None:
        try:
            await self.sink.send(event)
        except Exception as e:
            logger.error(
                "notification_failed",
                event_type=event.event_type,
                app_id=event.app_id,
                pipeline_id=event.pipeline_id,
                error=str(e),
            )

    @property
    def pending(self) -> List[asyncio.Task]:
        return list(self._pending)

    async def drain(self) -> None:
        """Wait for pending sends. Used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        """Wait for pending sends, then close the sink if it holds a client."""
        await self.drain()
        close = getattr(self.sink, "close", None)
        if close is not None:
            await close()


_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Return the process-wide dispatcher, creating it on first use.

    Services built without an explicit dispatcher share this one, so at most
    one HTTP client is open per process.
    """
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


async def close_notification_dispatcher() -> None:
    """Close the process-wide dispatcher. The next lookup creates a new one."""
    global _dispatcher
    if _dispatcher is not None:
        dispatcher, _dispatcher = _dispatcher, None
        await dispatcher.aclose()
