"""Tests for best-effort build notifications."""

import json

import httpx
import pytest

from cicd_control_tower.config import Settings
from cicd_control_tower.pipeline.notifications import (
    HttpNotificationSink,
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationEvent,
    close_notification_dispatcher,
    create_notification_sink,
    get_notification_dispatcher,
)
from cicd_control_tower.pipeline.fan_out import AutoTriggerFanOutEngine
from cicd_control_tower.pipeline.webhook import WebhookService

from conftest import RecordingExecutor, RecordingSink


def _event(**kwargs):
    values = {"event_type": "success", "pipeline_type": "CI", "app_id": 1, "pipeline_id": 2, "ci_artifact_id": 3}
    values.update(kwargs)
    return NotificationEvent(**values)


class TestNotificationDispatcher:
    @pytest.mark.asyncio
    async def test_delivers_in_background(self):
        sink = RecordingSink()
        dispatcher = NotificationDispatcher(sink)

        task = dispatcher.dispatch(_event())
        assert dispatcher.pending == [task]
        await dispatcher.drain()

        assert [e.ci_artifact_id for e in sink.events] == [3]
        assert dispatcher.pending == []

    @pytest.mark.asyncio
    async def test_sink_failure_is_swallowed(self):
        dispatcher = NotificationDispatcher(RecordingSink(fail=True))

        task = dispatcher.dispatch(_event())
        await dispatcher.drain()

        assert task.done()
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_drain_without_pending(self):
        await NotificationDispatcher(RecordingSink()).drain()

    @pytest.mark.asyncio
    async def test_aclose_sends_pending_and_closes_client(self):
        captured = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = NotificationDispatcher(HttpNotificationSink("http://notifier.local", client=client))

        dispatcher.dispatch(_event())
        await dispatcher.aclose()

        assert len(captured) == 1
        assert client.is_closed

    @pytest.mark.asyncio
    async def test_aclose_without_closable_sink(self):
        sink = RecordingSink()
        dispatcher = NotificationDispatcher(sink)

        dispatcher.dispatch(_event())
        await dispatcher.aclose()

        assert len(sink.events) == 1


class TestSharedDispatcher:
    @pytest.mark.asyncio
    async def test_one_dispatcher_per_process(self, monkeypatch):
        monkeypatch.setattr("cicd_control_tower.pipeline.notifications._dispatcher", None)
        monkeypatch.setattr(
            "cicd_control_tower.pipeline.notifications.create_notification_sink",
            lambda: HttpNotificationSink("http://notifier.local"),
        )

        first = get_notification_dispatcher()
        assert get_notification_dispatcher() is first
        client = first.sink.client

        await close_notification_dispatcher()

        assert client.is_closed
        assert get_notification_dispatcher() is not first
        await close_notification_dispatcher()

    def test_webhook_service_uses_shared_dispatcher(self, db_session, monkeypatch):
        shared = NotificationDispatcher(RecordingSink())
        monkeypatch.setattr("cicd_control_tower.pipeline.notifications._dispatcher", shared)
        engine = AutoTriggerFanOutEngine(RecordingExecutor(), batch_size=1, system_user_id=1)

        assert WebhookService(db_session, engine).notifier is shared
        assert WebhookService(db_session, engine).notifier is shared


class TestHttpNotificationSink:
    @pytest.mark.asyncio
    async def test_posts_event(self):
        captured = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200, json={"ok": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = HttpNotificationSink("http://notifier.local/", client=client)

        await sink.send(_event(failure_reason=None, git_triggers={"1": {"Commit": "abc"}}))
        await sink.close()

        (request,) = captured
        assert request.method == "POST"
        assert str(request.url) == "http://notifier.local/notify"
        body = json.loads(request.content)
        assert body["event_type"] == "success"
        assert body["git_triggers"] == {"1": {"Commit": "abc"}}
        assert isinstance(body["event_time"], str)

    @pytest.mark.asyncio
    async def test_error_status_is_logged_by_dispatcher(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        sink = HttpNotificationSink("http://notifier.local", client=client)

        with pytest.raises(httpx.HTTPStatusError):
            await sink.send(_event())

        task = NotificationDispatcher(sink).dispatch(_event())
        await task
        assert task.exception() is None
        await sink.close()


class TestCreateNotificationSink:
    def test_http_sink_when_configured(self):
        sink = create_notification_sink(Settings(notifier_url="http://notifier.local"))
        assert isinstance(sink, HttpNotificationSink)
        assert sink.base_url == "http://notifier.local"

    def test_logging_sink_by_default(self):
        assert isinstance(create_notification_sink(Settings(notifier_url=None)), LoggingNotificationSink)
