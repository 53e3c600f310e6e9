"""
Tests for the webhook ingestion coordinator.

Verifies:
- a build success records one artifact per pipeline plus clones for children
- clones carry the parent link and their own scan state
- the workflow status and the artifacts commit or roll back together
- external webhooks roll back an artifact that triggered nothing
- external api key authentication
- best-effort notifications
"""

import asyncio
import base64
import json
from datetime import datetime

import pytest

from cicd_control_tower.artifacts.store import ArtifactStore
from cicd_control_tower.db.models import CiArtifactModel, CiWorkflowModel
from cicd_control_tower.errors import (
    AuthorizationError,
    InvalidStatusTransition,
    NotFoundError,
    PartialFanOutFailure,
    PersistenceError,
    ValidationError,
)
from cicd_control_tower.pipeline.fan_out import AutoTriggerFanOutEngine, DownstreamTarget
from cicd_control_tower.pipeline.notifications import NotificationDispatcher
from cicd_control_tower.pipeline.webhook import WebhookService
from cicd_control_tower.schemas.webhook import CiArtifactWebhookRequest

from conftest import RecordingExecutor, RecordingSink

MATERIAL_INFO = [
    {
        "material": {"git-configuration": {"url": "https://github.com/acme/payments.git"}, "type": "git"},
        "changed": True,
        "modifications": [{"revision": "9f1c2e"}],
    }
]


class UnreachableTargetsExecutor(RecordingExecutor):
    async def list_targets(self, artifact):
        raise PersistenceError("database is locked")


def _service(db_session, executor=None, sink=None, batch_size=1):
    executor = executor or RecordingExecutor()
    sink = sink or RecordingSink()
    engine = AutoTriggerFanOutEngine(executor, batch_size=batch_size, system_user_id=1)
    return WebhookService(db_session, engine, NotificationDispatcher(sink)), executor, sink


def _request(workflow_id=None, **kwargs):
    values = {
        "image": "registry.local/payments:9f1c2e",
        "image_digest": "sha256:9f1c2e",
        "material_info": MATERIAL_INFO,
        "data_source": "CI-RUNNER",
        "workflow_id": workflow_id,
        "user_id": 1,
    }
    values.update(kwargs)
    return CiArtifactWebhookRequest(**values)


@pytest.fixture
def build(seed):
    app = seed.app()
    parent = seed.ci_pipeline(app, name="build", scan_enabled=True)
    children = [
        seed.ci_pipeline(app, name="build-arm", parent=parent),
        seed.ci_pipeline(app, name="build-debug", parent=parent, scan_enabled=True),
    ]
    workflow = seed.workflow(parent, git_triggers={"1": {"Commit": "9f1c2e"}})
    return {"app": app, "parent": parent, "children": children, "workflow": workflow}


class TestHandleBuildSuccess:
    @pytest.mark.asyncio
    async def test_records_parent_and_clones(self, db_session, build):
        service, executor, _ = _service(db_session)

        result = await service.handle_build_success(build["parent"].id, _request(build["workflow"].id))

        artifacts = db_session.query(CiArtifactModel).order_by(CiArtifactModel.id).all()
        own, *clones = artifacts
        assert len(artifacts) == 3
        assert result.artifact_id == own.id
        assert result.artifact_ids == [a.id for a in artifacts]
        assert own.pipeline_id == build["parent"].id
        assert own.parent_ci_artifact is None
        assert own.ci_workflow_id == build["workflow"].id
        assert [c.pipeline_id for c in clones] == [c.id for c in build["children"]]
        assert all(c.parent_ci_artifact == own.id for c in clones)
        assert all(c.ci_workflow_id is None for c in clones)
        assert all(a.image_digest == "sha256:9f1c2e" for a in artifacts)
        assert own.material_info == json.dumps(MATERIAL_INFO, separators=(",", ":"))
        # parent first, then clones in child pipeline order
        assert executor.started == [own.id, *[c.id for c in clones]]
        assert result.fan_out.triggered == 3

    @pytest.mark.asyncio
    async def test_scan_state_follows_each_pipeline(self, db_session, build):
        service, _, _ = _service(db_session)

        await service.handle_build_success(build["parent"].id, _request(build["workflow"].id))

        by_pipeline = {a.pipeline_id: a for a in db_session.query(CiArtifactModel).all()}
        own = by_pipeline[build["parent"].id]
        arm = by_pipeline[build["children"][0].id]
        debug = by_pipeline[build["children"][1].id]
        assert (own.scan_enabled, own.scanned) == (True, False)
        assert (arm.scan_enabled, arm.scanned) == (False, True)
        assert (debug.scan_enabled, debug.scanned) == (True, False)

    @pytest.mark.asyncio
    async def test_workflow_marked_succeeded(self, db_session, build):
        service, _, _ = _service(db_session)

        await service.handle_build_success(build["parent"].id, _request(build["workflow"].id))

        db_session.expire_all()
        assert db_session.get(CiWorkflowModel, build["workflow"].id).status == "Succeeded"

    @pytest.mark.asyncio
    async def test_duplicate_callback_rejected(self, db_session, build):
        service, executor, _ = _service(db_session)
        request = _request(build["workflow"].id)
        await service.handle_build_success(build["parent"].id, request)

        with pytest.raises(InvalidStatusTransition):
            await service.handle_build_success(build["parent"].id, request)

        assert db_session.query(CiArtifactModel).count() == 3
        assert len(executor.started) == 3

    @pytest.mark.asyncio
    async def test_persistence_failure_rolls_back_everything(self, db_session, build):
        service, executor, _ = _service(db_session)

        with pytest.raises(PersistenceError):
            await service.handle_build_success(
                build["parent"].id, _request(build["workflow"].id, image_digest=None)
            )

        db_session.expire_all()
        assert db_session.query(CiArtifactModel).count() == 0
        assert db_session.get(CiWorkflowModel, build["workflow"].id).status == "Pending"
        assert executor.started == []

    @pytest.mark.asyncio
    async def test_partial_fan_out_failure_keeps_artifacts(self, db_session, build):
        first_child_artifact_id = 2
        executor = RecordingExecutor(fail_ids={first_child_artifact_id})
        service, _, _ = _service(db_session, executor=executor)

        result = await service.handle_build_success(build["parent"].id, _request(build["workflow"].id))

        assert isinstance(result.error, PartialFanOutFailure)
        assert result.error.failure_count == 1
        assert result.fan_out.triggered == 2
        assert db_session.query(CiArtifactModel).count() == 3

    @pytest.mark.asyncio
    async def test_pipeline_without_children(self, db_session, seed):
        app = seed.app()
        pipeline = seed.ci_pipeline(app)
        service, executor, _ = _service(db_session)

        result = await service.handle_build_success(pipeline.id, _request())

        assert result.artifact_ids == [result.artifact_id]
        assert executor.started == [result.artifact_id]

    @pytest.mark.asyncio
    async def test_image_pushed_at_sets_creation_time(self, db_session, seed):
        pipeline = seed.ci_pipeline(seed.app())
        service, _, _ = _service(db_session)
        pushed_at = datetime(2026, 2, 3, 4, 5, 6)

        result = await service.handle_build_success(pipeline.id, _request(), image_pushed_at=pushed_at)

        assert ArtifactStore(db_session).get(result.artifact_id).created_on == pushed_at

    @pytest.mark.asyncio
    async def test_unsupported_data_source(self, db_session, build):
        service, _, _ = _service(db_session)

        with pytest.raises(ValidationError):
            await service.handle_build_success(
                build["parent"].id, _request(build["workflow"].id, data_source="JENKINS")
            )

    @pytest.mark.asyncio
    async def test_unknown_pipeline(self, db_session):
        service, _, _ = _service(db_session)

        with pytest.raises(NotFoundError):
            await service.handle_build_success(404, _request())

    @pytest.mark.asyncio
    async def test_success_notification(self, db_session, build):
        service, _, sink = _service(db_session)

        result = await service.handle_build_success(build["parent"].id, _request(build["workflow"].id))
        await service.notifier.drain()

        (event,) = sink.events
        assert event.event_type == "success"
        assert event.app_name == "payments"
        assert event.pipeline_name == "build"
        assert event.ci_artifact_id == result.artifact_id
        assert event.ci_workflow_runner_id == build["workflow"].id
        assert event.source == "9f1c2e"

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_ingestion(self, db_session, build):
        service, _, _ = _service(db_session, sink=RecordingSink(fail=True))

        result = await service.handle_build_success(build["parent"].id, _request(build["workflow"].id))
        await service.notifier.drain()

        assert result.fan_out.triggered == 3


class TestHandleExternalWebhook:
    @pytest.fixture
    def external(self, seed):
        app = seed.app()
        return seed.external_ci(app)

    def _targets(self, *pipeline_ids):
        return [
            DownstreamTarget(pipeline_id=pid, project_resource="core/payments", env_resource=f"env{pid}/payments")
            for pid in pipeline_ids
        ]

    @pytest.mark.asyncio
    async def test_triggered_artifact_is_kept(self, db_session, external):
        executor = RecordingExecutor(targets=self._targets(1, 2))
        service, _, _ = _service(db_session, executor=executor)

        result = await service.handle_external_webhook(
            external.id, _request(data_source=None), authorize=lambda *_: True, token="t"
        )

        artifact = ArtifactStore(db_session).get(result.artifact_id)
        assert artifact.external_ci_pipeline_id == external.id
        assert artifact.pipeline_id is None
        assert artifact.data_source == "EXTERNAL"
        assert result.fan_out.triggered == 2

    @pytest.mark.asyncio
    async def test_no_targets_deletes_artifact(self, db_session, external):
        service, _, _ = _service(db_session)

        with pytest.raises(NotFoundError):
            await service.handle_external_webhook(external.id, _request(), authorize=lambda *_: True)

        assert db_session.query(CiArtifactModel).count() == 0

    @pytest.mark.asyncio
    async def test_all_targets_denied(self, db_session, external):
        executor = RecordingExecutor(targets=self._targets(1, 2))
        service, _, _ = _service(db_session, executor=executor)

        with pytest.raises(AuthorizationError):
            await service.handle_external_webhook(external.id, _request(), authorize=lambda *_: False)

        assert executor.started == []
        assert db_session.query(CiArtifactModel).count() == 0

    @pytest.mark.asyncio
    async def test_all_triggers_failed(self, db_session, external):
        executor = RecordingExecutor(targets=self._targets(1), fail_pipelines={1})
        service, _, _ = _service(db_session, executor=executor)

        with pytest.raises(PartialFanOutFailure) as exc_info:
            await service.handle_external_webhook(external.id, _request(), authorize=lambda *_: True)

        assert exc_info.value.succeeded == 0
        assert db_session.query(CiArtifactModel).count() == 0

    @pytest.mark.asyncio
    async def test_rolled_back_artifact_is_gone(self, db_session, external):
        executor = RecordingExecutor(targets=self._targets(1), fail_pipelines={1})
        service, _, _ = _service(db_session, executor=executor)

        with pytest.raises(PartialFanOutFailure) as exc_info:
            await service.handle_external_webhook(external.id, _request(), authorize=lambda *_: True)

        artifact_id = exc_info.value.failures[0].artifact_id
        with pytest.raises(NotFoundError):
            ArtifactStore(db_session).get(artifact_id)

    @pytest.mark.asyncio
    async def test_target_lookup_error_deletes_artifact(self, db_session, external):
        service, _, _ = _service(db_session, executor=UnreachableTargetsExecutor())

        with pytest.raises(PersistenceError):
            await service.handle_external_webhook(external.id, _request(), authorize=lambda *_: True)

        assert db_session.query(CiArtifactModel).count() == 0

    @pytest.mark.asyncio
    async def test_cancelled_before_any_trigger_deletes_artifact(self, db_session, external):
        executor = RecordingExecutor(targets=self._targets(1, 2), fail_pipelines={1}, delay=0.05)
        service, _, _ = _service(db_session, executor=executor)

        task = asyncio.create_task(
            service.handle_external_webhook(external.id, _request(), authorize=lambda *_: True)
        )
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(executor.started) == 1
        assert db_session.query(CiArtifactModel).count() == 0

    @pytest.mark.asyncio
    async def test_cancelled_after_a_trigger_keeps_artifact(self, db_session, external):
        executor = RecordingExecutor(targets=self._targets(1, 2), delay=0.05)
        service, _, _ = _service(db_session, executor=executor)

        task = asyncio.create_task(
            service.handle_external_webhook(external.id, _request(), authorize=lambda *_: True)
        )
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        (artifact_id,) = executor.completed
        assert ArtifactStore(db_session).get(artifact_id).external_ci_pipeline_id == external.id

    @pytest.mark.asyncio
    async def test_unknown_external_ci(self, db_session):
        service, _, _ = _service(db_session)

        with pytest.raises(AuthorizationError):
            await service.handle_external_webhook(404, _request(), authorize=lambda *_: True)


class TestAuthenticateExternalCi:
    def _key(self, external_id, token):
        return f"{base64.b64encode(str(external_id).encode()).decode()}.{token}"

    def test_valid_key(self, db_session, seed):
        external = seed.external_ci(seed.app(), token="s3cr3t")
        service, _, _ = _service(db_session)

        assert service.authenticate_external_ci_webhook(self._key(external.id, "s3cr3t")) == external.id

    def test_wrong_token(self, db_session, seed):
        external = seed.external_ci(seed.app(), token="s3cr3t")
        service, _, _ = _service(db_session)

        with pytest.raises(AuthorizationError):
            service.authenticate_external_ci_webhook(self._key(external.id, "guess"))

    @pytest.mark.parametrize("api_key", ["", "no-dot", "a.b.c", "!!!.token", "bm90LWEtbnVtYmVy.token"])
    def test_malformed_keys(self, db_session, api_key):
        service, _, _ = _service(db_session)

        with pytest.raises(AuthorizationError):
            service.authenticate_external_ci_webhook(api_key)


class TestHandleBuildFailure:
    @pytest.mark.asyncio
    async def test_failure_notification(self, db_session, build):
        service, executor, sink = _service(db_session)

        await service.handle_build_failure(
            build["parent"].id, _request(build["workflow"].id, failure_reason="unit tests failed")
        )
        await service.notifier.drain()

        (event,) = sink.events
        assert event.event_type == "fail"
        assert event.failure_reason == "unit tests failed"
        assert event.git_triggers == {"1": {"Commit": "9f1c2e"}}
        assert event.ci_workflow_runner_id == build["workflow"].id
        assert db_session.query(CiArtifactModel).count() == 0
        assert executor.started == []

    @pytest.mark.asyncio
    async def test_requires_workflow(self, db_session, build):
        service, _, _ = _service(db_session)

        with pytest.raises(ValidationError):
            await service.handle_build_failure(build["parent"].id, _request())
