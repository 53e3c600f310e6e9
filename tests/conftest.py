"""Test configuration and fixtures."""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from cicd_control_tower.db.base import Base, create_db_engine
from cicd_control_tower.db.models import (
    AppModel,
    CdPipelineModel,
    ChartRefModel,
    ChartRepoModel,
    CiArtifactModel,
    CiPipelineModel,
    CiWorkflowModel,
    EnvironmentModel,
    ExternalCiPipelineModel,
)
from cicd_control_tower.db.services import (
    AppService,
    CdPipelineService,
    CiPipelineService,
    CiWorkflowService,
)
from cicd_control_tower.enums import DataSource, TriggerType
from cicd_control_tower.schemas.artifact import ArtifactRecord

IMAGE_DESCRIPTOR_TEMPLATE = '{"image": {"repository": "{{.Name}}", "tag": "{{.Tag}}"}}'


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite file per test; each session gets its own connection."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'control_tower.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


class Seed:
    """Builders for the rows most tests need."""

    def __init__(self, db):
        self.db = db

    def app(self, name: str = "payments", team: str = "core") -> AppModel:
        return AppService(self.db).create_app(name, team_name=team)

    def environment(self, name: str = "staging", namespace: Optional[str] = None) -> EnvironmentModel:
        return AppService(self.db).create_environment(name, namespace=namespace or f"{name}-ns")

    def chart_repo(self, name: str = "default-chartmuseum", is_default: bool = True) -> ChartRepoModel:
        repo = ChartRepoModel(name=name, url=f"http://{name}.local", is_default=is_default)
        self.db.add(repo)
        self.db.commit()
        return repo

    def chart_ref(
        self,
        name: Optional[str] = "Deployment",
        version: str = "4.18.0",
        is_app_metrics_supported: bool = True,
        default_app_values: Optional[Dict[str, Any]] = None,
        image_descriptor_template: Optional[str] = IMAGE_DESCRIPTOR_TEMPLATE,
    ) -> ChartRefModel:
        chart_ref = ChartRefModel(
            name=name,
            version=version,
            location=f"reference-chart_{version.replace('.', '-')}",
            is_app_metrics_supported=is_app_metrics_supported,
            default_app_values=default_app_values
            if default_app_values is not None
            else {"replicaCount": 1, "resources": {"limits": {"cpu": "500m"}}},
            image_descriptor_template=image_descriptor_template,
        )
        self.db.add(chart_ref)
        self.db.commit()
        return chart_ref

    def ci_pipeline(
        self,
        app: AppModel,
        name: str = "build",
        parent: Optional[CiPipelineModel] = None,
        scan_enabled: bool = False,
    ) -> CiPipelineModel:
        return CiPipelineService(self.db).create_pipeline(
            app.id,
            name,
            parent_ci_pipeline=parent.id if parent else None,
            scan_enabled=scan_enabled,
        )

    def external_ci(self, app: AppModel, token: str = "s3cr3t") -> ExternalCiPipelineModel:
        return CiPipelineService(self.db).create_external_ci(app.id, token)

    def cd_pipeline(
        self,
        app: AppModel,
        environment: EnvironmentModel,
        ci_pipeline: Optional[CiPipelineModel] = None,
        external_ci: Optional[ExternalCiPipelineModel] = None,
        trigger_type: TriggerType = TriggerType.AUTOMATIC,
        name: Optional[str] = None,
    ) -> CdPipelineModel:
        return CdPipelineService(self.db).create_pipeline(
            app.id,
            environment.id,
            name or f"deploy-{environment.name}",
            ci_pipeline_id=ci_pipeline.id if ci_pipeline else None,
            external_ci_pipeline_id=external_ci.id if external_ci else None,
            trigger_type=trigger_type,
        )

    def workflow(self, ci_pipeline: CiPipelineModel, git_triggers: Optional[Dict] = None) -> CiWorkflowModel:
        return CiWorkflowService(self.db).create_workflow(
            ci_pipeline.id,
            f"{ci_pipeline.name}-run",
            git_triggers=git_triggers,
        )

    def artifact(
        self,
        ci_pipeline: Optional[CiPipelineModel] = None,
        image: str = "registry.local/payments:abc123",
        image_digest: str = "sha256:abc123",
        **kwargs,
    ) -> CiArtifactModel:
        artifact = CiArtifactModel(
            pipeline_id=ci_pipeline.id if ci_pipeline else None,
            image=image,
            image_digest=image_digest,
            data_source=kwargs.pop("data_source", DataSource.CI_RUNNER.value),
            **kwargs,
        )
        self.db.add(artifact)
        self.db.commit()
        return artifact


@pytest.fixture
def seed(db_session) -> Seed:
    return Seed(db_session)


def make_record(artifact_id: int, pipeline_id: Optional[int] = 1, **kwargs) -> ArtifactRecord:
    return ArtifactRecord(
        id=artifact_id,
        pipeline_id=pipeline_id,
        image=kwargs.pop("image", f"registry.local/app:{artifact_id}"),
        image_digest=kwargs.pop("image_digest", f"sha256:{artifact_id:04d}"),
        data_source=kwargs.pop("data_source", DataSource.CI_RUNNER.value),
        **kwargs,
    )


class RecordingExecutor:
    """Trigger executor double that records calls and can fail or stall."""

    def __init__(
        self,
        fail_ids: Iterable[int] = (),
        delay: float = 0.0,
        targets: Optional[List] = None,
        fail_pipelines: Iterable[int] = (),
    ):
        self.fail_ids = set(fail_ids)
        self.fail_pipelines = set(fail_pipelines)
        self.delay = delay
        self.targets = targets or []
        self.started: List[int] = []
        self.completed: List[int] = []
        self.calls: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def trigger(self, artifact, is_manual, is_async, acting_user_id, target=None):
        self.started.append(artifact.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.calls.append(
                {
                    "artifact_id": artifact.id,
                    "is_manual": is_manual,
                    "is_async": is_async,
                    "acting_user_id": acting_user_id,
                    "pipeline_id": target.pipeline_id if target else None,
                }
            )
            if artifact.id in self.fail_ids:
                raise RuntimeError(f"trigger failed for artifact {artifact.id}")
            if target is not None and target.pipeline_id in self.fail_pipelines:
                raise RuntimeError(f"trigger failed for pipeline {target.pipeline_id}")
            self.completed.append(artifact.id)
        finally:
            self.in_flight -= 1

    async def list_targets(self, artifact):
        return list(self.targets)


class RecordingSink:
    """Notification sink double."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events = []

    async def send(self, event):
        if self.fail:
            raise ConnectionError("notifier unreachable")
        self.events.append(event)
