"""
Default downstream trigger executor.

Triggering a CD pipeline for an artifact records a deploy runner and the
deployed template history entry in one transaction (both share the same
timestamp, which is how history is later matched to runners), then hands
the runner to the deployment submitter.
"""

import asyncio
import re
from typing import Callable, Dict, List, Optional, Protocol, Set, Tuple

import structlog
from sqlalchemy.orm import Session

from ..charts.store import ChartService
from ..db.base import get_session_local, transaction
from ..db.models import CdPipelineModel, utc_now
from ..db.services import CdPipelineService, CdWorkflowService
from ..enums import RunnerStatus, TriggerType
from ..errors import NotFoundError
from ..history.service import DeploymentTemplateHistoryService
from ..schemas.artifact import ArtifactRecord
from .fan_out import DownstreamTarget

logger = structlog.get_logger()

_PLACEHOLDER = re.compile(r"\{\{\s*\.(Name|Tag)\s*\}\}")


def split_image(image: str) -> Tuple[str, str]:
    """Split ``repo/name:tag`` into name and tag.

    A colon before the last ``/`` belongs to a registry port, not a tag.
    """
    name, _, digest = image.partition("@")
    if digest:
        return name, digest
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        return image[:colon], image[colon + 1 :]
    return image, ""


def render_image_descriptor(template: Optional[str], image: str) -> Tuple[str, Dict[str, str]]:
    """Substitute ``{{.Name}}`` and ``{{.Tag}}`` for an image.

    Returns the rendered descriptor and the variables that were used.
    """
    name, tag = split_image(image)
    variables = {"Name": name, "Tag": tag}
    if not template:
        return "", variables
    return _PLACEHOLDER.sub(lambda m: variables[m.group(1)], template), variables


class DeploymentSubmitter(Protocol):
    """Hands a deploy runner to the workflow executor."""

    async def submit(self, runner_id: int, pipeline_id: int, artifact: ArtifactRecord, image_descriptor: str) -> None:
        ...


class PipelineTriggerExecutor:
    """Triggers CD pipelines fed by an artifact.

    Internal artifacts trigger the AUTOMATIC CD pipelines of their CI
    pipeline. External artifacts trigger the given target, or every CD
    pipeline linked to their external CI registration.

    Database work runs in a worker thread with its own session, so triggers
    of one fan-out batch overlap and the event loop stays free.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        submitter: Optional[DeploymentSubmitter] = None,
    ):
        self.session_factory = session_factory or get_session_local()
        self.submitter = submitter
        self._detached: Set[asyncio.Task] = set()

    async def list_targets(self, artifact: ArtifactRecord) -> List[DownstreamTarget]:
        if artifact.external_ci_pipeline_id is None:
            return []
        return await asyncio.to_thread(self._load_targets, artifact.external_ci_pipeline_id)

    def _load_targets(self, external_ci_pipeline_id: int) -> List[DownstreamTarget]:
        db = self.session_factory()
        try:
            pipelines = CdPipelineService(db).find_by_external_ci(external_ci_pipeline_id)
            return [
                DownstreamTarget(
                    pipeline_id=pipeline.id,
                    project_resource=f"{pipeline.app.team_name}/{pipeline.app.app_name}",
                    env_resource=f"{pipeline.environment.name}/{pipeline.app.app_name}",
                )
                for pipeline in pipelines
            ]
        finally:
            db.close()

    async def trigger(
        self,
        artifact: ArtifactRecord,
        is_manual: bool,
        is_async: bool,
        acting_user_id: int,
        target: Optional[DownstreamTarget] = None,
    ) -> None:
        """Trigger the downstream pipelines of ``artifact``.

        Every pipeline is attempted; the first error is raised afterwards.
        """
        prepared, first_error = await asyncio.to_thread(
            self._record_all, artifact, target, acting_user_id
        )

        logger.info(
            "cd_pipelines_triggered",
            artifact_id=artifact.id,
            runner_ids=[runner_id for runner_id, _, _ in prepared],
            is_manual=is_manual,
        )

        for runner_id, pipeline_id, descriptor in prepared:
            if self.submitter is None:
                continue
            if is_async:
                task = asyncio.get_running_loop().create_task(
                    self._submit(runner_id, pipeline_id, artifact, descriptor, raise_errors=False)
                )
                self._detached.add(task)
                task.add_done_callback(self._detached.discard)
            else:
                try:
                    await self._submit(runner_id, pipeline_id, artifact, descriptor, raise_errors=True)
                except Exception as e:
                    first_error = first_error or e

        if first_error is not None:
            raise first_error

    def _record_all(
        self,
        artifact: ArtifactRecord,
        target: Optional[DownstreamTarget],
        acting_user_id: int,
    ) -> Tuple[List[Tuple[int, int, str]], Optional[Exception]]:
        db = self.session_factory()
        try:
            prepared = []
            first_error: Optional[Exception] = None
            for pipeline in self._resolve_pipelines(db, artifact, target):
                try:
                    prepared.append(self._record_trigger(db, pipeline, artifact, acting_user_id))
                except Exception as e:
                    logger.error(
                        "cd_trigger_failed",
                        artifact_id=artifact.id,
                        pipeline_id=pipeline.id,
                        error=str(e),
                    )
                    first_error = first_error or e
            return prepared, first_error
        finally:
            db.close()

    def _resolve_pipelines(
        self, db: Session, artifact: ArtifactRecord, target: Optional[DownstreamTarget]
    ) -> List[CdPipelineModel]:
        pipelines = CdPipelineService(db)
        if target is not None:
            return [pipelines.require_pipeline(target.pipeline_id)]
        if artifact.pipeline_id is None and artifact.external_ci_pipeline_id is not None:
            return pipelines.find_by_external_ci(artifact.external_ci_pipeline_id)
        if artifact.pipeline_id is None:
            return []
        return pipelines.find_by_ci_pipeline(artifact.pipeline_id, trigger_type=TriggerType.AUTOMATIC)

    def _record_trigger(
        self, db: Session, pipeline: CdPipelineModel, artifact: ArtifactRecord, acting_user_id: int
    ) -> Tuple[int, int, str]:
        charts = ChartService(db)
        chart = charts.find_latest(pipeline.app_id)
        if chart is None:
            raise NotFoundError(
                "chart", pipeline.app_id, message=f"no chart configured for app {pipeline.app_id}"
            )
        env_override = charts.find_env_override(pipeline.app_id, pipeline.environment_id)
        descriptor, variables = render_image_descriptor(chart.image_descriptor_template, artifact.image)

        deployed_on = utc_now()
        with transaction(db):
            runner = CdWorkflowService(db).create_runner(
                pipeline_id=pipeline.id,
                ci_artifact_id=artifact.id,
                triggered_by=acting_user_id,
                started_on=deployed_on,
                name=f"{pipeline.name}-{artifact.id}",
                commit=False,
            )
            DeploymentTemplateHistoryService(db).record_deployment_trigger(
                pipeline,
                env_override,
                descriptor,
                deployed_on,
                acting_user_id,
                chart=chart,
                variable_snapshot=variables,
                commit=False,
            )
            runner_id = runner.id
        return runner_id, pipeline.id, descriptor

    async def _submit(
        self,
        runner_id: int,
        pipeline_id: int,
        artifact: ArtifactRecord,
        descriptor: str,
        raise_errors: bool,
    ) -> None:
        try:
            await self.submitter.submit(runner_id, pipeline_id, artifact, descriptor)
        except Exception as e:
            logger.error(
                "deployment_submit_failed",
                runner_id=runner_id,
                pipeline_id=pipeline_id,
                error=str(e),
            )
            await asyncio.to_thread(self._mark_failed, runner_id, str(e))
            if raise_errors:
                raise

    def _mark_failed(self, runner_id: int, message: str) -> None:
        db = self.session_factory()
        try:
            CdWorkflowService(db).update_status(runner_id, RunnerStatus.FAILED, message=message)
        finally:
            db.close()
