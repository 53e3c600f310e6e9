"""
Webhook Ingestion Coordinator.

Turns build-completion events into artifacts and hands them to the fan-out
engine. Artifact rows are committed before fan-out starts; what happens
downstream never rolls them back, except for an external event that
triggered nothing at all.
"""

import base64
import binascii
import hmac
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from ..artifacts.provenance import SUPPORTED_DATA_SOURCES, compact_json, source_revisions
from ..artifacts.store import ArtifactStore
from ..db.base import transaction
from ..db.models import CiArtifactModel, CiPipelineModel, utc_now
from ..db.services import CiPipelineService, CiWorkflowService
from ..enums import DataSource, WorkflowStatus
from ..errors import (
    AuthorizationError,
    ControlTowerError,
    NotFoundError,
    PartialFanOutFailure,
    ValidationError,
)
from ..schemas.artifact import ArtifactRecord
from ..schemas.webhook import CiArtifactWebhookRequest
from .fan_out import AuthorizationPredicate, AutoTriggerFanOutEngine, FanOutResult
from .notifications import NotificationDispatcher, NotificationEvent, get_notification_dispatcher

logger = structlog.get_logger()


@dataclass
class IngestionResult:
    """Artifacts recorded for one build event and the fan-out outcome."""

    artifact_id: int
    artifact_ids: List[int] = field(default_factory=list)
    fan_out: FanOutResult = field(default_factory=FanOutResult)

    @property
    def error(self) -> Optional[PartialFanOutFailure]:
        return self.fan_out.error


class WebhookService:
    """Handles CI success/failure callbacks and external CI webhooks."""

    def __init__(
        self,
        db: Session,
        fan_out: AutoTriggerFanOutEngine,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.fan_out = fan_out
        self.notifier = notifier or get_notification_dispatcher()
        self.artifacts = ArtifactStore(db)
        self.ci_pipelines = CiPipelineService(db)
        self.workflows = CiWorkflowService(db)

    def authenticate_external_ci_webhook(self, api_key: str) -> int:
        """Resolve an api key of the form ``base64(external_ci_id).access_token``."""
        parts = (api_key or "").split(".")
        if len(parts) != 2:
            raise AuthorizationError("invalid key")
        encoded_id, token = parts
        try:
            external_ci_id = int(base64.b64decode(encoded_id, validate=True).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            logger.warning("external_ci_key_malformed", error=str(e))
            raise AuthorizationError("invalid external ci id") from e

        external = self.ci_pipelines.get_external_ci(external_ci_id)
        if external is None or not hmac.compare_digest(
            external.access_token.encode("utf-8"), token.encode("utf-8")
        ):
            raise AuthorizationError("invalid key, auth failed")
        return external_ci_id

    @staticmethod
    def _data_source(request: CiArtifactWebhookRequest) -> str:
        data_source = request.data_source or DataSource.EXTERNAL.value
        if data_source not in SUPPORTED_DATA_SOURCES:
            raise ValidationError(
                f"datasource: {data_source} not supported",
                details={"data_source": data_source},
            )
        return data_source

    @staticmethod
    def _artifact_for(
        request: CiArtifactWebhookRequest,
        data_source: str,
        material_info: Optional[str],
        created_on: datetime,
        pipeline: Optional[CiPipelineModel] = None,
        parent_ci_artifact: Optional[int] = None,
        external_ci_pipeline_id: Optional[int] = None,
    ) -> CiArtifactModel:
        scan_enabled = bool(pipeline.scan_enabled) if pipeline is not None else False
        now = utc_now()
        return CiArtifactModel(
            image=request.image,
            image_digest=request.image_digest,
            material_info=material_info,
            data_source=data_source,
            pipeline_id=pipeline.id if pipeline is not None else None,
            parent_ci_artifact=parent_ci_artifact,
            external_ci_pipeline_id=external_ci_pipeline_id,
            ci_workflow_id=request.workflow_id if parent_ci_artifact is None else None,
            scan_enabled=scan_enabled,
            # scanning disabled counts as already scanned
            scanned=not scan_enabled,
            is_artifact_uploaded=request.is_artifact_uploaded,
            created_on=created_on,
            created_by=request.user_id,
            updated_on=now,
            updated_by=request.user_id,
        )

    async def handle_build_success(
        self,
        pipeline_id: int,
        request: CiArtifactWebhookRequest,
        image_pushed_at: Optional[datetime] = None,
    ) -> IngestionResult:
        """Record the artifacts of a successful build and fan them out.

        The workflow status update, the pipeline's own artifact and the clones
        for its child pipelines are committed together.

        Raises:
            NotFoundError: unknown workflow or pipeline
            InvalidStatusTransition: the workflow already finished
            ValidationError: unsupported data source or malformed provenance
            PersistenceError: the artifacts could not be stored
        """
        log = logger.bind(ci_pipeline_id=pipeline_id, workflow_id=request.workflow_id)
        log.info("build_success_received", image=request.image)

        data_source = self._data_source(request)
        material_info = compact_json(request.material_info)

        with transaction(self.db):
            if request.workflow_id is not None:
                self.workflows.transition_status(
                    request.workflow_id, WorkflowStatus.SUCCEEDED, commit=False
                )
            pipeline = self.ci_pipelines.require_pipeline(pipeline_id)
            if not request.pipeline_name:
                request = request.model_copy(update={"pipeline_name": pipeline.name})

            own = self._artifact_for(
                request, data_source, material_info, image_pushed_at or utc_now(), pipeline=pipeline
            )
            self.artifacts.save(own, commit=False)

            clones = [
                self._artifact_for(
                    request,
                    data_source,
                    material_info,
                    utc_now(),
                    pipeline=child,
                    parent_ci_artifact=own.id,
                )
                for child in self.ci_pipelines.find_child_pipelines(pipeline.id)
            ]
            self.artifacts.save_all(clones, commit=False)

        records = [ArtifactRecord.model_validate(a) for a in [own, *clones]]
        log.info(
            "artifacts_recorded",
            artifact_id=own.id,
            clone_ids=[r.id for r in records[1:]],
        )

        self.notifier.dispatch(self._success_event(request, pipeline, records[0]))

        fan_out = await self.fan_out.run(records, request.user_id)
        result = IngestionResult(
            artifact_id=records[0].id,
            artifact_ids=[r.id for r in records],
            fan_out=fan_out,
        )
        if result.error is not None:
            log.warning("fan_out_partial_failure", **result.error.details)
        return result

    async def handle_external_webhook(
        self,
        external_ci_id: int,
        request: CiArtifactWebhookRequest,
        authorize: AuthorizationPredicate,
        token: str = "",
    ) -> IngestionResult:
        """Record an artifact pushed by an external CI and trigger its targets.

        If nothing was triggered the artifact is deleted again and the cause
        is raised: ``AuthorizationError`` when every target was denied,
        ``NotFoundError`` when there were no targets, otherwise the
        aggregated ``PartialFanOutFailure``. An error or cancellation that
        propagates before any trigger succeeded deletes the artifact as well.
        """
        log = logger.bind(external_ci_id=external_ci_id)
        external = self.ci_pipelines.get_external_ci(external_ci_id)
        if external is None:
            log.warning("external_ci_not_found")
            raise AuthorizationError(
                "invalid external ci id", details={"external_ci_id": external_ci_id}
            )

        data_source = self._data_source(request)
        artifact = self._artifact_for(
            request,
            data_source,
            compact_json(request.material_info),
            utc_now(),
            external_ci_pipeline_id=external.id,
        )
        self.artifacts.save(artifact)
        record = ArtifactRecord.model_validate(artifact)
        log.info("external_artifact_recorded", artifact_id=record.id)

        progress = FanOutResult()
        try:
            fan_out = await self.fan_out.run_external(
                record, request.user_id, token, authorize, result=progress
            )
        except BaseException:
            if not progress.any_triggered:
                self._discard_artifact(record.id, log)
            raise

        if not fan_out.any_triggered:
            self.artifacts.delete(record.id)
            log.warning(
                "external_artifact_rolled_back",
                artifact_id=record.id,
                skipped=fan_out.skipped,
                failed=len(fan_out.failures),
            )
            if fan_out.failures:
                raise fan_out.error
            if fan_out.skipped:
                raise AuthorizationError(
                    "no downstream pipeline authorized for this artifact",
                    details={"external_ci_id": external_ci_id, "skipped": fan_out.skipped},
                )
            raise NotFoundError(
                "cd_pipeline",
                external_ci_id,
                message=f"no downstream pipeline linked to external ci {external_ci_id}",
            )

        return IngestionResult(artifact_id=record.id, artifact_ids=[record.id], fan_out=fan_out)

    def _discard_artifact(self, artifact_id: int, log) -> None:
        """Delete an artifact while another error is propagating; a failed delete is only logged."""
        try:
            self.artifacts.delete(artifact_id)
        except ControlTowerError as e:
            log.error("external_artifact_rollback_failed", artifact_id=artifact_id, error=str(e))
            return
        log.warning("external_artifact_rolled_back", artifact_id=artifact_id)

    async def handle_build_failure(self, pipeline_id: int, request: CiArtifactWebhookRequest) -> None:
        """Notify about a failed build. No artifact is written."""
        if request.workflow_id is None:
            raise ValidationError("workflow id is required for a failure event")
        workflow = self.workflows.require_workflow(request.workflow_id)
        pipeline = self.ci_pipelines.require_pipeline(pipeline_id)
        logger.info(
            "build_failure_received",
            ci_pipeline_id=pipeline_id,
            workflow_id=workflow.id,
            failure_reason=request.failure_reason,
        )
        self.notifier.dispatch(
            NotificationEvent(
                event_type="fail",
                pipeline_type="CI",
                app_id=pipeline.app_id,
                pipeline_id=pipeline.id,
                app_name=pipeline.app.app_name,
                pipeline_name=pipeline.name,
                docker_image_url=request.image,
                ci_workflow_runner_id=workflow.id,
                user_id=workflow.triggered_by,
                git_triggers=workflow.git_triggers or {},
                failure_reason=request.failure_reason,
            )
        )

    @staticmethod
    def _success_event(
        request: CiArtifactWebhookRequest, pipeline: CiPipelineModel, artifact: ArtifactRecord
    ) -> NotificationEvent:
        return NotificationEvent(
            event_type="success",
            pipeline_type="CI",
            app_id=pipeline.app_id,
            pipeline_id=pipeline.id,
            app_name=pipeline.app.app_name,
            pipeline_name=request.pipeline_name,
            docker_image_url=artifact.image,
            ci_artifact_id=artifact.id,
            ci_workflow_runner_id=artifact.ci_workflow_id,
            user_id=request.user_id,
            source=",".join(source_revisions(artifact.material_info)),
        )
