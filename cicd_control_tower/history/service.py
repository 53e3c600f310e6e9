"""
Deployment Template History Recorder.

History entries are append-only. Template-edit entries are written with
``deployed=False``; only an actual deployment trigger writes a
``deployed=True`` entry, and only those can be used for rollback.

Read paths match deployed entries to CD workflow runners by pipeline and
``deployed_on == started_on``. An entry without a matching runner is never
reported with a made-up status.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy import and_, desc
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.models import (
    CdPipelineModel,
    CdWorkflowRunnerModel,
    ChartModel,
    ChartRefModel,
    DeploymentTemplateHistoryModel,
    EnvConfigOverrideModel,
)
from ..db.services import AppMetricsService, CdPipelineService
from ..errors import NotFoundError
from ..schemas.history import (
    DeployedHistoryItem,
    DeploymentHistoryItem,
    HistoryDetail,
    HistoryDetailConfig,
)

logger = structlog.get_logger()


class DeploymentTemplateHistoryService:
    """Writes and reads deployment template history."""

    def __init__(self, db: Session):
        self.db = db
        self.pipelines = CdPipelineService(db)
        self.app_metrics = AppMetricsService(db)

    def _chart_ref(self, chart: ChartModel) -> Tuple[str, str]:
        chart_ref = self.db.get(ChartRefModel, chart.chart_ref_id)
        if chart_ref is None:
            raise NotFoundError("chart_ref", chart.chart_ref_id)
        name = chart_ref.name or get_settings().default_chart_template_name
        return name, chart_ref.version

    def _append(self, entries: List[DeploymentTemplateHistoryModel], commit: bool) -> None:
        self.db.add_all(entries)
        if commit:
            self.db.commit()
        else:
            self.db.flush()

    def pipelines_not_overriding(self, chart: ChartModel) -> List[CdPipelineModel]:
        """CD pipelines of the chart's app whose environment inherits the global template.

        A pipeline inherits when its environment has no active latest
        override row for this chart, or the row is not marked as overriding.
        """
        overriding_envs = {
            env_id
            for (env_id,) in self.db.query(EnvConfigOverrideModel.target_environment)
            .filter(
                EnvConfigOverrideModel.chart_id == chart.id,
                EnvConfigOverrideModel.active.is_(True),
                EnvConfigOverrideModel.latest.is_(True),
                EnvConfigOverrideModel.is_override.is_(True),
            )
            .all()
        }
        return [
            pipeline
            for pipeline in self.pipelines.find_by_app(chart.app_id)
            if pipeline.environment_id not in overriding_envs
        ]

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def record_global_template_change(
        self, chart: ChartModel, is_app_metrics_enabled: bool, commit: bool = True
    ) -> List[DeploymentTemplateHistoryModel]:
        """Append one template-level entry plus one per inheriting pipeline."""
        template_name, template_version = self._chart_ref(chart)
        pipelines = self.pipelines_not_overriding(chart)

        def entry(pipeline_id: Optional[int], target_environment: Optional[int]):
            return DeploymentTemplateHistoryModel(
                app_id=chart.app_id,
                pipeline_id=pipeline_id,
                target_environment=target_environment,
                template=chart.global_override,
                image_descriptor_template=chart.image_descriptor_template,
                template_name=template_name,
                template_version=template_version,
                is_app_metrics_enabled=is_app_metrics_enabled,
                deployed=False,
                created_on=chart.created_on,
                created_by=chart.created_by,
                updated_on=chart.updated_on,
                updated_by=chart.updated_by,
            )

        entries = [entry(None, None)]
        seen = set()
        for pipeline in pipelines:
            if pipeline.id in seen:
                continue
            seen.add(pipeline.id)
            entries.append(entry(pipeline.id, pipeline.environment_id))

        self._append(entries, commit)
        logger.info(
            "global_template_history_recorded",
            app_id=chart.app_id,
            chart_id=chart.id,
            pipeline_ids=sorted(seen),
        )
        return entries

    def record_env_override_change(
        self,
        env_override: EnvConfigOverrideModel,
        is_app_metrics_enabled: bool,
        pipeline_id: int = 0,
        commit: bool = True,
    ) -> DeploymentTemplateHistoryModel:
        """Append one entry for an environment override.

        A ``pipeline_id`` of 0 is resolved from the pipeline bound to the
        override's (application, environment); the entry stays template-level
        when there is none.
        """
        chart = self.db.get(ChartModel, env_override.chart_id)
        if chart is None:
            raise NotFoundError("chart", env_override.chart_id)
        template_name, template_version = self._chart_ref(chart)

        resolved_pipeline_id: Optional[int] = pipeline_id or None
        if not resolved_pipeline_id:
            pipeline = self.pipelines.find_by_app_and_environment(
                chart.app_id, env_override.target_environment
            )
            resolved_pipeline_id = pipeline.id if pipeline else None

        if env_override.is_override:
            template = env_override.env_override_values
        else:
            # new pipelines start with an empty override that inherits the global one
            template = chart.global_override

        entry = DeploymentTemplateHistoryModel(
            app_id=chart.app_id,
            pipeline_id=resolved_pipeline_id,
            target_environment=env_override.target_environment,
            template=template,
            image_descriptor_template=chart.image_descriptor_template,
            template_name=template_name,
            template_version=template_version,
            is_app_metrics_enabled=is_app_metrics_enabled,
            deployed=False,
            created_on=env_override.created_on,
            created_by=env_override.created_by,
            updated_on=env_override.updated_on,
            updated_by=env_override.updated_by,
        )
        self._append([entry], commit)
        logger.info(
            "env_override_history_recorded",
            app_id=chart.app_id,
            env_override_id=env_override.id,
            pipeline_id=resolved_pipeline_id,
        )
        return entry

    def record_deployment_trigger(
        self,
        pipeline: CdPipelineModel,
        env_override: Optional[EnvConfigOverrideModel],
        rendered_image_template: str,
        deployed_on: datetime,
        deployed_by: int,
        chart: Optional[ChartModel] = None,
        variable_snapshot: Optional[Dict[str, str]] = None,
        commit: bool = True,
    ) -> DeploymentTemplateHistoryModel:
        """Append the ``deployed=True`` entry for a deployment trigger.

        ``chart`` is only needed when the environment has no override row;
        the global override is recorded in that case.
        """
        if env_override is not None:
            chart = self.db.get(ChartModel, env_override.chart_id)
        if chart is None:
            raise NotFoundError("chart", env_override.chart_id if env_override else None)
        template_name, template_version = self._chart_ref(chart)

        is_app_metrics_enabled = self.app_metrics.resolve_app_metrics(
            pipeline.app_id, pipeline.environment_id
        )

        if env_override is not None and env_override.is_override:
            template = env_override.env_override_values
        else:
            template = chart.global_override

        entry = DeploymentTemplateHistoryModel(
            app_id=pipeline.app_id,
            pipeline_id=pipeline.id,
            target_environment=pipeline.environment_id,
            template=template,
            image_descriptor_template=rendered_image_template,
            template_name=template_name,
            template_version=template_version,
            is_app_metrics_enabled=is_app_metrics_enabled,
            variable_snapshot=variable_snapshot or {},
            deployed=True,
            deployed_on=deployed_on,
            deployed_by=deployed_by,
            created_on=deployed_on,
            created_by=deployed_by,
            updated_on=deployed_on,
            updated_by=deployed_by,
        )
        self._append([entry], commit)
        logger.info(
            "deployment_history_recorded",
            pipeline_id=pipeline.id,
            is_app_metrics_enabled=is_app_metrics_enabled,
        )
        return entry

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _deployed_with_runner(self, pipeline_id: int):
        return (
            self.db.query(DeploymentTemplateHistoryModel, CdWorkflowRunnerModel)
            .join(
                CdWorkflowRunnerModel,
                and_(
                    CdWorkflowRunnerModel.pipeline_id == DeploymentTemplateHistoryModel.pipeline_id,
                    CdWorkflowRunnerModel.started_on == DeploymentTemplateHistoryModel.deployed_on,
                ),
            )
            .filter(
                DeploymentTemplateHistoryModel.pipeline_id == pipeline_id,
                DeploymentTemplateHistoryModel.deployed.is_(True),
            )
        )

    @staticmethod
    def _detail(history: DeploymentTemplateHistoryModel) -> HistoryDetail:
        return HistoryDetail(
            template_name=history.template_name,
            template_version=history.template_version,
            is_app_metrics_enabled=history.is_app_metrics_enabled,
            code_editor_value=HistoryDetailConfig(value=history.template),
            image_descriptor_template=history.image_descriptor_template,
            variable_snapshot=history.variable_snapshot or {},
        )

    def get_history_by_id(self, history_id: int, pipeline_id: int) -> HistoryDetail:
        history = (
            self.db.query(DeploymentTemplateHistoryModel)
            .filter(
                DeploymentTemplateHistoryModel.id == history_id,
                DeploymentTemplateHistoryModel.pipeline_id == pipeline_id,
                DeploymentTemplateHistoryModel.deployed.is_(True),
            )
            .first()
        )
        if history is None:
            raise NotFoundError("deployment_template_history", history_id)
        return self._detail(history)

    def get_deployment_details(
        self, pipeline_id: int, offset: int = 0, limit: int = 20
    ) -> List[DeploymentHistoryItem]:
        """Deployed entries of a pipeline with the status of their runner, newest first."""
        rows = (
            self._deployed_with_runner(pipeline_id)
            .order_by(desc(DeploymentTemplateHistoryModel.deployed_on))
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [
            DeploymentHistoryItem(
                id=history.id,
                app_id=history.app_id,
                pipeline_id=history.pipeline_id,
                deployed=history.deployed,
                deployed_on=history.deployed_on,
                deployed_by=history.deployed_by,
                deployment_status=runner.status,
                wfr_id=runner.id,
                workflow_type=runner.workflow_type,
            )
            for history, runner in rows
        ]

    def get_deployed_history_list(self, pipeline_id: int) -> List[DeployedHistoryItem]:
        rows = (
            self._deployed_with_runner(pipeline_id)
            .order_by(desc(DeploymentTemplateHistoryModel.deployed_on))
            .all()
        )
        return [
            DeployedHistoryItem(
                id=history.id,
                deployed_on=history.deployed_on,
                deployed_by=history.deployed_by,
                deployment_status=runner.status,
            )
            for history, runner in rows
        ]

    def _find_by_run(self, pipeline_id: int, wfr_id: int) -> Optional[DeploymentTemplateHistoryModel]:
        row = (
            self._deployed_with_runner(pipeline_id)
            .filter(CdWorkflowRunnerModel.id == wfr_id)
            .order_by(desc(DeploymentTemplateHistoryModel.id))
            .first()
        )
        return row[0] if row else None

    def check_history_exists(self, pipeline_id: int, wfr_id: int) -> Tuple[Optional[int], bool]:
        history = self._find_by_run(pipeline_id, wfr_id)
        if history is None:
            return None, False
        return history.id, True

    def get_history_by_pipeline_and_run_id(self, pipeline_id: int, wfr_id: int) -> HistoryDetail:
        """Template that a given runner deployed; the source for rollback."""
        history = self._find_by_run(pipeline_id, wfr_id)
        if history is None:
            raise NotFoundError(
                "deployment_template_history",
                wfr_id,
                message=f"no deployed template for pipeline {pipeline_id} and run {wfr_id}",
            )
        return self._detail(history)
