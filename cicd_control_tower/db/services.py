"""
Database services for the CI/CD control tower.

Each service wraps a ``Session``. Write methods commit by default; pass
``commit=False`` to only flush, so that several writes can share one
``transaction()`` block.
"""

from datetime import datetime
from typing import Dict, List, Optional, Union

import structlog
from sqlalchemy import desc
from sqlalchemy.orm import Session

from ..enums import (
    CdWorkflowType,
    RunnerStatus,
    TriggerType,
    WorkflowStatus,
)
from ..errors import InvalidStatusTransition, NotFoundError
from .models import (
    AppLevelMetricsModel,
    AppModel,
    CdPipelineModel,
    CdWorkflowRunnerModel,
    CiPipelineModel,
    CiWorkflowModel,
    EnvironmentModel,
    EnvLevelAppMetricsModel,
    ExternalCiPipelineModel,
    utc_now,
)

logger = structlog.get_logger()


def _finish(db: Session, instance, commit: bool) -> None:
    if commit:
        db.commit()
        db.refresh(instance)
    else:
        db.flush()


class AppService:
    """Service for applications and environments."""

    def __init__(self, db: Session):
        self.db = db

    def create_app(self, app_name: str, team_name: str = "default", commit: bool = True) -> AppModel:
        app = AppModel(app_name=app_name, team_name=team_name)
        self.db.add(app)
        _finish(self.db, app, commit)
        return app

    def get_app(self, app_id: int) -> Optional[AppModel]:
        return (
            self.db.query(AppModel)
            .filter(AppModel.id == app_id, AppModel.active.is_(True))
            .first()
        )

    def require_app(self, app_id: int) -> AppModel:
        app = self.get_app(app_id)
        if app is None:
            raise NotFoundError("app", app_id)
        return app

    def create_environment(
        self,
        name: str,
        namespace: Optional[str] = None,
        cluster_name: Optional[str] = None,
        commit: bool = True,
    ) -> EnvironmentModel:
        env = EnvironmentModel(name=name, namespace=namespace, cluster_name=cluster_name)
        self.db.add(env)
        _finish(self.db, env, commit)
        return env

    def get_environment(self, environment_id: int) -> Optional[EnvironmentModel]:
        return self.db.query(EnvironmentModel).filter(EnvironmentModel.id == environment_id).first()


class CiPipelineService:
    """Pipeline repository for build pipelines and external CI registrations."""

    def __init__(self, db: Session):
        self.db = db

    def create_pipeline(
        self,
        app_id: int,
        name: str,
        parent_ci_pipeline: Optional[int] = None,
        scan_enabled: bool = False,
        is_manual: bool = False,
        commit: bool = True,
    ) -> CiPipelineModel:
        pipeline = CiPipelineModel(
            app_id=app_id,
            name=name,
            parent_ci_pipeline=parent_ci_pipeline,
            scan_enabled=scan_enabled,
            is_manual=is_manual,
        )
        self.db.add(pipeline)
        _finish(self.db, pipeline, commit)
        return pipeline

    def get_pipeline(self, pipeline_id: int) -> Optional[CiPipelineModel]:
        """Get a non-deleted CI pipeline by ID."""
        return (
            self.db.query(CiPipelineModel)
            .filter(CiPipelineModel.id == pipeline_id, CiPipelineModel.deleted.is_(False))
            .first()
        )

    def require_pipeline(self, pipeline_id: int) -> CiPipelineModel:
        pipeline = self.get_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFoundError("ci_pipeline", pipeline_id)
        return pipeline

    def find_child_pipelines(self, parent_id: int) -> List[CiPipelineModel]:
        """Child pipelines declaring ``parent_id`` as parent, in creation order."""
        return (
            self.db.query(CiPipelineModel)
            .filter(
                CiPipelineModel.parent_ci_pipeline == parent_id,
                CiPipelineModel.deleted.is_(False),
            )
            .order_by(CiPipelineModel.id)
            .all()
        )

    def create_external_ci(self, app_id: int, access_token: str, commit: bool = True) -> ExternalCiPipelineModel:
        external = ExternalCiPipelineModel(app_id=app_id, access_token=access_token)
        self.db.add(external)
        _finish(self.db, external, commit)
        return external

    def get_external_ci(self, external_ci_id: int) -> Optional[ExternalCiPipelineModel]:
        return (
            self.db.query(ExternalCiPipelineModel)
            .filter(
                ExternalCiPipelineModel.id == external_ci_id,
                ExternalCiPipelineModel.active.is_(True),
            )
            .first()
        )


class CdPipelineService:
    """Pipeline repository for deployment pipelines."""

    def __init__(self, db: Session):
        self.db = db

    def create_pipeline(
        self,
        app_id: int,
        environment_id: int,
        name: str,
        ci_pipeline_id: Optional[int] = None,
        external_ci_pipeline_id: Optional[int] = None,
        trigger_type: Union[TriggerType, str] = TriggerType.AUTOMATIC,
        commit: bool = True,
    ) -> CdPipelineModel:
        pipeline = CdPipelineModel(
            app_id=app_id,
            environment_id=environment_id,
            name=name,
            ci_pipeline_id=ci_pipeline_id,
            external_ci_pipeline_id=external_ci_pipeline_id,
            trigger_type=TriggerType(trigger_type).value,
        )
        self.db.add(pipeline)
        _finish(self.db, pipeline, commit)
        return pipeline

    def get_pipeline(self, pipeline_id: int) -> Optional[CdPipelineModel]:
        return (
            self.db.query(CdPipelineModel)
            .filter(CdPipelineModel.id == pipeline_id, CdPipelineModel.deleted.is_(False))
            .first()
        )

    def require_pipeline(self, pipeline_id: int) -> CdPipelineModel:
        pipeline = self.get_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFoundError("cd_pipeline", pipeline_id)
        return pipeline

    def find_by_ci_pipeline(
        self, ci_pipeline_id: int, trigger_type: Optional[TriggerType] = None
    ) -> List[CdPipelineModel]:
        query = self.db.query(CdPipelineModel).filter(
            CdPipelineModel.ci_pipeline_id == ci_pipeline_id,
            CdPipelineModel.deleted.is_(False),
        )
        if trigger_type is not None:
            query = query.filter(CdPipelineModel.trigger_type == trigger_type.value)
        return query.order_by(CdPipelineModel.id).all()

    def find_by_external_ci(self, external_ci_pipeline_id: int) -> List[CdPipelineModel]:
        return (
            self.db.query(CdPipelineModel)
            .filter(
                CdPipelineModel.external_ci_pipeline_id == external_ci_pipeline_id,
                CdPipelineModel.deleted.is_(False),
            )
            .order_by(CdPipelineModel.id)
            .all()
        )

    def find_by_app(self, app_id: int) -> List[CdPipelineModel]:
        return (
            self.db.query(CdPipelineModel)
            .filter(CdPipelineModel.app_id == app_id, CdPipelineModel.deleted.is_(False))
            .order_by(CdPipelineModel.id)
            .all()
        )

    def find_by_app_and_environment(self, app_id: int, environment_id: int) -> Optional[CdPipelineModel]:
        return (
            self.db.query(CdPipelineModel)
            .filter(
                CdPipelineModel.app_id == app_id,
                CdPipelineModel.environment_id == environment_id,
                CdPipelineModel.deleted.is_(False),
            )
            .order_by(CdPipelineModel.id)
            .first()
        )


# Pending may jump straight to a terminal state: a completion callback can
# arrive before the runner ever reported Running.
_ALLOWED_TRANSITIONS: Dict[WorkflowStatus, frozenset] = {
    WorkflowStatus.PENDING: frozenset(
        {
            WorkflowStatus.RUNNING,
            WorkflowStatus.SUCCEEDED,
            WorkflowStatus.FAILED,
            WorkflowStatus.ERROR,
            WorkflowStatus.ABORTED,
        }
    ),
    WorkflowStatus.RUNNING: frozenset(
        {
            WorkflowStatus.RUNNING,
            WorkflowStatus.SUCCEEDED,
            WorkflowStatus.FAILED,
            WorkflowStatus.ERROR,
            WorkflowStatus.ABORTED,
        }
    ),
}


class CiWorkflowService:
    """Build workflow records and their status state machine.

    ``Pending -> Running -> {Succeeded, Failed, Error, Aborted}``. Terminal
    states are sinks; a retry is a new workflow row.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_workflow(
        self,
        ci_pipeline_id: int,
        name: str,
        git_triggers: Optional[Dict[str, Dict]] = None,
        triggered_by: int = 1,
        namespace: Optional[str] = None,
        commit: bool = True,
    ) -> CiWorkflowModel:
        workflow = CiWorkflowModel(
            ci_pipeline_id=ci_pipeline_id,
            name=name,
            status=WorkflowStatus.PENDING.value,
            git_triggers=git_triggers or {},
            triggered_by=triggered_by,
            namespace=namespace,
        )
        self.db.add(workflow)
        _finish(self.db, workflow, commit)
        return workflow

    def get_workflow(self, workflow_id: int) -> Optional[CiWorkflowModel]:
        return self.db.query(CiWorkflowModel).filter(CiWorkflowModel.id == workflow_id).first()

    def require_workflow(self, workflow_id: int) -> CiWorkflowModel:
        workflow = self.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError("ci_workflow", workflow_id)
        return workflow

    def transition_status(
        self,
        workflow_id: int,
        status: WorkflowStatus,
        message: Optional[str] = None,
        commit: bool = True,
    ) -> CiWorkflowModel:
        """Move a workflow to ``status``.

        Raises:
            NotFoundError: unknown workflow
            InvalidStatusTransition: the workflow is already terminal, or the
                move is not part of the state machine
        """
        workflow = self.require_workflow(workflow_id)
        current = WorkflowStatus(workflow.status)
        if status not in _ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidStatusTransition(workflow_id, current.value, status.value)

        now = utc_now()
        workflow.status = status.value
        if message is not None:
            workflow.message = message
        if status == WorkflowStatus.RUNNING and workflow.started_on is None:
            workflow.started_on = now
        if status.is_terminal:
            workflow.finished_on = now

        _finish(self.db, workflow, commit)
        logger.info(
            "ci_workflow_status_changed",
            workflow_id=workflow_id,
            previous=current.value,
            status=status.value,
        )
        return workflow

    def find_last_triggered(self, ci_pipeline_id: int) -> Optional[CiWorkflowModel]:
        return (
            self.db.query(CiWorkflowModel)
            .filter(CiWorkflowModel.ci_pipeline_id == ci_pipeline_id)
            .order_by(desc(CiWorkflowModel.id))
            .first()
        )


class CdWorkflowService:
    """Deployment runner records."""

    def __init__(self, db: Session):
        self.db = db

    def create_runner(
        self,
        pipeline_id: int,
        ci_artifact_id: int,
        triggered_by: int,
        started_on: datetime,
        name: str,
        workflow_type: CdWorkflowType = CdWorkflowType.DEPLOY,
        commit: bool = True,
    ) -> CdWorkflowRunnerModel:
        runner = CdWorkflowRunnerModel(
            pipeline_id=pipeline_id,
            ci_artifact_id=ci_artifact_id,
            triggered_by=triggered_by,
            started_on=started_on,
            name=name,
            workflow_type=workflow_type.value,
            status=RunnerStatus.STARTING.value,
        )
        self.db.add(runner)
        _finish(self.db, runner, commit)
        return runner

    def get_runner(self, runner_id: int) -> Optional[CdWorkflowRunnerModel]:
        return self.db.query(CdWorkflowRunnerModel).filter(CdWorkflowRunnerModel.id == runner_id).first()

    def update_status(
        self,
        runner_id: int,
        status: RunnerStatus,
        message: Optional[str] = None,
        commit: bool = True,
    ) -> CdWorkflowRunnerModel:
        runner = self.get_runner(runner_id)
        if runner is None:
            raise NotFoundError("cd_workflow_runner", runner_id)
        runner.status = status.value
        if message is not None:
            runner.message = message
        if status in (RunnerStatus.SUCCEEDED, RunnerStatus.HEALTHY, RunnerStatus.FAILED, RunnerStatus.ABORTED):
            runner.finished_on = utc_now()
        _finish(self.db, runner, commit)
        return runner

    def find_by_pipeline(self, pipeline_id: int, limit: int = 50) -> List[CdWorkflowRunnerModel]:
        return (
            self.db.query(CdWorkflowRunnerModel)
            .filter(CdWorkflowRunnerModel.pipeline_id == pipeline_id)
            .order_by(desc(CdWorkflowRunnerModel.started_on))
            .limit(limit)
            .all()
        )


class AppMetricsService:
    """Application-level and environment-level app-metrics flags."""

    def __init__(self, db: Session):
        self.db = db

    def get_app_level(self, app_id: int) -> Optional[AppLevelMetricsModel]:
        return self.db.query(AppLevelMetricsModel).filter(AppLevelMetricsModel.app_id == app_id).first()

    def get_env_level(self, app_id: int, env_id: int) -> Optional[EnvLevelAppMetricsModel]:
        return (
            self.db.query(EnvLevelAppMetricsModel)
            .filter(
                EnvLevelAppMetricsModel.app_id == app_id,
                EnvLevelAppMetricsModel.env_id == env_id,
            )
            .first()
        )

    def upsert_app_level(
        self, app_id: int, enabled: bool, user_id: int, commit: bool = True
    ) -> AppLevelMetricsModel:
        row = self.get_app_level(app_id)
        now = utc_now()
        if row is None:
            row = AppLevelMetricsModel(
                app_id=app_id,
                app_metrics=enabled,
                created_by=user_id,
                created_on=now,
                updated_by=user_id,
                updated_on=now,
            )
            self.db.add(row)
        else:
            row.app_metrics = enabled
            row.updated_by = user_id
            row.updated_on = now
        _finish(self.db, row, commit)
        return row

    def upsert_env_level(
        self, app_id: int, env_id: int, enabled: Optional[bool], commit: bool = True
    ) -> EnvLevelAppMetricsModel:
        row = self.get_env_level(app_id, env_id)
        if row is None:
            row = EnvLevelAppMetricsModel(app_id=app_id, env_id=env_id, app_metrics=enabled)
            self.db.add(row)
        else:
            row.app_metrics = enabled
        _finish(self.db, row, commit)
        return row

    def resolve_app_metrics(self, app_id: int, env_id: Optional[int]) -> bool:
        """Effective app-metrics flag for an (application, environment).

        An environment-level row with a set flag wins; otherwise the
        application-level flag applies; with neither, metrics are off.
        """
        if env_id is not None:
            env_row = self.get_env_level(app_id, env_id)
            if env_row is not None and env_row.app_metrics is not None:
                return bool(env_row.app_metrics)
        app_row = self.get_app_level(app_id)
        if app_row is not None:
            return bool(app_row.app_metrics)
        return False
