"""
Chart Version Store.

For each application at most one chart row has ``latest`` set. Every
operation that moves the pointer:

1. locks the owning ``apps`` row (``SELECT ... FOR UPDATE``), which
   serialises writers per application,
2. demotes the current latest to ``previous`` and clears ``previous`` on
   every other row, then flushes,
3. writes the new latest row,

all inside one transaction. The partial unique index on
``charts(app_id) WHERE latest`` rejects any write that would leave two
latest rows.
"""

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import desc
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.base import transaction
from ..db.models import (
    AppLevelMetricsModel,
    AppModel,
    ChartModel,
    ChartRefModel,
    ChartRepoModel,
    EnvConfigOverrideModel,
    EnvironmentModel,
    utc_now,
)
from ..db.services import AppMetricsService
from ..enums import ChartStatus
from ..errors import NotFoundError, ValidationError
from ..history.service import DeploymentTemplateHistoryService
from ..schemas.chart import TemplateRequest
from .compatibility import get_compatibility
from .merge import merge_patch
from .versioning import next_chart_version, parse_chart_version, version_bucket

logger = structlog.get_logger()


class ChartService:
    """Versioned deployment configuration of applications."""

    def __init__(self, db: Session):
        self.db = db
        self.history = DeploymentTemplateHistoryService(db)
        self.app_metrics = AppMetricsService(db)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _lock_app(self, app_id: int) -> AppModel:
        app = (
            self.db.query(AppModel)
            .filter(AppModel.id == app_id, AppModel.active.is_(True))
            .with_for_update()
            .first()
        )
        if app is None:
            raise NotFoundError("app", app_id)
        return app

    def _chart_ref(self, chart_ref_id: int) -> ChartRefModel:
        chart_ref = (
            self.db.query(ChartRefModel)
            .filter(ChartRefModel.id == chart_ref_id, ChartRefModel.active.is_(True))
            .first()
        )
        if chart_ref is None:
            raise NotFoundError("chart_ref", chart_ref_id)
        return chart_ref

    def _chart_repo(self, chart_repository_id: Optional[int]) -> ChartRepoModel:
        query = self.db.query(ChartRepoModel).filter(ChartRepoModel.active.is_(True))
        if chart_repository_id:
            repo = query.filter(ChartRepoModel.id == chart_repository_id).first()
        else:
            repo = query.filter(ChartRepoModel.is_default.is_(True)).first()
        if repo is None:
            raise NotFoundError("chart_repo", chart_repository_id or "default")
        return repo

    def get_chart(self, chart_id: int) -> ChartModel:
        chart = self.db.get(ChartModel, chart_id)
        if chart is None or not chart.active:
            raise NotFoundError("chart", chart_id)
        return chart

    def find_latest(self, app_id: int) -> Optional[ChartModel]:
        return (
            self.db.query(ChartModel)
            .filter(
                ChartModel.app_id == app_id,
                ChartModel.active.is_(True),
                ChartModel.latest.is_(True),
            )
            .first()
        )

    def find_previous(self, app_id: int) -> Optional[ChartModel]:
        return (
            self.db.query(ChartModel)
            .filter(
                ChartModel.app_id == app_id,
                ChartModel.active.is_(True),
                ChartModel.previous.is_(True),
            )
            .first()
        )

    def get_by_app_and_chart_ref(self, app_id: int, chart_ref_id: int) -> Optional[ChartModel]:
        return (
            self.db.query(ChartModel)
            .filter(
                ChartModel.app_id == app_id,
                ChartModel.chart_ref_id == chart_ref_id,
                ChartModel.active.is_(True),
            )
            .first()
        )

    def list_for_app(self, app_id: int) -> List[ChartModel]:
        return (
            self.db.query(ChartModel)
            .filter(ChartModel.app_id == app_id, ChartModel.active.is_(True))
            .order_by(desc(ChartModel.id))
            .all()
        )

    # ------------------------------------------------------------------
    # Latest/previous pointer
    # ------------------------------------------------------------------

    def _make_latest(self, app_id: int, chart: ChartModel) -> None:
        """Move the app's latest pointer onto ``chart``. Caller holds the app lock."""
        others = (
            self.db.query(ChartModel)
            .filter(ChartModel.app_id == app_id, ChartModel.active.is_(True))
            .all()
        )
        for other in others:
            if other is chart:
                continue
            if other.latest:
                other.latest = False
                other.previous = True
            else:
                other.previous = False
        # demotions must reach the database before the new latest row
        self.db.flush()

        chart.latest = True
        chart.previous = False
        if chart not in self.db:
            self.db.add(chart)
        self.db.flush()

    def _make_env_latest(self, app_id: int, environment_id: int, env_override: EnvConfigOverrideModel) -> None:
        others = (
            self.db.query(EnvConfigOverrideModel)
            .join(ChartModel, ChartModel.id == EnvConfigOverrideModel.chart_id)
            .filter(
                ChartModel.app_id == app_id,
                EnvConfigOverrideModel.target_environment == environment_id,
                EnvConfigOverrideModel.active.is_(True),
            )
            .all()
        )
        for other in others:
            if other is env_override:
                continue
            if other.latest:
                other.latest = False
                other.previous = True
            else:
                other.previous = False
        self.db.flush()

        env_override.latest = True
        env_override.previous = False
        if env_override not in self.db:
            self.db.add(env_override)
        self.db.flush()

    def _current_app_metrics(self, app_id: int) -> bool:
        row = self.app_metrics.get_app_level(app_id)
        return bool(row.app_metrics) if row else False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_version(self, request: TemplateRequest) -> ChartModel:
        """Create the next chart version for an application and make it latest.

        Raises:
            NotFoundError: unknown application, reference chart or chart repo
            ValidationError: the app already has a chart on this reference
                chart, or the reference chart version is malformed
        """
        with transaction(self.db):
            chart = self._create_version(request)
        logger.info(
            "chart_version_created",
            app_id=chart.app_id,
            chart_id=chart.id,
            chart_version=chart.chart_version,
        )
        return chart

    def _create_version(self, request: TemplateRequest) -> ChartModel:
        app = self._lock_app(request.app_id)
        chart_ref = self._chart_ref(request.chart_ref_id)
        chart_repo = self._chart_repo(request.chart_repository_id)

        if self.get_by_app_and_chart_ref(app.id, chart_ref.id) is not None:
            raise ValidationError(
                f"reference chart {chart_ref.id} is already added to app {app.id}",
                details={"app_id": app.id, "chart_ref_id": chart_ref.id},
            )

        parse_chart_version(chart_ref.version)
        bucket = version_bucket(chart_ref.version)
        existing_versions = [
            version
            for (version,) in self.db.query(ChartModel.chart_version)
            .filter(
                ChartModel.chart_repo == chart_repo.name,
                ChartModel.chart_name == app.app_name,
                ChartModel.chart_version.like(f"{bucket}.%"),
            )
            .all()
        ]
        version = next_chart_version(chart_ref.version, existing_versions)

        current_latest = self.find_latest(app.id)
        now = utc_now()
        chart = ChartModel(
            app_id=app.id,
            chart_repo_id=chart_repo.id,
            chart_repo=chart_repo.name,
            chart_repo_url=chart_repo.url,
            chart_name=app.app_name,
            chart_version=version,
            chart_ref_id=chart_ref.id,
            reference_template=chart_ref.location,
            chart_location=f"{chart_ref.location}/{version}",
            git_repo_url=current_latest.git_repo_url if current_latest else None,
            values=merge_patch(chart_ref.default_app_values or {}, request.values_override),
            global_override=merge_patch({}, request.values_override),
            image_descriptor_template=chart_ref.image_descriptor_template,
            status=ChartStatus.NEW.value,
            active=True,
            is_basic_view_locked=request.is_basic_view_locked,
            current_view_editor=request.current_view_editor,
            created_on=now,
            created_by=request.user_id,
            updated_on=now,
            updated_by=request.user_id,
        )
        self._make_latest(app.id, chart)

        app_metrics = request.is_app_metrics_enabled and chart_ref.is_app_metrics_supported
        self.app_metrics.upsert_app_level(app.id, app_metrics, request.user_id, commit=False)
        self.history.record_global_template_change(chart, app_metrics, commit=False)
        return chart

    def update_override(
        self,
        chart_id: int,
        delta: Dict[str, Any],
        user_id: int,
        is_app_metrics_enabled: Optional[bool] = None,
    ) -> ChartModel:
        """Merge ``delta`` into a chart's values and global override.

        Editing a chart that is not the app's latest promotes it back to
        latest. Pass ``is_app_metrics_enabled`` to also update the app-level
        flag.
        """
        with transaction(self.db):
            chart = self.get_chart(chart_id)
            self._lock_app(chart.app_id)
            chart_ref = self._chart_ref(chart.chart_ref_id)

            promoted = not chart.latest
            chart.values = merge_patch(chart.values or {}, delta)
            chart.global_override = merge_patch(chart.global_override or {}, delta)
            chart.updated_on = utc_now()
            chart.updated_by = user_id
            if promoted:
                self._make_latest(chart.app_id, chart)
            else:
                self.db.flush()

            if is_app_metrics_enabled is None:
                app_metrics = self._current_app_metrics(chart.app_id)
            else:
                app_metrics = is_app_metrics_enabled and chart_ref.is_app_metrics_supported
                self.app_metrics.upsert_app_level(chart.app_id, app_metrics, user_id, commit=False)

            self.history.record_global_template_change(chart, app_metrics, commit=False)

        logger.info("chart_override_updated", chart_id=chart_id, promoted=promoted)
        return chart

    def create_env_override(
        self,
        chart_id: int,
        environment_id: int,
        values: Dict[str, Any],
        is_override: bool,
        user_id: int,
        pipeline_id: int = 0,
    ) -> EnvConfigOverrideModel:
        """Make a new environment override the latest for (app, environment)."""
        with transaction(self.db):
            chart = self.get_chart(chart_id)
            self._lock_app(chart.app_id)
            env_override = self._create_env_override(
                chart, environment_id, values, is_override, user_id
            )
            app_metrics = self.app_metrics.resolve_app_metrics(chart.app_id, environment_id)
            self.history.record_env_override_change(
                env_override, app_metrics, pipeline_id=pipeline_id, commit=False
            )
        logger.info(
            "env_override_created",
            chart_id=chart_id,
            environment_id=environment_id,
            env_override_id=env_override.id,
        )
        return env_override

    def _create_env_override(
        self,
        chart: ChartModel,
        environment_id: int,
        values: Dict[str, Any],
        is_override: bool,
        user_id: int,
        is_basic_view_locked: bool = False,
        current_view_editor: Optional[str] = None,
    ) -> EnvConfigOverrideModel:
        environment = self.db.get(EnvironmentModel, environment_id)
        if environment is None:
            raise NotFoundError("environment", environment_id)
        now = utc_now()
        env_override = EnvConfigOverrideModel(
            chart_id=chart.id,
            target_environment=environment_id,
            env_override_values=merge_patch({}, values),
            is_override=is_override,
            namespace=environment.namespace,
            status=ChartStatus.SUCCESS.value,
            active=True,
            is_basic_view_locked=is_basic_view_locked,
            current_view_editor=current_view_editor,
            created_on=now,
            created_by=user_id,
            updated_on=now,
            updated_by=user_id,
        )
        self._make_env_latest(chart.app_id, environment_id, env_override)
        return env_override

    def find_env_override(self, app_id: int, environment_id: int) -> Optional[EnvConfigOverrideModel]:
        """Latest environment override of an application in an environment."""
        return (
            self.db.query(EnvConfigOverrideModel)
            .join(ChartModel, ChartModel.id == EnvConfigOverrideModel.chart_id)
            .filter(
                ChartModel.app_id == app_id,
                EnvConfigOverrideModel.target_environment == environment_id,
                EnvConfigOverrideModel.active.is_(True),
                EnvConfigOverrideModel.latest.is_(True),
            )
            .first()
        )

    def upgrade_for_app(self, app_id: int, chart_ref_id: int, user_id: int) -> ChartModel:
        """Move an application onto another reference chart.

        The new version keeps the current global override, and every
        environment override of the current chart is copied onto it.

        Raises:
            NotFoundError: the app has no chart yet
            ValidationError: the two reference charts render different workloads
        """
        with transaction(self.db):
            self._lock_app(app_id)
            current = self.find_latest(app_id)
            if current is None:
                raise NotFoundError(
                    "chart", app_id, message=f"no chart configured for app {app_id}"
                )
            old_ref = self._chart_ref(current.chart_ref_id)
            new_ref = self._chart_ref(chart_ref_id)
            if not get_compatibility(old_ref.name, new_ref.name):
                raise ValidationError(
                    "charts are not compatible",
                    details={"old": old_ref.name or "", "new": new_ref.name or ""},
                )

            request = TemplateRequest(
                app_id=app_id,
                chart_ref_id=chart_ref_id,
                chart_repository_id=current.chart_repo_id,
                values_override=current.global_override or {},
                is_app_metrics_enabled=self._current_app_metrics(app_id),
                is_basic_view_locked=current.is_basic_view_locked,
                current_view_editor=current.current_view_editor,
                user_id=user_id,
            )
            upgraded = self._create_version(request)

            env_overrides = (
                self.db.query(EnvConfigOverrideModel)
                .filter(
                    EnvConfigOverrideModel.chart_id == current.id,
                    EnvConfigOverrideModel.active.is_(True),
                    EnvConfigOverrideModel.latest.is_(True),
                )
                .order_by(EnvConfigOverrideModel.id)
                .all()
            )
            for env_override in env_overrides:
                copied = self._create_env_override(
                    upgraded,
                    env_override.target_environment,
                    env_override.env_override_values or {},
                    env_override.is_override,
                    user_id,
                    is_basic_view_locked=env_override.is_basic_view_locked,
                    current_view_editor=env_override.current_view_editor,
                )
                app_metrics = self.app_metrics.resolve_app_metrics(
                    app_id, env_override.target_environment
                )
                self.history.record_env_override_change(copied, app_metrics, commit=False)

        logger.info(
            "chart_upgraded",
            app_id=app_id,
            from_chart_ref_id=old_ref.id,
            to_chart_ref_id=chart_ref_id,
            chart_id=upgraded.id,
        )
        return upgraded

    def set_app_metrics(self, app_id: int, enabled: bool, user_id: int) -> AppLevelMetricsModel:
        """Enable or disable app metrics for an application's current chart."""
        with transaction(self.db):
            self._lock_app(app_id)
            chart = self.find_latest(app_id)
            if chart is None:
                raise NotFoundError(
                    "chart", app_id, message=f"no chart configured for app {app_id}"
                )
            chart_ref = self._chart_ref(chart.chart_ref_id)
            if enabled and not chart_ref.is_app_metrics_supported:
                raise ValidationError(
                    "chart version is not compatible with app metrics",
                    details={"chart_ref_id": chart_ref.id},
                )
            row = self.app_metrics.upsert_app_level(app_id, enabled, user_id, commit=False)
            chart.updated_on = utc_now()
            chart.updated_by = user_id
            self.db.flush()
            self.history.record_global_template_change(chart, enabled, commit=False)
        logger.info("app_metrics_updated", app_id=app_id, enabled=enabled)
        return row
