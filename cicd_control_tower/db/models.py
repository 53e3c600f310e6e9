"""
SQLAlchemy models for the CI/CD control tower.

Three groups of tables:
- pipeline topology: apps, environments, CI/CD pipelines, external CI
  registrations, build workflows and deployment runners
- artifacts: one row per (pipeline, build), clones reference their parent
- deployment configuration: chart refs/repos, chart versions, environment
  overrides, app metrics flags and the append-only template history
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .base import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# Pipeline topology
# =============================================================================


class AppModel(Base):
    """An application owning pipelines and chart versions."""

    __tablename__ = "apps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_name = Column(String(250), nullable=False, unique=True, index=True)
    team_name = Column(String(250), nullable=False, default="default")
    active = Column(Boolean, nullable=False, default=True)
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "app_name": self.app_name,
            "team_name": self.team_name,
            "active": self.active,
            "created_on": _iso(self.created_on),
        }


class EnvironmentModel(Base):
    """A deployment target environment."""

    __tablename__ = "environments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(250), nullable=False, unique=True, index=True)
    namespace = Column(String(250), nullable=True)
    cluster_name = Column(String(250), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "namespace": self.namespace,
            "cluster_name": self.cluster_name,
            "active": self.active,
        }


class CiPipelineModel(Base):
    """A build pipeline. Child pipelines reuse their parent's image."""

    __tablename__ = "ci_pipelines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, index=True)
    name = Column(String(250), nullable=False)
    parent_ci_pipeline = Column(Integer, ForeignKey("ci_pipelines.id"), nullable=True, index=True)
    scan_enabled = Column(Boolean, nullable=False, default=False)
    is_manual = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)
    deleted = Column(Boolean, nullable=False, default=False)
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())

    app = relationship("AppModel")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "name": self.name,
            "parent_ci_pipeline": self.parent_ci_pipeline,
            "scan_enabled": self.scan_enabled,
            "is_manual": self.is_manual,
            "active": self.active,
            "deleted": self.deleted,
        }


class ExternalCiPipelineModel(Base):
    """Registration of a CI system outside the platform that pushes images by webhook."""

    __tablename__ = "external_ci_pipelines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, index=True)
    access_token = Column(String(256), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())

    app = relationship("AppModel")

    def to_dict(self) -> Dict[str, Any]:
        # access_token stays out of the exported dict
        return {"id": self.id, "app_id": self.app_id, "active": self.active}


class CdPipelineModel(Base):
    """A deployment pipeline fed by a CI pipeline or an external CI registration."""

    __tablename__ = "cd_pipelines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, index=True)
    environment_id = Column(Integer, ForeignKey("environments.id"), nullable=False, index=True)
    name = Column(String(250), nullable=False)
    ci_pipeline_id = Column(Integer, ForeignKey("ci_pipelines.id"), nullable=True, index=True)
    external_ci_pipeline_id = Column(
        Integer, ForeignKey("external_ci_pipelines.id"), nullable=True, index=True
    )
    trigger_type = Column(String(20), nullable=False, default="AUTOMATIC")
    deleted = Column(Boolean, nullable=False, default=False)
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())

    app = relationship("AppModel")
    environment = relationship("EnvironmentModel")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "environment_id": self.environment_id,
            "name": self.name,
            "ci_pipeline_id": self.ci_pipeline_id,
            "external_ci_pipeline_id": self.external_ci_pipeline_id,
            "trigger_type": self.trigger_type,
            "deleted": self.deleted,
        }


class CiWorkflowModel(Base):
    """One build run of a CI pipeline."""

    __tablename__ = "ci_workflows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(250), nullable=False)
    status = Column(String(50), nullable=False, default="Pending", index=True)
    message = Column(Text, nullable=True)
    ci_pipeline_id = Column(Integer, ForeignKey("ci_pipelines.id"), nullable=False, index=True)
    namespace = Column(String(250), nullable=True)
    # material index -> commit info
    git_triggers = Column(JSON, nullable=False, default=dict)
    triggered_by = Column(Integer, nullable=False, default=1)
    started_on = Column(DateTime(timezone=True), nullable=True)
    finished_on = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "ci_pipeline_id": self.ci_pipeline_id,
            "namespace": self.namespace,
            "git_triggers": self.git_triggers,
            "triggered_by": self.triggered_by,
            "started_on": _iso(self.started_on),
            "finished_on": _iso(self.finished_on),
        }


class CdWorkflowRunnerModel(Base):
    """One execution of a CD pipeline stage for an artifact."""

    __tablename__ = "cd_workflow_runners"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(250), nullable=False)
    pipeline_id = Column(Integer, ForeignKey("cd_pipelines.id"), nullable=False, index=True)
    ci_artifact_id = Column(Integer, ForeignKey("ci_artifacts.id"), nullable=False, index=True)
    workflow_type = Column(String(20), nullable=False, default="DEPLOY")
    status = Column(String(50), nullable=False, default="Starting")
    message = Column(Text, nullable=True)
    triggered_by = Column(Integer, nullable=False, default=1)
    started_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
    finished_on = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_cd_workflow_runners_pipeline_started", "pipeline_id", "started_on"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "pipeline_id": self.pipeline_id,
            "ci_artifact_id": self.ci_artifact_id,
            "workflow_type": self.workflow_type,
            "status": self.status,
            "message": self.message,
            "triggered_by": self.triggered_by,
            "started_on": _iso(self.started_on),
            "finished_on": _iso(self.finished_on),
        }


# =============================================================================
# Artifacts
# =============================================================================


class CiArtifactModel(Base):
    """A built container image recorded against exactly one pipeline."""

    __tablename__ = "ci_artifacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Fan-out linkage
    pipeline_id = Column(Integer, ForeignKey("ci_pipelines.id"), nullable=True, index=True)
    parent_ci_artifact = Column(Integer, ForeignKey("ci_artifacts.id"), nullable=True, index=True)
    external_ci_pipeline_id = Column(
        Integer, ForeignKey("external_ci_pipelines.id"), nullable=True, index=True
    )

    image = Column(String(1024), nullable=False)
    image_digest = Column(String(256), nullable=False, index=True)
    # git material metadata json array string
    material_info = Column(Text, nullable=True)
    data_source = Column(String(50), nullable=False)
    ci_workflow_id = Column(Integer, ForeignKey("ci_workflows.id"), nullable=True, index=True)

    scan_enabled = Column(Boolean, nullable=False, default=False)
    scanned = Column(Boolean, nullable=False, default=False)
    is_artifact_uploaded = Column(Boolean, nullable=False, default=False)

    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
    created_by = Column(Integer, nullable=False, default=1)
    updated_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_by = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_ci_artifacts_pipeline_digest", "pipeline_id", "image_digest"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "parent_ci_artifact": self.parent_ci_artifact,
            "external_ci_pipeline_id": self.external_ci_pipeline_id,
            "image": self.image,
            "image_digest": self.image_digest,
            "material_info": self.material_info,
            "data_source": self.data_source,
            "ci_workflow_id": self.ci_workflow_id,
            "scan_enabled": self.scan_enabled,
            "scanned": self.scanned,
            "is_artifact_uploaded": self.is_artifact_uploaded,
            "created_on": _iso(self.created_on),
            "created_by": self.created_by,
        }


# =============================================================================
# Deployment configuration
# =============================================================================


class ChartRepoModel(Base):
    """A chart repository that versioned app charts are published to."""

    __tablename__ = "chart_repos"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(250), nullable=False, unique=True)
    url = Column(String(1024), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "is_default": self.is_default,
            "active": self.active,
        }


class ChartRefModel(Base):
    """A reference chart template (Deployment, Rollout, StatefulSet, ...)."""

    __tablename__ = "chart_refs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # empty name means the legacy Rollout Deployment chart
    name = Column(String(250), nullable=True)
    version = Column(String(50), nullable=False)
    location = Column(String(250), nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    user_uploaded = Column(Boolean, nullable=False, default=False)
    is_app_metrics_supported = Column(Boolean, nullable=False, default=True)
    default_app_values = Column(JSON, nullable=False, default=dict)
    image_descriptor_template = Column(Text, nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "location": self.location,
            "is_default": self.is_default,
            "user_uploaded": self.user_uploaded,
            "is_app_metrics_supported": self.is_app_metrics_supported,
        }


class ChartModel(Base):
    """A versioned deployment configuration of an application.

    At most one row per application has ``latest`` set; the partial unique
    index below enforces it in the database.
    """

    __tablename__ = "charts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, index=True)
    chart_repo_id = Column(Integer, ForeignKey("chart_repos.id"), nullable=False)
    chart_repo = Column(String(250), nullable=False)
    chart_repo_url = Column(String(1024), nullable=True)
    chart_name = Column(String(250), nullable=False)
    chart_version = Column(String(50), nullable=False)
    chart_ref_id = Column(Integer, ForeignKey("chart_refs.id"), nullable=False)
    reference_template = Column(String(250), nullable=False)
    chart_location = Column(String(500), nullable=False)
    git_repo_url = Column(String(1024), nullable=True)

    values = Column(JSON, nullable=False, default=dict)
    global_override = Column(JSON, nullable=False, default=dict)
    image_descriptor_template = Column(Text, nullable=True)

    status = Column(String(50), nullable=False, default="NEW")
    active = Column(Boolean, nullable=False, default=True)
    latest = Column(Boolean, nullable=False, default=False)
    previous = Column(Boolean, nullable=False, default=False)
    is_basic_view_locked = Column(Boolean, nullable=False, default=False)
    current_view_editor = Column(String(50), nullable=True)

    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
    created_by = Column(Integer, nullable=False, default=1)
    updated_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_by = Column(Integer, nullable=False, default=1)

    chart_ref = relationship("ChartRefModel")

    __table_args__ = (
        Index(
            "uq_charts_app_latest",
            "app_id",
            unique=True,
            sqlite_where=text("latest"),
            postgresql_where=text("latest"),
        ),
        Index(
            "uq_charts_app_chart_ref",
            "app_id",
            "chart_ref_id",
            unique=True,
            sqlite_where=text("active"),
            postgresql_where=text("active"),
        ),
        Index("ix_charts_repo_name_version", "chart_repo", "chart_name", "chart_version"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "chart_repo_id": self.chart_repo_id,
            "chart_repo": self.chart_repo,
            "chart_name": self.chart_name,
            "chart_version": self.chart_version,
            "chart_ref_id": self.chart_ref_id,
            "reference_template": self.reference_template,
            "chart_location": self.chart_location,
            "values": self.values,
            "global_override": self.global_override,
            "latest": self.latest,
            "previous": self.previous,
            "is_basic_view_locked": self.is_basic_view_locked,
            "current_view_editor": self.current_view_editor,
            "created_on": _iso(self.created_on),
            "updated_on": _iso(self.updated_on),
        }


class EnvConfigOverrideModel(Base):
    """Environment-level override of a chart version.

    Latest/previous flags mirror ChartModel but are scoped to
    (application, environment).
    """

    __tablename__ = "env_config_overrides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chart_id = Column(Integer, ForeignKey("charts.id"), nullable=False, index=True)
    target_environment = Column(Integer, ForeignKey("environments.id"), nullable=False, index=True)
    env_override_values = Column(JSON, nullable=False, default=dict)
    is_override = Column(Boolean, nullable=False, default=False)
    namespace = Column(String(250), nullable=True)
    status = Column(String(50), nullable=False, default="SUCCESS")
    active = Column(Boolean, nullable=False, default=True)
    latest = Column(Boolean, nullable=False, default=False)
    previous = Column(Boolean, nullable=False, default=False)
    is_basic_view_locked = Column(Boolean, nullable=False, default=False)
    current_view_editor = Column(String(50), nullable=True)

    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
    created_by = Column(Integer, nullable=False, default=1)
    updated_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_by = Column(Integer, nullable=False, default=1)

    chart = relationship("ChartModel")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chart_id": self.chart_id,
            "target_environment": self.target_environment,
            "env_override_values": self.env_override_values,
            "is_override": self.is_override,
            "namespace": self.namespace,
            "active": self.active,
            "latest": self.latest,
            "previous": self.previous,
        }


class AppLevelMetricsModel(Base):
    __tablename__ = "app_level_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, unique=True)
    app_metrics = Column(Boolean, nullable=False, default=False)
    infra_metrics = Column(Boolean, nullable=False, default=True)
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
    created_by = Column(Integer, nullable=False, default=1)
    updated_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_by = Column(Integer, nullable=False, default=1)


class EnvLevelAppMetricsModel(Base):
    __tablename__ = "env_level_app_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False)
    env_id = Column(Integer, ForeignKey("environments.id"), nullable=False)
    app_metrics = Column(Boolean, nullable=True)
    infra_metrics = Column(Boolean, nullable=True)

    __table_args__ = (UniqueConstraint("app_id", "env_id", name="uq_env_level_app_metrics"),)


class DeploymentTemplateHistoryModel(Base):
    """Append-only audit record of a deployment template change or deployment."""

    __tablename__ = "deployment_template_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, index=True)
    # null pipeline_id is a template-level entry with no deployment target yet
    pipeline_id = Column(Integer, ForeignKey("cd_pipelines.id"), nullable=True, index=True)
    target_environment = Column(Integer, ForeignKey("environments.id"), nullable=True)
    template = Column(JSON, nullable=False, default=dict)
    image_descriptor_template = Column(Text, nullable=True)
    template_name = Column(String(250), nullable=False)
    template_version = Column(String(50), nullable=False)
    is_app_metrics_enabled = Column(Boolean, nullable=False, default=False)
    variable_snapshot = Column(JSON, nullable=True)

    deployed = Column(Boolean, nullable=False, default=False)
    deployed_on = Column(DateTime(timezone=True), nullable=True)
    deployed_by = Column(Integer, nullable=True)

    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
    created_by = Column(Integer, nullable=False, default=1)
    updated_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_by = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_dth_pipeline_deployed", "pipeline_id", "deployed", "deployed_on"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "pipeline_id": self.pipeline_id,
            "target_environment": self.target_environment,
            "template": self.template,
            "image_descriptor_template": self.image_descriptor_template,
            "template_name": self.template_name,
            "template_version": self.template_version,
            "is_app_metrics_enabled": self.is_app_metrics_enabled,
            "variable_snapshot": self.variable_snapshot,
            "deployed": self.deployed,
            "deployed_on": _iso(self.deployed_on),
            "deployed_by": self.deployed_by,
            "created_on": _iso(self.created_on),
        }
