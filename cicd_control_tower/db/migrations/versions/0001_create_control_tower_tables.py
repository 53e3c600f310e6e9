"""Create control tower tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Pipeline topology, artifacts, chart versions with environment overrides,
app metrics flags and the deployment template history.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _audit_columns():
    return [
        sa.Column("created_on", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_by", sa.Integer, nullable=False, server_default="1"),
        sa.Column("updated_on", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_by", sa.Integer, nullable=False, server_default="1"),
    ]


def upgrade() -> None:
    op.create_table(
        "apps",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("app_name", sa.String(250), nullable=False, unique=True),
        sa.Column("team_name", sa.String(250), nullable=False),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_on", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_apps_app_name", "apps", ["app_name"])

    op.create_table(
        "environments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(250), nullable=False, unique=True),
        sa.Column("namespace", sa.String(250), nullable=True),
        sa.Column("cluster_name", sa.String(250), nullable=True),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_environments_name", "environments", ["name"])

    op.create_table(
        "chart_repos",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(250), nullable=False, unique=True),
        sa.Column("url", sa.String(1024), nullable=True),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "chart_refs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(250), nullable=True),
        sa.Column("version", sa.String(50), nullable=False),
        sa.Column("location", sa.String(250), nullable=False),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("user_uploaded", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_app_metrics_supported", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("default_app_values", sa.JSON, nullable=False),
        sa.Column("image_descriptor_template", sa.Text, nullable=True),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "ci_pipelines",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("app_id", sa.Integer, sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("name", sa.String(250), nullable=False),
        sa.Column("parent_ci_pipeline", sa.Integer, sa.ForeignKey("ci_pipelines.id"), nullable=True),
        sa.Column("scan_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_manual", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_on", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_ci_pipelines_app_id", "ci_pipelines", ["app_id"])
    op.create_index("ix_ci_pipelines_parent_ci_pipeline", "ci_pipelines", ["parent_ci_pipeline"])

    op.create_table(
        "external_ci_pipelines",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("app_id", sa.Integer, sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("access_token", sa.String(256), nullable=False),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_on", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_external_ci_pipelines_app_id", "external_ci_pipelines", ["app_id"])

    op.create_table(
        "cd_pipelines",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("app_id", sa.Integer, sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("environment_id", sa.Integer, sa.ForeignKey("environments.id"), nullable=False),
        sa.Column("name", sa.String(250), nullable=False),
        sa.Column("ci_pipeline_id", sa.Integer, sa.ForeignKey("ci_pipelines.id"), nullable=True),
        sa.Column(
            "external_ci_pipeline_id",
            sa.Integer,
            sa.ForeignKey("external_ci_pipelines.id"),
            nullable=True,
        ),
        sa.Column("trigger_type", sa.String(20), nullable=False, server_default="AUTOMATIC"),
        sa.Column("deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_on", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_cd_pipelines_app_id", "cd_pipelines", ["app_id"])
    op.create_index("ix_cd_pipelines_environment_id", "cd_pipelines", ["environment_id"])
    op.create_index("ix_cd_pipelines_ci_pipeline_id", "cd_pipelines", ["ci_pipeline_id"])
    op.create_index("ix_cd_pipelines_external_ci_pipeline_id", "cd_pipelines", ["external_ci_pipeline_id"])

    op.create_table(
        "ci_workflows",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(250), nullable=False),
        sa.Column("status", sa.String(50), nullable=False, server_default="Pending"),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("ci_pipeline_id", sa.Integer, sa.ForeignKey("ci_pipelines.id"), nullable=False),
        sa.Column("namespace", sa.String(250), nullable=True),
        sa.Column("git_triggers", sa.JSON, nullable=False),
        sa.Column("triggered_by", sa.Integer, nullable=False, server_default="1"),
        sa.Column("started_on", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_on", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_ci_workflows_status", "ci_workflows", ["status"])
    op.create_index("ix_ci_workflows_ci_pipeline_id", "ci_workflows", ["ci_pipeline_id"])

    op.create_table(
        "ci_artifacts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("pipeline_id", sa.Integer, sa.ForeignKey("ci_pipelines.id"), nullable=True),
        sa.Column("parent_ci_artifact", sa.Integer, sa.ForeignKey("ci_artifacts.id"), nullable=True),
        sa.Column(
            "external_ci_pipeline_id",
            sa.Integer,
            sa.ForeignKey("external_ci_pipelines.id"),
            nullable=True,
        ),
        sa.Column("image", sa.String(1024), nullable=False),
        sa.Column("image_digest", sa.String(256), nullable=False),
        sa.Column("material_info", sa.Text, nullable=True),
        sa.Column("data_source", sa.String(50), nullable=False),
        sa.Column("ci_workflow_id", sa.Integer, sa.ForeignKey("ci_workflows.id"), nullable=True),
        sa.Column("scan_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("scanned", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_artifact_uploaded", sa.Boolean, nullable=False, server_default=sa.false()),
        *_audit_columns(),
    )
    op.create_index("ix_ci_artifacts_pipeline_id", "ci_artifacts", ["pipeline_id"])
    op.create_index("ix_ci_artifacts_parent_ci_artifact", "ci_artifacts", ["parent_ci_artifact"])
    op.create_index("ix_ci_artifacts_external_ci_pipeline_id", "ci_artifacts", ["external_ci_pipeline_id"])
    op.create_index("ix_ci_artifacts_image_digest", "ci_artifacts", ["image_digest"])
    op.create_index("ix_ci_artifacts_ci_workflow_id", "ci_artifacts", ["ci_workflow_id"])
    op.create_index("ix_ci_artifacts_pipeline_digest", "ci_artifacts", ["pipeline_id", "image_digest"])

    op.create_table(
        "cd_workflow_runners",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(250), nullable=False),
        sa.Column("pipeline_id", sa.Integer, sa.ForeignKey("cd_pipelines.id"), nullable=False),
        sa.Column("ci_artifact_id", sa.Integer, sa.ForeignKey("ci_artifacts.id"), nullable=False),
        sa.Column("workflow_type", sa.String(20), nullable=False, server_default="DEPLOY"),
        sa.Column("status", sa.String(50), nullable=False, server_default="Starting"),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("triggered_by", sa.Integer, nullable=False, server_default="1"),
        sa.Column("started_on", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("finished_on", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_cd_workflow_runners_pipeline_id", "cd_workflow_runners", ["pipeline_id"])
    op.create_index("ix_cd_workflow_runners_ci_artifact_id", "cd_workflow_runners", ["ci_artifact_id"])
    op.create_index(
        "ix_cd_workflow_runners_pipeline_started", "cd_workflow_runners", ["pipeline_id", "started_on"]
    )

    op.create_table(
        "charts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("app_id", sa.Integer, sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("chart_repo_id", sa.Integer, sa.ForeignKey("chart_repos.id"), nullable=False),
        sa.Column("chart_repo", sa.String(250), nullable=False),
        sa.Column("chart_repo_url", sa.String(1024), nullable=True),
        sa.Column("chart_name", sa.String(250), nullable=False),
        sa.Column("chart_version", sa.String(50), nullable=False),
        sa.Column("chart_ref_id", sa.Integer, sa.ForeignKey("chart_refs.id"), nullable=False),
        sa.Column("reference_template", sa.String(250), nullable=False),
        sa.Column("chart_location", sa.String(500), nullable=False),
        sa.Column("git_repo_url", sa.String(1024), nullable=True),
        sa.Column("values", sa.JSON, nullable=False),
        sa.Column("global_override", sa.JSON, nullable=False),
        sa.Column("image_descriptor_template", sa.Text, nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="NEW"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("latest", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("previous", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_basic_view_locked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("current_view_editor", sa.String(50), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_charts_app_id", "charts", ["app_id"])
    op.create_index(
        "uq_charts_app_latest",
        "charts",
        ["app_id"],
        unique=True,
        sqlite_where=sa.text("latest"),
        postgresql_where=sa.text("latest"),
    )
    op.create_index(
        "uq_charts_app_chart_ref",
        "charts",
        ["app_id", "chart_ref_id"],
        unique=True,
        sqlite_where=sa.text("active"),
        postgresql_where=sa.text("active"),
    )
    op.create_index(
        "ix_charts_repo_name_version", "charts", ["chart_repo", "chart_name", "chart_version"]
    )

    op.create_table(
        "env_config_overrides",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("chart_id", sa.Integer, sa.ForeignKey("charts.id"), nullable=False),
        sa.Column("target_environment", sa.Integer, sa.ForeignKey("environments.id"), nullable=False),
        sa.Column("env_override_values", sa.JSON, nullable=False),
        sa.Column("is_override", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("namespace", sa.String(250), nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="SUCCESS"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("latest", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("previous", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_basic_view_locked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("current_view_editor", sa.String(50), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_env_config_overrides_chart_id", "env_config_overrides", ["chart_id"])
    op.create_index(
        "ix_env_config_overrides_target_environment", "env_config_overrides", ["target_environment"]
    )

    op.create_table(
        "app_level_metrics",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("app_id", sa.Integer, sa.ForeignKey("apps.id"), nullable=False, unique=True),
        sa.Column("app_metrics", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("infra_metrics", sa.Boolean, nullable=False, server_default=sa.true()),
        *_audit_columns(),
    )

    op.create_table(
        "env_level_app_metrics",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("app_id", sa.Integer, sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("env_id", sa.Integer, sa.ForeignKey("environments.id"), nullable=False),
        sa.Column("app_metrics", sa.Boolean, nullable=True),
        sa.Column("infra_metrics", sa.Boolean, nullable=True),
        sa.UniqueConstraint("app_id", "env_id", name="uq_env_level_app_metrics"),
    )

    op.create_table(
        "deployment_template_history",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("app_id", sa.Integer, sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("pipeline_id", sa.Integer, sa.ForeignKey("cd_pipelines.id"), nullable=True),
        sa.Column("target_environment", sa.Integer, sa.ForeignKey("environments.id"), nullable=True),
        sa.Column("template", sa.JSON, nullable=False),
        sa.Column("image_descriptor_template", sa.Text, nullable=True),
        sa.Column("template_name", sa.String(250), nullable=False),
        sa.Column("template_version", sa.String(50), nullable=False),
        sa.Column("is_app_metrics_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("variable_snapshot", sa.JSON, nullable=True),
        sa.Column("deployed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("deployed_on", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deployed_by", sa.Integer, nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_deployment_template_history_app_id", "deployment_template_history", ["app_id"])
    op.create_index(
        "ix_deployment_template_history_pipeline_id", "deployment_template_history", ["pipeline_id"]
    )
    op.create_index(
        "ix_dth_pipeline_deployed",
        "deployment_template_history",
        ["pipeline_id", "deployed", "deployed_on"],
    )


def downgrade() -> None:
    for table in (
        "deployment_template_history",
        "env_level_app_metrics",
        "app_level_metrics",
        "env_config_overrides",
        "charts",
        "cd_workflow_runners",
        "ci_artifacts",
        "ci_workflows",
        "cd_pipelines",
        "external_ci_pipelines",
        "ci_pipelines",
        "chart_refs",
        "chart_repos",
        "environments",
        "apps",
    ):
        op.drop_table(table)
