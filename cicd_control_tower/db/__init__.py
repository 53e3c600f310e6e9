"""
Database package for the CI/CD control tower.
"""

from .base import Base, get_db, get_engine, get_session_local, init_database, transaction
from .models import (
    AppLevelMetricsModel,
    AppModel,
    CdPipelineModel,
    CdWorkflowRunnerModel,
    ChartModel,
    ChartRefModel,
    ChartRepoModel,
    CiArtifactModel,
    CiPipelineModel,
    CiWorkflowModel,
    DeploymentTemplateHistoryModel,
    EnvConfigOverrideModel,
    EnvironmentModel,
    EnvLevelAppMetricsModel,
    ExternalCiPipelineModel,
)

__all__ = [
    "Base",
    "get_db",
    "get_engine",
    "get_session_local",
    "init_database",
    "transaction",
    "AppLevelMetricsModel",
    "AppModel",
    "CdPipelineModel",
    "CdWorkflowRunnerModel",
    "ChartModel",
    "ChartRefModel",
    "ChartRepoModel",
    "CiArtifactModel",
    "CiPipelineModel",
    "CiWorkflowModel",
    "DeploymentTemplateHistoryModel",
    "EnvConfigOverrideModel",
    "EnvironmentModel",
    "EnvLevelAppMetricsModel",
    "ExternalCiPipelineModel",
]
