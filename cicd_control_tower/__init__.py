"""
CI/CD Control Tower

Records build artifacts, fans them out to deployment pipelines and keeps
versioned deployment configuration with an auditable history.
"""

import importlib.metadata

__version__ = importlib.metadata.version("cicd-control-tower")

from .artifacts import ArtifactStore
from .charts import ChartService, get_compatibility
from .config import Settings, get_settings
from .errors import (
    AuthorizationError,
    ControlTowerError,
    InvalidStatusTransition,
    NotFoundError,
    PartialFanOutFailure,
    PersistenceError,
    ValidationError,
)
from .history import DeploymentTemplateHistoryService
from .pipeline import AutoTriggerFanOutEngine, PipelineTriggerExecutor, WebhookService

__all__ = [
    "ArtifactStore",
    "AuthorizationError",
    "AutoTriggerFanOutEngine",
    "ChartService",
    "ControlTowerError",
    "DeploymentTemplateHistoryService",
    "InvalidStatusTransition",
    "NotFoundError",
    "PartialFanOutFailure",
    "PersistenceError",
    "PipelineTriggerExecutor",
    "Settings",
    "ValidationError",
    "WebhookService",
    "get_compatibility",
    "get_settings",
]
