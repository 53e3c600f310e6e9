"""Pydantic schemas exchanged between the control tower services."""

from .artifact import ArtifactDeploymentView, ArtifactRecord
from .chart import TemplateRequest
from .history import (
    DeployedHistoryItem,
    DeploymentHistoryItem,
    HistoryDetail,
    HistoryDetailConfig,
)
from .webhook import CiArtifactWebhookRequest

__all__ = [
    "ArtifactDeploymentView",
    "ArtifactRecord",
    "CiArtifactWebhookRequest",
    "DeployedHistoryItem",
    "DeploymentHistoryItem",
    "HistoryDetail",
    "HistoryDetailConfig",
    "TemplateRequest",
]
