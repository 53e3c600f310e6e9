"""Deployment template history recorder."""

from .service import DeploymentTemplateHistoryService

__all__ = ["DeploymentTemplateHistoryService"]
