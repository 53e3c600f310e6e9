from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class HistoryDetailConfig(BaseModel):
    display_name: str = "values.yaml"
    value: Any = None


class HistoryDetail(BaseModel):
    """Content of one deployment template history entry."""

    template_name: str
    template_version: str
    is_app_metrics_enabled: bool
    code_editor_value: HistoryDetailConfig
    image_descriptor_template: Optional[str] = None
    variable_snapshot: Dict[str, str] = Field(default_factory=dict)


class DeploymentHistoryItem(BaseModel):
    """A deployed history entry matched to the runner that deployed it."""

    id: int
    app_id: int
    pipeline_id: int
    deployed: bool
    deployed_on: datetime
    deployed_by: Optional[int] = None
    deployment_status: str
    wfr_id: int
    workflow_type: str


class DeployedHistoryItem(BaseModel):
    id: int
    deployed_on: datetime
    deployed_by: Optional[int] = None
    deployment_status: str
