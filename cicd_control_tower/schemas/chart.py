from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, conint


class TemplateRequest(BaseModel):
    """Request to create a chart version for an application."""

    app_id: conint(gt=0)
    chart_ref_id: conint(gt=0)
    values_override: Dict[str, Any] = Field(default_factory=dict)
    chart_repository_id: Optional[int] = None
    is_app_metrics_enabled: bool = False
    is_basic_view_locked: bool = False
    current_view_editor: Optional[str] = None
    user_id: int = 1
