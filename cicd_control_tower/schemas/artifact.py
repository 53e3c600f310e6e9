from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ArtifactRecord(BaseModel):
    """Immutable snapshot of a persisted artifact.

    This is what crosses task boundaries during fan-out; ORM rows stay
    inside the session that loaded them.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    pipeline_id: Optional[int] = None
    parent_ci_artifact: Optional[int] = None
    external_ci_pipeline_id: Optional[int] = None
    image: str
    image_digest: str
    material_info: Optional[str] = None
    data_source: str
    ci_workflow_id: Optional[int] = None
    scan_enabled: bool = False
    scanned: bool = False
    is_artifact_uploaded: bool = False
    created_on: Optional[datetime] = None
    created_by: int = 1

    @property
    def is_external(self) -> bool:
        return self.external_ci_pipeline_id is not None and self.pipeline_id is None


class ArtifactDeploymentView(ArtifactRecord):
    """An artifact feeding a CD pipeline with its deployment state."""

    deployed: bool = False
    deployed_time: Optional[datetime] = None
    latest: bool = False
