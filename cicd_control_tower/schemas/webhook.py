from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, conint, constr


class CiArtifactWebhookRequest(BaseModel):
    """Build-completion event posted by the CI runner or an external CI system.

    ``material_info`` is the raw provenance blob: a JSON array of git
    materials, either already decoded or as a JSON string.
    """

    image: Optional[constr(min_length=1, max_length=1024)] = None
    image_digest: Optional[constr(min_length=1, max_length=256)] = None
    material_info: Any = None
    data_source: Optional[str] = None
    pipeline_name: Optional[str] = None
    workflow_id: Optional[conint(gt=0)] = None
    user_id: int = 1
    is_artifact_uploaded: bool = False
    failure_reason: Optional[str] = None
