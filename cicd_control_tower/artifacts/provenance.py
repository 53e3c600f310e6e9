"""
Build provenance (git material info) carried by artifacts.

The blob is a JSON array of materials, each naming a repository and the
modifications (revisions) that went into the build.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..enums import DataSource
from ..errors import ValidationError

SUPPORTED_DATA_SOURCES = frozenset(source.value for source in DataSource)


class RepositoryConfiguration(BaseModel):
    url: str = ""


class Material(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plugin_id: Optional[str] = Field(default=None, alias="plugin-id")
    git_configuration: RepositoryConfiguration = Field(
        default_factory=RepositoryConfiguration, alias="git-configuration"
    )
    scm_configuration: RepositoryConfiguration = Field(
        default_factory=RepositoryConfiguration, alias="scm-configuration"
    )
    type: str = ""


class Modification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    revision: str = ""
    modified_time: Optional[str] = Field(default=None, alias="modified-time")
    author: Optional[str] = None
    message: Optional[str] = None
    branch: Optional[str] = None
    tag: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class CiMaterialInfo(BaseModel):
    material: Material = Field(default_factory=Material)
    changed: bool = False
    modifications: List[Modification] = Field(default_factory=list)


def compact_json(value: Union[str, bytes, Any, None]) -> Optional[str]:
    """Serialise provenance without insignificant whitespace.

    Strings are parsed first so that already-encoded JSON is re-encoded
    compactly. ``None`` stays ``None``.
    """
    if value is None:
        return None
    if isinstance(value, (str, bytes)):
        if not value.strip():
            return None
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValidationError(f"material info is not valid json: {e}") from e
    return json.dumps(value, separators=(",", ":"))


def load_materials(material_info: Optional[str], data_source: str) -> List[CiMaterialInfo]:
    """Decode a provenance blob for a supported data source."""
    if data_source not in SUPPORTED_DATA_SOURCES:
        raise ValidationError(
            f"datasource: {data_source} not supported",
            details={"data_source": data_source},
        )
    if not material_info:
        return []
    try:
        raw = json.loads(material_info)
    except json.JSONDecodeError as e:
        raise ValidationError(f"material info is not valid json: {e}") from e
    if not isinstance(raw, list):
        raise ValidationError("material info must be a json array")
    try:
        return [CiMaterialInfo.model_validate(item) for item in raw]
    except PydanticValidationError as e:
        raise ValidationError(f"malformed material info: {e}") from e


def parse_material_info(material_info: Optional[str], data_source: str) -> Dict[str, str]:
    """Map each source repository URL to the revision that was built.

    Raises:
        ValidationError: unsupported data source, malformed blob, or a
            material type other than ``git``/``scm``
    """
    revisions: Dict[str, str] = {}
    for info in load_materials(material_info, data_source):
        if info.material.type == "git":
            url = info.material.git_configuration.url
        elif info.material.type == "scm":
            url = info.material.scm_configuration.url
        else:
            raise ValidationError(f"unknown material type: {info.material.type}")
        revision = info.modifications[0].revision if info.modifications else ""
        revisions[url.strip()] = revision
    return revisions


def source_revisions(material_info: Optional[str]) -> List[str]:
    """All revisions in a provenance blob, in material order.

    Used for notifications, so an unreadable blob yields an empty list.
    """
    if not material_info:
        return []
    try:
        raw = json.loads(material_info)
    except json.JSONDecodeError:
        return []
    if not isinstance(raw, list):
        return []
    revisions = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        for modification in item.get("modifications") or []:
            if isinstance(modification, dict) and modification.get("revision"):
                revisions.append(modification["revision"])
    return revisions
