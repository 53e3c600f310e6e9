"""Artifact persistence and provenance helpers."""

from .provenance import compact_json, parse_material_info, source_revisions
from .store import ArtifactStore

__all__ = ["ArtifactStore", "compact_json", "parse_material_info", "source_revisions"]
