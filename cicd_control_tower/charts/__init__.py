"""Chart versioning, compatibility and values merging."""

from .compatibility import ChartKind, get_compatibility, resolve_chart_kind
from .merge import merge_patch
from .store import ChartService
from .versioning import next_chart_version, parent_chart_version

__all__ = [
    "ChartKind",
    "ChartService",
    "get_compatibility",
    "merge_patch",
    "next_chart_version",
    "parent_chart_version",
    "resolve_chart_kind",
]
