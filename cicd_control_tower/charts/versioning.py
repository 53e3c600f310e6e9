"""Semantic version helpers for app chart versions."""

from typing import Iterable, Tuple

from ..errors import ValidationError


def parse_chart_version(version: str) -> Tuple[int, int, int]:
    parts = (version or "").strip().split(".")
    if len(parts) != 3:
        raise ValidationError(f"invalid chart version {version!r}")
    try:
        major, minor, patch = (int(part) for part in parts)
    except ValueError as e:
        raise ValidationError(f"invalid chart version {version!r}") from e
    return major, minor, patch


def version_bucket(version: str) -> str:
    """The ``major.minor`` bucket a version belongs to."""
    major, minor, _ = parse_chart_version(version)
    return f"{major}.{minor}"


def parent_chart_version(child_version: str) -> str:
    """Reference chart version an app chart version was cut from."""
    major, minor, _ = parse_chart_version(child_version)
    return f"{major}.{minor}.0"


def next_chart_version(parent_version: str, current_versions: Iterable[str]) -> str:
    """Next patch version in the parent's ``major.minor`` bucket.

    The first version in an empty bucket is ``major.minor.1``. Versions from
    other buckets or that do not parse are ignored.

    Not safe against concurrent writers to the same bucket; callers must
    serialise chart creation per application.
    """
    major, minor, _ = parse_chart_version(parent_version)
    highest = 0
    for version in current_versions:
        try:
            v_major, v_minor, v_patch = parse_chart_version(version)
        except ValidationError:
            continue
        if (v_major, v_minor) == (major, minor):
            highest = max(highest, v_patch)
    return f"{major}.{minor}.{highest + 1}"
