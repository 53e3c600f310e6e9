"""
Chart kind compatibility.

Switching an application from one reference chart to another is only
allowed when both render the same base workload. The set of kinds is
closed; anything else is incompatible with everything, itself included.
"""

from enum import Enum
from typing import Optional, Union


class WorkloadFamily(str, Enum):
    LONG_RUNNING = "long-running"
    STATEFUL = "stateful"
    BATCH = "batch"


class ChartKind(str, Enum):
    DEPLOYMENT = "Deployment"
    ROLLOUT_DEPLOYMENT = "Rollout Deployment"
    STATEFUL_SET = "StatefulSet"
    JOB_AND_CRONJOB = "Job & CronJob"

    @property
    def family(self) -> WorkloadFamily:
        return _FAMILIES[self]


_FAMILIES = {
    ChartKind.DEPLOYMENT: WorkloadFamily.LONG_RUNNING,
    ChartKind.ROLLOUT_DEPLOYMENT: WorkloadFamily.LONG_RUNNING,
    ChartKind.STATEFUL_SET: WorkloadFamily.STATEFUL,
    ChartKind.JOB_AND_CRONJOB: WorkloadFamily.BATCH,
}


def resolve_chart_kind(name: Union[ChartKind, str, None]) -> Optional[ChartKind]:
    """Map a reference chart name to its kind.

    Charts registered before names existed have an empty name and are
    Rollout Deployments. Returns ``None`` for unknown names.
    """
    if isinstance(name, ChartKind):
        return name
    if not name:
        return ChartKind.ROLLOUT_DEPLOYMENT
    try:
        return ChartKind(name)
    except ValueError:
        return None


def get_compatibility(old_kind: Union[ChartKind, str, None], new_kind: Union[ChartKind, str, None]) -> bool:
    """Whether an app on ``old_kind`` may move to ``new_kind``. Symmetric."""
    old = resolve_chart_kind(old_kind)
    new = resolve_chart_kind(new_kind)
    if old is None or new is None:
        return False
    return old.family == new.family
