"""
Canonical enums shared by the persistence layer and the pipeline services.

Values are the strings stored in the database; callers compare against the
enum members, never raw literals.
"""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Execution status of a CI build workflow."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ERROR = "Error"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_WORKFLOW_STATUSES


TERMINAL_WORKFLOW_STATUSES = frozenset(
    {
        WorkflowStatus.SUCCEEDED,
        WorkflowStatus.FAILED,
        WorkflowStatus.ERROR,
        WorkflowStatus.ABORTED,
    }
)


class DataSource(str, Enum):
    """Where an artifact's build ran."""

    CI_RUNNER = "CI-RUNNER"
    GOCD = "GOCD"
    EXTERNAL = "EXTERNAL"


class TriggerType(str, Enum):
    AUTOMATIC = "AUTOMATIC"
    MANUAL = "MANUAL"


class CdWorkflowType(str, Enum):
    PRE = "PRE"
    DEPLOY = "DEPLOY"
    POST = "POST"


class RunnerStatus(str, Enum):
    """Status of a CD workflow runner."""

    STARTING = "Starting"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    HEALTHY = "Healthy"
    FAILED = "Failed"
    ABORTED = "Aborted"


class ChartStatus(str, Enum):
    NEW = "NEW"
    DEPLOYMENT_INITIATED = "DEPLOYMENT_INITIATED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
