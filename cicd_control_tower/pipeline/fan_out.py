"""
Auto-Trigger Fan-Out Engine.

Artifacts are triggered in fixed-size batches. Triggers within a batch run
concurrently and the engine waits for the whole batch before starting the
next one, so at most ``batch_size`` triggers are in flight. A failing
trigger is recorded and logged; it never stops the other triggers.

Cancelling the caller stops new batches from starting. Triggers of the
batch already in flight are left to finish.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import structlog
from pydantic import BaseModel, ConfigDict

from ..config import get_settings
from ..errors import PartialFanOutFailure, TriggerFailure
from ..schemas.artifact import ArtifactRecord

logger = structlog.get_logger()

# (token, project resource, environment resource) -> allowed
AuthorizationPredicate = Callable[[str, str, str], bool]


class DownstreamTarget(BaseModel):
    """A CD pipeline an external artifact may be delivered to."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: int
    project_resource: str
    env_resource: str


class TriggerExecutor(Protocol):
    """Starts the downstream pipelines of one artifact."""

    async def trigger(
        self,
        artifact: ArtifactRecord,
        is_manual: bool,
        is_async: bool,
        acting_user_id: int,
        target: Optional[DownstreamTarget] = None,
    ) -> None:
        ...

    async def list_targets(self, artifact: ArtifactRecord) -> List[DownstreamTarget]:
        ...


@dataclass
class FanOutResult:
    """Outcome of one fan-out run."""

    attempted: int = 0
    triggered: int = 0
    skipped: int = 0
    failures: List[TriggerFailure] = field(default_factory=list)

    @property
    def error(self) -> Optional[PartialFanOutFailure]:
        if not self.failures:
            return None
        return PartialFanOutFailure(self.failures, succeeded=self.triggered)

    @property
    def any_triggered(self) -> bool:
        return self.triggered > 0


_Job = Tuple[ArtifactRecord, Optional[DownstreamTarget]]


class AutoTriggerFanOutEngine:
    """Triggers downstream pipelines for newly recorded artifacts."""

    def __init__(
        self,
        executor: TriggerExecutor,
        batch_size: Optional[int] = None,
        system_user_id: Optional[int] = None,
    ):
        settings = get_settings()
        self.executor = executor
        if batch_size is None:
            batch_size = settings.ci_auto_trigger_batch_size
        self.batch_size = batch_size if batch_size > 0 else 1
        self.system_user_id = (
            settings.system_user_id if system_user_id is None else system_user_id
        )

    def is_manual(self, acting_user_id: int) -> bool:
        return acting_user_id != self.system_user_id

    async def run(
        self,
        artifacts: Sequence[ArtifactRecord],
        acting_user_id: int,
        result: Optional[FanOutResult] = None,
    ) -> FanOutResult:
        """Trigger every artifact in order, ``batch_size`` at a time.

        Pass ``result`` to observe progress when the run is cancelled or
        raises; it is updated after every batch.
        """
        jobs: List[_Job] = [(artifact, None) for artifact in artifacts]
        return await self._run_batches(jobs, acting_user_id, result)

    async def run_external(
        self,
        artifact: ArtifactRecord,
        acting_user_id: int,
        token: str,
        authorize: AuthorizationPredicate,
        result: Optional[FanOutResult] = None,
    ) -> FanOutResult:
        """Trigger the targets of an external artifact that ``authorize`` allows.

        Denied targets are skipped and counted in ``FanOutResult.skipped``.
        """
        result = result if result is not None else FanOutResult()
        targets = await self.executor.list_targets(artifact)
        allowed: List[_Job] = []
        for target in targets:
            if authorize(token, target.project_resource, target.env_resource):
                allowed.append((artifact, target))
            else:
                result.skipped += 1
                logger.info(
                    "fan_out_target_unauthorized",
                    artifact_id=artifact.id,
                    pipeline_id=target.pipeline_id,
                )
        return await self._run_batches(allowed, acting_user_id, result)

    async def _run_batches(
        self, jobs: List[_Job], acting_user_id: int, result: Optional[FanOutResult] = None
    ) -> FanOutResult:
        is_manual = self.is_manual(acting_user_id)
        result = result if result is not None else FanOutResult()
        log = logger.bind(job_count=len(jobs), batch_size=self.batch_size, is_manual=is_manual)
        log.info("fan_out_started")

        for start in range(0, len(jobs), self.batch_size):
            chunk = jobs[start : start + self.batch_size]
            batch = asyncio.gather(
                *(self._trigger_one(artifact, target, is_manual, acting_user_id) for artifact, target in chunk)
            )
            try:
                outcomes = await asyncio.shield(batch)
            except asyncio.CancelledError:
                log.warning("fan_out_cancelled", completed=start, in_flight=len(chunk))
                self._tally(result, await batch)
                raise
            self._tally(result, outcomes)

        log.info(
            "fan_out_completed",
            triggered=result.triggered,
            failed=len(result.failures),
        )
        return result

    @staticmethod
    def _tally(result: FanOutResult, outcomes: List[Optional[TriggerFailure]]) -> None:
        result.attempted += len(outcomes)
        for failure in outcomes:
            if failure is None:
                result.triggered += 1
            else:
                result.failures.append(failure)

    async def _trigger_one(
        self,
        artifact: ArtifactRecord,
        target: Optional[DownstreamTarget],
        is_manual: bool,
        acting_user_id: int,
    ) -> Optional[TriggerFailure]:
        pipeline_id = target.pipeline_id if target else None
        try:
            await self.executor.trigger(
                artifact,
                is_manual,
                False,
                acting_user_id,
                target=target,
            )
        except Exception as e:
            logger.error(
                "fan_out_trigger_failed",
                artifact_id=artifact.id,
                pipeline_id=pipeline_id,
                error=str(e),
            )
            return TriggerFailure(artifact_id=artifact.id, error=str(e), pipeline_id=pipeline_id)
        return None
