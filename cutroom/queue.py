"""Work queue: which stages can be claimed right now, and claiming them.

The queue is derived from the store on every call. A stage is available
when it is PENDING inside a RUNNING pipeline and its predecessor is
COMPLETE or SKIPPED (or it is the first stage). This is the same check
claim_stage applies, so a listed stage only fails to claim when another
agent got there first.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from cutroom.executor import ExecutionOutcome, StageExecutor
from cutroom.state.machine import (
    ConflictError,
    InvalidStateError,
    OrderingViolationError,
    PipelineError,
    PipelineStateMachine,
    ValidationError,
)
from cutroom.state.models import (
    DONE_STAGE_STATUSES,
    STAGE_ORDER,
    AvailableStage,
    PipelineStatus,
    Stage,
    StageName,
    StageStatus,
)


logger = logging.getLogger(__name__)


MAX_BATCH_CLAIM = 10

# A candidate that stopped being claimable after the availability snapshot.
_STALE_CANDIDATE_ERRORS = (ConflictError, InvalidStateError, OrderingViolationError)


class QueueSummary(BaseModel):
    total_available: int
    by_stage: Dict[str, int]
    stages: List[AvailableStage] = Field(default_factory=list)


class ClaimResult(BaseModel):
    """A claim made through the queue, plus the execution outcome if any."""

    stage: Stage
    topic: str
    execution: Optional[ExecutionOutcome] = None


class BatchClaimItem(BaseModel):
    stage_id: str
    success: bool
    stage: Optional[Stage] = None
    error: Optional[str] = None


class BatchClaimResult(BaseModel):
    results: List[BatchClaimItem]

    @property
    def claimed(self) -> int:
        return sum(1 for item in self.results if item.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.claimed


def _available_in(stages: List[Stage]) -> List[Stage]:
    ordered = sorted(stages, key=lambda s: s.position)
    available = []
    for index, stage in enumerate(ordered):
        if stage.status != StageStatus.PENDING:
            continue
        if index == 0 or ordered[index - 1].status in DONE_STAGE_STATUSES:
            available.append(stage)
    return available


class WorkQueue:
    """Stage selection and claiming across all running pipelines.

    Attributes:
        machine: State machine used for claims.
        executor: Optional executor for claim-and-execute.
    """

    def __init__(
        self,
        machine: PipelineStateMachine,
        executor: Optional[StageExecutor] = None,
    ):
        self.machine = machine
        self.executor = executor

    async def get_available_stages(
        self, stage_name: Optional[StageName] = None
    ) -> List[AvailableStage]:
        """Stages that can be claimed now, oldest pipeline first.

        Args:
            stage_name: Only return stages with this name.
        """
        name_filter = StageName(stage_name) if stage_name is not None else None
        repository = self.machine.repository

        pipelines = await repository.list_pipelines(
            status=PipelineStatus.RUNNING, newest_first=False
        )

        available: List[AvailableStage] = []
        for pipeline in pipelines:
            stages = await repository.list_stages(pipeline.id)
            for stage in _available_in(stages):
                if name_filter is None or stage.name == name_filter:
                    available.append(AvailableStage(stage=stage, pipeline=pipeline))
        return available

    async def summarize(self) -> QueueSummary:
        available = await self.get_available_stages()
        by_stage = {name.value: 0 for name in STAGE_ORDER}
        for item in available:
            by_stage[item.stage.name.value] += 1
        return QueueSummary(
            total_available=len(available), by_stage=by_stage, stages=available
        )

    async def claim_next(
        self,
        agent_id: str,
        agent_name: str,
        capabilities: Iterable[StageName],
        auto_execute: bool = False,
        input: Optional[Dict[str, Any]] = None,
        config: Optional[Dict[str, Any]] = None,
        dry_run: bool = False,
    ) -> Optional[ClaimResult]:
        """Claim the first available stage the agent can work on.

        Candidates that stopped being claimable after the snapshot (taken
        by another agent, or their pipeline failed) are skipped. With ``auto_execute`` the claimed stage is run through the
        executor before returning.

        Returns:
            The claim, or None when no matching stage is available.

        Raises:
            ValidationError: If ``capabilities`` is empty.
            PipelineError: The last candidate's error, if every candidate
                was lost.
        """
        wanted = {StageName(name) for name in capabilities}
        if not wanted:
            raise ValidationError("At least one capability is required")

        candidates = [
            item for item in await self.get_available_stages()
            if item.stage.name in wanted
        ]
        if not candidates:
            return None

        last_error: Optional[PipelineError] = None
        for candidate in candidates:
            try:
                claimed = await self.machine.claim_stage(
                    candidate.pipeline.id,
                    candidate.stage.name,
                    agent_id,
                    agent_name,
                )
            except _STALE_CANDIDATE_ERRORS as e:
                logger.debug(
                    "Candidate no longer claimable, trying next",
                    extra={
                        "stage_id": candidate.stage.id,
                        "agent_id": agent_id,
                        "reason": type(e).__name__,
                    },
                )
                last_error = e
                continue

            execution = None
            if auto_execute:
                if self.executor is None:
                    raise ValidationError("Auto-execute is not available")
                execution = await self.executor.execute(
                    claimed.id, agent_id, input=input, config=config, dry_run=dry_run
                )
            return ClaimResult(
                stage=execution.stage if execution else claimed,
                topic=candidate.pipeline.topic,
                execution=execution,
            )

        raise last_error

    async def batch_claim(
        self, agent_id: str, agent_name: str, stage_ids: List[str]
    ) -> BatchClaimResult:
        """Claim several stages by id; each succeeds or fails on its own.

        Raises:
            ValidationError: If ``stage_ids`` is empty or has more than 10 ids.
        """
        if not stage_ids:
            raise ValidationError("stage_ids must not be empty")
        if len(stage_ids) > MAX_BATCH_CLAIM:
            raise ValidationError(
                f"Cannot claim more than {MAX_BATCH_CLAIM} stages at once"
            )

        results = []
        for stage_id in stage_ids:
            try:
                stage = await self.machine.claim_stage_by_id(
                    stage_id, agent_id, agent_name
                )
            except PipelineError as e:
                results.append(
                    BatchClaimItem(stage_id=stage_id, success=False, error=str(e))
                )
            else:
                results.append(
                    BatchClaimItem(stage_id=stage_id, success=True, stage=stage)
                )

        batch = BatchClaimResult(results=results)
        logger.info(
            "Batch claim finished",
            extra={
                "agent_id": agent_id,
                "claimed": batch.claimed,
                "failed": batch.failed,
            },
        )
        return batch
