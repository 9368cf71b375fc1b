"""Pipeline state machine implementation.

This module implements the PipelineStateMachine class that moves pipelines
and their stages through the claim/start/complete/fail/skip protocol.

Invariants enforced here:
- A stage is claimable only when its predecessor is COMPLETE or SKIPPED
- A stage reaches COMPLETE or FAILED at most once
- Exactly one attribution is written per completed stage
- Any failed stage fails the whole pipeline

Every mutation is a status-guarded conditional update against the
repository. A guard that matches zero rows means another writer got there
first and is reported as ConflictError. Multi-row outcomes (stage, pipeline
and attribution) go through PipelineRepository.apply_stage_outcome, which
the repository must execute inside a single transaction. The pipeline row
is guarded by status as well, so an outcome computed from a stale read can
never move a FAILED pipeline back to RUNNING.
"""

import logging
from datetime import datetime, timezone
from typing import (
    Any,
    Collection,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from cutroom.state.models import (
    ACTIVE_STAGE_STATUSES,
    DONE_STAGE_STATUSES,
    STAGE_ORDER,
    STAGE_WEIGHTS,
    Attribution,
    Pipeline,
    PipelineDetail,
    PipelineStatus,
    Stage,
    StageName,
    StageOutcome,
    StageStatus,
    get_next_stage_name,
    get_previous_stage_name,
)


logger = logging.getLogger(__name__)

# A COMPLETE pipeline never changes status again.
FAILABLE_PIPELINE_STATUSES = frozenset(
    {PipelineStatus.DRAFT, PipelineStatus.RUNNING, PipelineStatus.FAILED}
)


class PipelineError(Exception):
    """Base class for state machine precondition failures.

    Attributes:
        message: Human-readable error message.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(PipelineError):
    """Raised when caller input is malformed (e.g. an empty topic)."""


class NotFoundError(PipelineError):
    """Raised when a pipeline or stage does not exist.

    Attributes:
        entity: "pipeline" or "stage".
        key: The identifier that was looked up.
    """

    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity.capitalize()} not found: {key}")


class InvalidStateError(PipelineError):
    """Raised when the pipeline is not in a state that allows the operation.

    Attributes:
        pipeline_id: The pipeline that rejected the operation.
        status: Its status at the time of the check.
    """

    def __init__(
        self,
        pipeline_id: str,
        status: Optional[PipelineStatus],
        message: Optional[str] = None,
    ):
        self.pipeline_id = pipeline_id
        self.status = status
        super().__init__(message or "Pipeline not in running state")


class ConflictError(PipelineError):
    """Raised when a stage is not in the status a transition requires.

    This includes the loser of a concurrent claim: its conditional update
    matched zero rows.

    Attributes:
        stage_id: The contested stage.
        status: The stage status observed, if known.
    """

    def __init__(
        self,
        stage_id: str,
        status: Optional[StageStatus] = None,
        message: Optional[str] = None,
    ):
        self.stage_id = stage_id
        self.status = status
        super().__init__(message or "Stage not available for claiming")


class OrderingViolationError(PipelineError):
    """Raised when a stage is claimed before its predecessor is done.

    Attributes:
        stage_name: The stage that was requested.
        previous_stage: The predecessor that is not yet complete.
    """

    def __init__(self, stage_name: StageName, previous_stage: StageName):
        self.stage_name = stage_name
        self.previous_stage = previous_stage
        super().__init__(
            f"Previous stage not complete: {previous_stage.value} must be "
            f"COMPLETE or SKIPPED before {stage_name.value} can be claimed"
        )


class PermissionDeniedError(PipelineError):
    """Raised when an agent acts on a stage claimed by another agent."""

    def __init__(self, stage_id: str, agent_id: str):
        self.stage_id = stage_id
        self.agent_id = agent_id
        super().__init__("Stage not claimed by this agent")


@runtime_checkable
class PipelineRepository(Protocol):
    """Protocol defining the persistence contract for pipelines.

    The PostgreSQL implementation lives in repository.py and the in-memory
    implementation in memory.py.

    Conditional update methods take the set of statuses the row must
    currently have. They return False (or None) without writing when the
    stored status is not in that set.
    """

    async def create_pipeline(self, pipeline: Pipeline, stages: List[Stage]) -> None:
        """Insert a pipeline and all of its stages atomically."""
        ...

    async def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        ...

    async def list_pipelines(
        self,
        limit: Optional[int] = None,
        status: Optional[PipelineStatus] = None,
        newest_first: bool = True,
    ) -> List[Pipeline]:
        ...

    async def update_pipeline_status(
        self,
        pipeline_id: str,
        expected: Collection[PipelineStatus],
        status: PipelineStatus,
        updated_at: datetime,
    ) -> Optional[Pipeline]:
        """Set the pipeline status if the current status is in ``expected``.

        Returns:
            The updated pipeline, or None when the guard did not match.
        """
        ...

    async def get_stage(self, stage_id: str) -> Optional[Stage]:
        ...

    async def get_stage_by_name(
        self, pipeline_id: str, name: StageName
    ) -> Optional[Stage]:
        ...

    async def list_stages(self, pipeline_id: str) -> List[Stage]:
        """List the stages of a pipeline in position order."""
        ...

    async def update_stage(
        self, stage: Stage, expected: Collection[StageStatus]
    ) -> bool:
        """Write the stage if its stored status is in ``expected``."""
        ...

    async def apply_stage_outcome(
        self,
        stage: Stage,
        expected: Collection[StageStatus],
        pipeline: Pipeline,
        pipeline_expected: Collection[PipelineStatus],
        attribution: Optional[Attribution] = None,
    ) -> bool:
        """Write stage, pipeline and attribution in one transaction.

        The stage write is guarded by ``expected`` and the pipeline write by
        ``pipeline_expected``. When either guard fails nothing is written
        and False is returned.
        """
        ...

    async def list_attributions(
        self,
        pipeline_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> List[Attribution]:
        ...

    # Reporting queries

    async def list_stages_by_agent(
        self, agent_id: str, status: Optional[StageStatus] = None
    ) -> List[Stage]:
        """Stages claimed by an agent, most recently completed first."""
        ...

    async def count_pipelines_by_status(self) -> Dict[str, int]:
        ...

    async def count_stages_by_name_and_status(self) -> Dict[str, Dict[str, int]]:
        ...

    async def list_recent_completions(self, limit: int = 10) -> List[Stage]:
        ...

    async def health_check(self) -> bool:
        ...


class PipelineStateMachine:
    """State machine for pipelines and their seven ordered stages.

    Attributes:
        repository: The pipeline repository for persistence.
        metrics: Optional Prometheus metrics sink.

    Example:
        >>> machine = PipelineStateMachine(InMemoryPipelineRepository())
        >>> detail = await machine.create_pipeline("Why octopuses have 3 hearts")
        >>> await machine.start_pipeline(detail.pipeline.id)
        >>> stage = await machine.claim_stage(
        ...     detail.pipeline.id, StageName.RESEARCH, "agent-1", "ResearchBot"
        ... )
        >>> outcome = await machine.complete_stage(stage.id, {"facts": []})
        >>> outcome.pipeline.current_stage
        <StageName.SCRIPT: 'SCRIPT'>
    """

    def __init__(self, repository: PipelineRepository, metrics: Any = None):
        """Initialize the state machine.

        Args:
            repository: The pipeline repository for persistence.
            metrics: Optional CutroomMetrics instance.
        """
        self.repository = repository
        self.metrics = metrics

    # ------------------------------------------------------------------
    # Pipeline lifecycle
    # ------------------------------------------------------------------

    async def create_pipeline(
        self, topic: str, description: Optional[str] = None
    ) -> PipelineDetail:
        """Create a DRAFT pipeline with all seven stages PENDING.

        Args:
            topic: What the content is about.
            description: Optional brief for the agents.

        Returns:
            The new pipeline with its stages in execution order.

        Raises:
            ValidationError: If the topic is empty.
        """
        if topic is None or not topic.strip():
            raise ValidationError("Topic is required")

        now = datetime.now(timezone.utc)
        pipeline = Pipeline(
            topic=topic.strip(),
            description=description,
            status=PipelineStatus.DRAFT,
            current_stage=STAGE_ORDER[0],
            created_at=now,
            updated_at=now,
        )
        stages = [
            Stage(
                pipeline_id=pipeline.id,
                name=name,
                position=position,
                status=StageStatus.PENDING,
                created_at=now,
            )
            for position, name in enumerate(STAGE_ORDER)
        ]

        logger.info(
            "Creating pipeline",
            extra={"pipeline_id": pipeline.id, "topic": pipeline.topic[:100]},
        )

        await self.repository.create_pipeline(pipeline, stages)

        if self.metrics is not None:
            self.metrics.record_pipeline_created()

        return PipelineDetail(pipeline=pipeline, stages=stages, attributions=[])

    async def start_pipeline(self, pipeline_id: str) -> Pipeline:
        """Move a pipeline from DRAFT to RUNNING.

        Starting an already RUNNING pipeline is an idempotent success and
        returns it unchanged.

        Raises:
            NotFoundError: If the pipeline does not exist.
            InvalidStateError: If the pipeline is COMPLETE or FAILED.
        """
        now = datetime.now(timezone.utc)
        updated = await self.repository.update_pipeline_status(
            pipeline_id,
            expected={PipelineStatus.DRAFT},
            status=PipelineStatus.RUNNING,
            updated_at=now,
        )
        if updated is not None:
            logger.info(
                "Pipeline started",
                extra={"pipeline_id": pipeline_id},
            )
            return updated

        pipeline = await self.repository.get_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFoundError("pipeline", pipeline_id)
        if pipeline.status == PipelineStatus.RUNNING:
            logger.debug(
                "Pipeline already running",
                extra={"pipeline_id": pipeline_id},
            )
            return pipeline

        logger.warning(
            "Cannot start pipeline in terminal state",
            extra={"pipeline_id": pipeline_id, "status": pipeline.status.value},
        )
        raise InvalidStateError(
            pipeline_id,
            pipeline.status,
            f"Pipeline is {pipeline.status.value} and cannot be started",
        )

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    async def claim_stage(
        self,
        pipeline_id: str,
        stage_name: StageName,
        agent_id: str,
        agent_name: str,
    ) -> Stage:
        """Claim a PENDING stage for an agent.

        Preconditions are checked in this order, each with its own error:
        pipeline RUNNING, stage exists, stage PENDING, predecessor done.

        Returns:
            The stage in CLAIMED status.

        Raises:
            InvalidStateError: If the pipeline is missing or not RUNNING.
            NotFoundError: If the stage does not exist.
            ConflictError: If the stage is not PENDING, or another agent
                claimed it concurrently.
            OrderingViolationError: If the previous stage is not done.
        """
        if not agent_id:
            raise ValidationError("agent_id is required")

        pipeline = await self.repository.get_pipeline(pipeline_id)
        if pipeline is None or pipeline.status != PipelineStatus.RUNNING:
            raise InvalidStateError(
                pipeline_id, pipeline.status if pipeline else None
            )

        try:
            stage_name = StageName(stage_name)
        except ValueError:
            raise NotFoundError("stage", f"{pipeline_id}/{stage_name}") from None
        stage = await self.repository.get_stage_by_name(pipeline_id, stage_name)
        if stage is None:
            raise NotFoundError("stage", f"{pipeline_id}/{stage_name.value}")

        if stage.status != StageStatus.PENDING:
            raise ConflictError(stage.id, stage.status)

        previous_name = get_previous_stage_name(stage_name)
        if previous_name is not None:
            previous = await self.repository.get_stage_by_name(
                pipeline_id, previous_name
            )
            if previous is None or previous.status not in DONE_STAGE_STATUSES:
                logger.warning(
                    "Claim rejected, previous stage not complete",
                    extra={
                        "pipeline_id": pipeline_id,
                        "stage": stage_name.value,
                        "previous_stage": previous_name.value,
                    },
                )
                raise OrderingViolationError(stage_name, previous_name)

        now = datetime.now(timezone.utc)
        claimed = stage.model_copy(
            update={
                "status": StageStatus.CLAIMED,
                "agent_id": agent_id,
                "agent_name": agent_name or agent_id,
                "claimed_at": now,
                "started_at": now,
            }
        )

        if not await self.repository.update_stage(
            claimed, expected={StageStatus.PENDING}
        ):
            logger.warning(
                "Claim lost to a concurrent writer",
                extra={"stage_id": stage.id, "agent_id": agent_id},
            )
            raise ConflictError(stage.id)

        logger.info(
            "Stage claimed",
            extra={
                "pipeline_id": pipeline_id,
                "stage_id": stage.id,
                "stage": stage_name.value,
                "agent_id": agent_id,
            },
        )
        self._record_transition(claimed)
        return claimed

    async def claim_stage_by_id(
        self, stage_id: str, agent_id: str, agent_name: str
    ) -> Stage:
        """Claim a stage addressed by its id.

        Raises:
            NotFoundError: If the stage does not exist.
            Any error raised by claim_stage.
        """
        stage = await self.repository.get_stage(stage_id)
        if stage is None:
            raise NotFoundError("stage", stage_id)
        return await self.claim_stage(
            stage.pipeline_id, stage.name, agent_id, agent_name
        )

    async def start_stage(
        self, stage_id: str, agent_id: Optional[str] = None
    ) -> Stage:
        """Mark a CLAIMED stage as RUNNING.

        Args:
            stage_id: The stage to start.
            agent_id: When given, must match the claiming agent.

        Raises:
            NotFoundError: If the stage does not exist.
            PermissionDeniedError: If ``agent_id`` is not the claimant.
            ConflictError: If the stage is not CLAIMED.
        """
        stage = await self._require_stage(stage_id)

        if agent_id is not None and stage.agent_id != agent_id:
            raise PermissionDeniedError(stage_id, agent_id)

        if stage.status != StageStatus.CLAIMED:
            raise ConflictError(
                stage_id,
                stage.status,
                f"Stage is {stage.status.value}, not CLAIMED",
            )

        running = stage.model_copy(update={"status": StageStatus.RUNNING})
        if not await self.repository.update_stage(
            running, expected={StageStatus.CLAIMED}
        ):
            raise ConflictError(stage_id, message="Stage changed while starting")

        self._record_transition(running)
        return running

    async def complete_stage(
        self,
        stage_id: str,
        output: Any,
        artifacts: Optional[List[str]] = None,
    ) -> StageOutcome:
        """Complete a CLAIMED or RUNNING stage and advance the pipeline.

        Writes the output, records the attribution for the claiming agent,
        and either moves ``current_stage`` to the next stage or, for the
        last stage, marks the pipeline COMPLETE. All of it is one
        repository transaction.

        Raises:
            NotFoundError: If the stage or pipeline does not exist.
            ConflictError: If the stage is not CLAIMED or RUNNING.
            InvalidStateError: If the pipeline is no longer RUNNING.
        """
        stage = await self._require_stage(stage_id)
        if stage.status not in ACTIVE_STAGE_STATUSES:
            raise ConflictError(
                stage_id,
                stage.status,
                f"Stage is {stage.status.value}, not CLAIMED or RUNNING",
            )
        pipeline = await self._require_active_pipeline(stage.pipeline_id)

        now = datetime.now(timezone.utc)
        completed = stage.model_copy(
            update={
                "status": StageStatus.COMPLETE,
                "output": output,
                "artifacts": list(artifacts or []),
                "completed_at": now,
            }
        )

        attribution: Optional[Attribution] = None
        if stage.agent_id:
            attribution = Attribution(
                pipeline_id=stage.pipeline_id,
                stage_id=stage.id,
                agent_id=stage.agent_id,
                agent_name=stage.agent_name or stage.agent_id,
                stage_name=stage.name,
                percentage=STAGE_WEIGHTS[stage.name],
                created_at=now,
            )

        advanced = self._advance(pipeline, stage.name, now)
        if not await self.repository.apply_stage_outcome(
            completed,
            expected=ACTIVE_STAGE_STATUSES,
            pipeline=advanced,
            pipeline_expected={PipelineStatus.RUNNING},
            attribution=attribution,
        ):
            raise await self._outcome_rejected(stage, "completing")

        logger.info(
            "Stage completed",
            extra={
                "pipeline_id": stage.pipeline_id,
                "stage_id": stage_id,
                "stage": stage.name.value,
                "agent_id": stage.agent_id,
                "pipeline_status": advanced.status.value,
                "current_stage": (
                    advanced.current_stage.value if advanced.current_stage else None
                ),
            },
        )
        self._record_transition(completed)
        if attribution is not None and self.metrics is not None:
            self.metrics.record_attribution(attribution)

        return StageOutcome(stage=completed, pipeline=advanced, attribution=attribution)

    async def fail_stage(self, stage_id: str, error: str) -> StageOutcome:
        """Fail a stage and, with it, the whole pipeline.

        There is no partial recovery: the pipeline becomes FAILED regardless
        of how many stages were already complete.

        Raises:
            NotFoundError: If the stage or pipeline does not exist.
            ConflictError: If the stage already reached a terminal status.
        """
        stage = await self._require_stage(stage_id)
        if stage.status in DONE_STAGE_STATUSES or stage.status == StageStatus.FAILED:
            raise ConflictError(
                stage_id,
                stage.status,
                f"Stage is already {stage.status.value}",
            )

        pipeline = await self.repository.get_pipeline(stage.pipeline_id)
        if pipeline is None:
            raise NotFoundError("pipeline", stage.pipeline_id)

        error_message = error or "Unknown error (no details provided)"
        now = datetime.now(timezone.utc)
        failed = stage.model_copy(
            update={
                "status": StageStatus.FAILED,
                "error": error_message,
                "completed_at": now,
            }
        )
        failed_pipeline = pipeline.model_copy(
            update={"status": PipelineStatus.FAILED, "updated_at": now}
        )

        if not await self.repository.apply_stage_outcome(
            failed,
            expected={StageStatus.PENDING, *ACTIVE_STAGE_STATUSES},
            pipeline=failed_pipeline,
            pipeline_expected=FAILABLE_PIPELINE_STATUSES,
        ):
            raise ConflictError(stage_id, message="Stage changed while failing")

        logger.warning(
            "Stage failed, pipeline marked FAILED",
            extra={
                "pipeline_id": stage.pipeline_id,
                "stage_id": stage_id,
                "stage": stage.name.value,
                "error": error_message[:500],
            },
        )
        self._record_transition(failed)
        return StageOutcome(stage=failed, pipeline=failed_pipeline)

    async def skip_stage(self, stage_id: str) -> StageOutcome:
        """Skip an optional stage and advance the pipeline.

        Skipping follows the same ordering rule as claiming and writes no
        attribution.

        Raises:
            NotFoundError: If the stage or pipeline does not exist.
            ConflictError: If the stage already reached a terminal status.
            InvalidStateError: If the pipeline is not RUNNING.
            OrderingViolationError: If the previous stage is not done.
        """
        stage = await self._require_stage(stage_id)
        skippable = {StageStatus.PENDING, *ACTIVE_STAGE_STATUSES}
        if stage.status not in skippable:
            raise ConflictError(
                stage_id,
                stage.status,
                f"Stage is already {stage.status.value}",
            )
        pipeline = await self._require_active_pipeline(stage.pipeline_id)

        previous_name = get_previous_stage_name(stage.name)
        if previous_name is not None:
            previous = await self.repository.get_stage_by_name(
                stage.pipeline_id, previous_name
            )
            if previous is None or previous.status not in DONE_STAGE_STATUSES:
                raise OrderingViolationError(stage.name, previous_name)

        now = datetime.now(timezone.utc)
        skipped = stage.model_copy(
            update={"status": StageStatus.SKIPPED, "completed_at": now}
        )
        advanced = self._advance(pipeline, stage.name, now)

        if not await self.repository.apply_stage_outcome(
            skipped,
            expected=skippable,
            pipeline=advanced,
            pipeline_expected={PipelineStatus.RUNNING},
        ):
            raise await self._outcome_rejected(stage, "skipping")

        logger.info(
            "Stage skipped",
            extra={
                "pipeline_id": stage.pipeline_id,
                "stage_id": stage_id,
                "stage": stage.name.value,
            },
        )
        self._record_transition(skipped)
        return StageOutcome(stage=skipped, pipeline=advanced)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_pipeline(self, pipeline_id: str) -> PipelineDetail:
        """Get a pipeline with its stages and attributions.

        Raises:
            NotFoundError: If the pipeline does not exist.
        """
        pipeline = await self.repository.get_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFoundError("pipeline", pipeline_id)
        stages = await self.repository.list_stages(pipeline_id)
        attributions = await self.repository.list_attributions(
            pipeline_id=pipeline_id
        )
        return PipelineDetail(
            pipeline=pipeline, stages=stages, attributions=attributions
        )

    async def list_pipelines(
        self, limit: int = 20, status: Optional[PipelineStatus] = None
    ) -> List[PipelineDetail]:
        """List the most recent pipelines with their stages."""
        pipelines = await self.repository.list_pipelines(limit=limit, status=status)
        details = []
        for pipeline in pipelines:
            stages = await self.repository.list_stages(pipeline.id)
            details.append(PipelineDetail(pipeline=pipeline, stages=stages))
        return details

    async def get_stage(self, stage_id: str) -> Stage:
        return await self._require_stage(stage_id)

    async def get_previous_stage_output(
        self, pipeline_id: str, stage_name: StageName
    ) -> Optional[Any]:
        """Return the output of the stage before ``stage_name``, if any."""
        previous_name = get_previous_stage_name(stage_name)
        if previous_name is None:
            return None
        previous = await self.repository.get_stage_by_name(pipeline_id, previous_name)
        if previous is None:
            return None
        return previous.output or None

    async def get_pipeline_attributions(self, pipeline_id: str) -> List[Attribution]:
        """Attributions for a pipeline, largest share first."""
        attributions = await self.repository.list_attributions(pipeline_id=pipeline_id)
        return sorted(attributions, key=lambda a: a.percentage, reverse=True)

    async def get_agent_attributions(self, agent_id: str) -> List[Attribution]:
        return await self.repository.list_attributions(agent_id=agent_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_stage(self, stage_id: str) -> Stage:
        stage = await self.repository.get_stage(stage_id)
        if stage is None:
            raise NotFoundError("stage", stage_id)
        return stage

    async def _require_active_pipeline(self, pipeline_id: str) -> Pipeline:
        pipeline = await self.repository.get_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFoundError("pipeline", pipeline_id)
        if pipeline.status != PipelineStatus.RUNNING:
            raise InvalidStateError(
                pipeline_id,
                pipeline.status,
                f"Pipeline is {pipeline.status.value}",
            )
        return pipeline

    async def _outcome_rejected(self, stage: Stage, action: str) -> PipelineError:
        """Error for a completion or skip whose guarded write matched nothing.

        A pipeline that stopped RUNNING after the precondition read (another
        stage failed it) is reported as InvalidStateError; otherwise the stage
        itself moved and the result is ConflictError.
        """
        pipeline = await self.repository.get_pipeline(stage.pipeline_id)
        if pipeline is not None and pipeline.status != PipelineStatus.RUNNING:
            logger.warning(
                "Stage outcome rejected, pipeline no longer running",
                extra={
                    "pipeline_id": stage.pipeline_id,
                    "stage_id": stage.id,
                    "pipeline_status": pipeline.status.value,
                },
            )
            return InvalidStateError(
                stage.pipeline_id,
                pipeline.status,
                f"Pipeline is {pipeline.status.value}",
            )
        return ConflictError(stage.id, message=f"Stage changed while {action}")

    @staticmethod
    def _advance(pipeline: Pipeline, finished: StageName, now: datetime) -> Pipeline:
        """Pipeline row after ``finished`` became COMPLETE or SKIPPED."""
        next_name = get_next_stage_name(finished)
        if next_name is None:
            # current_stage stays frozen on the last stage
            return pipeline.model_copy(
                update={"status": PipelineStatus.COMPLETE, "updated_at": now}
            )
        return pipeline.model_copy(
            update={"current_stage": next_name, "updated_at": now}
        )

    def _record_transition(self, stage: Stage) -> None:
        if self.metrics is not None:
            self.metrics.record_stage_transition(stage.name, stage.status)
