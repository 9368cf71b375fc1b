"""Runs a stage handler against a claimed stage.

The executor owns the CLAIMED -> RUNNING -> COMPLETE/FAILED path for
stages that have a registered handler. Whatever the handler does, the
stage does not stay RUNNING: a handler failure, a validation failure or an
unexpected exception all end in fail_stage.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from cutroom.stages import StageRegistry
from cutroom.stages.base import StageContext, StageHandler, StageResult
from cutroom.state.machine import (
    ConflictError,
    PermissionDeniedError,
    PipelineError,
    PipelineStateMachine,
)
from cutroom.state.models import PipelineDetail, Stage, StageName, StageStatus


logger = logging.getLogger(__name__)


class ExecutionOutcome(BaseModel):
    """What happened when a stage was executed.

    Attributes:
        success: True when the stage ended COMPLETE.
        stage: The stage in its final state.
        output: Handler output, when successful.
        error: Failure reason, when not.
        validation_errors: Schema errors when the input was rejected.
        artifacts: URLs recorded on the stage.
        metadata: Handler-reported details (model used, counts).
        duration_seconds: Time spent inside the handler.
    """

    success: bool
    stage: Stage
    output: Optional[Any] = None
    error: Optional[str] = None
    validation_errors: List[str] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    duration_seconds: float = 0.0


def build_stage_input(
    handler: StageHandler,
    detail: PipelineDetail,
    caller_input: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Merge pipeline context, caller input and upstream outputs.

    Caller-supplied keys win. Keys the handler reads from earlier stages
    are filled from those stages' outputs when the caller left them out.
    """
    merged: Dict[str, Any] = {"topic": detail.pipeline.topic}
    if detail.pipeline.description:
        merged["description"] = detail.pipeline.description
    merged.update(caller_input or {})

    for key, source in handler.upstream_inputs.items():
        if key in merged:
            continue
        upstream = detail.stage(source)
        if (
            upstream is not None
            and upstream.status == StageStatus.COMPLETE
            and upstream.output is not None
        ):
            merged[key] = upstream.output
    return merged


class StageExecutor:
    """Execute claimed stages through the stage registry.

    Attributes:
        machine: State machine used for every transition.
        registry: Handlers by stage name.
        metrics: Optional CutroomMetrics instance.

    Example:
        >>> executor = StageExecutor(machine, registry)
        >>> outcome = await executor.execute(stage.id, "agent-1", dry_run=True)
        >>> outcome.stage.status
        <StageStatus.COMPLETE: 'COMPLETE'>
    """

    def __init__(
        self,
        machine: PipelineStateMachine,
        registry: StageRegistry,
        metrics: Any = None,
    ):
        self.machine = machine
        self.registry = registry
        self.metrics = metrics

    async def execute(
        self,
        stage_id: str,
        agent_id: str,
        input: Optional[Dict[str, Any]] = None,
        config: Optional[Dict[str, Any]] = None,
        dry_run: bool = False,
    ) -> ExecutionOutcome:
        """Run the handler for a stage claimed by ``agent_id``.

        Raises:
            NotFoundError: If the stage does not exist.
            PermissionDeniedError: If another agent holds the claim.
            ConflictError: If the stage is not CLAIMED.
            HandlerNotImplementedError: If the stage has no handler; the
                stage is left CLAIMED.
        """
        stage = await self.machine.get_stage(stage_id)

        if stage.agent_id != agent_id:
            raise PermissionDeniedError(stage_id, agent_id)
        if stage.status != StageStatus.CLAIMED:
            raise ConflictError(
                stage_id,
                stage.status,
                f"Stage must be CLAIMED to execute, it is {stage.status.value}",
            )

        handler = self.registry.require(stage.name)

        await self.machine.start_stage(stage_id, agent_id)
        logger.info(
            "Executing stage",
            extra={
                "stage_id": stage_id,
                "stage": stage.name.value,
                "agent_id": agent_id,
                "dry_run": dry_run,
            },
        )

        started = time.perf_counter()
        validation_errors: List[str] = []
        try:
            detail = await self.machine.get_pipeline(stage.pipeline_id)
            stage_input = build_stage_input(handler, detail, input)

            validation = handler.validate(stage_input)
            if not validation.valid:
                validation_errors = validation.errors
                result = StageResult.failure(
                    "Validation failed: " + "; ".join(validation.errors)
                )
            else:
                context = StageContext(
                    pipeline_id=stage.pipeline_id,
                    stage_id=stage_id,
                    input=stage_input,
                    previous_output=await self.machine.get_previous_stage_output(
                        stage.pipeline_id, stage.name
                    ),
                    config=config,
                    dry_run=dry_run,
                )
                result = await handler.execute(context)
        except Exception as e:
            logger.exception(
                "Stage handler raised",
                extra={"stage_id": stage_id, "stage": stage.name.value},
            )
            result = StageResult.failure(f"Handler raised {type(e).__name__}: {e}")
        duration = time.perf_counter() - started

        self._record_duration(stage.name, result.success, duration)

        artifacts = [artifact.url for artifact in result.artifacts]
        if result.success:
            try:
                outcome = await self.machine.complete_stage(
                    stage_id, result.output, artifacts
                )
            except PipelineError as e:
                await self._fail_after_error(stage_id, f"Completion failed: {e}")
                raise
            logger.info(
                "Stage executed",
                extra={
                    "stage_id": stage_id,
                    "stage": stage.name.value,
                    "duration_seconds": round(duration, 3),
                },
            )
        else:
            outcome = await self.machine.fail_stage(
                stage_id, result.error or "Handler reported failure"
            )

        return ExecutionOutcome(
            success=result.success,
            stage=outcome.stage,
            output=result.output if result.success else None,
            error=None if result.success else outcome.stage.error,
            validation_errors=validation_errors,
            artifacts=artifacts if result.success else [],
            metadata=result.metadata,
            duration_seconds=duration,
        )

    async def _fail_after_error(self, stage_id: str, message: str) -> None:
        try:
            await self.machine.fail_stage(stage_id, message)
        except PipelineError as e:
            logger.error(
                "Could not fail stage after completion error",
                extra={"stage_id": stage_id, "error": str(e)},
            )

    def _record_duration(self, stage: StageName, success: bool, duration: float) -> None:
        if self.metrics is not None:
            self.metrics.record_execution_duration(stage, success, duration)
