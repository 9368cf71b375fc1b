"""Unit tests for individual state machine operations."""

import asyncio
from unittest.mock import MagicMock

import pytest

from cutroom.state import (
    ConflictError,
    InMemoryPipelineRepository,
    InvalidStateError,
    NotFoundError,
    OrderingViolationError,
    PermissionDeniedError,
    PipelineStateMachine,
    PipelineStatus,
    StageName,
    StageStatus,
    ValidationError,
)


def run_async(coro):
    return asyncio.run(coro)


class YieldingRepository(InMemoryPipelineRepository):
    """In-memory repository whose reads give up the event loop.

    Concurrent callers interleave between their reads and their guarded
    writes, as two requests against PostgreSQL can.
    """

    async def get_pipeline(self, pipeline_id):
        pipeline = await super().get_pipeline(pipeline_id)
        await asyncio.sleep(0)
        return pipeline

    async def get_stage(self, stage_id):
        stage = await super().get_stage(stage_id)
        await asyncio.sleep(0)
        return stage

    async def get_stage_by_name(self, pipeline_id, name):
        stage = await super().get_stage_by_name(pipeline_id, name)
        await asyncio.sleep(0)
        return stage


@pytest.fixture
def repo():
    return InMemoryPipelineRepository()


@pytest.fixture
def machine(repo):
    return PipelineStateMachine(repo)


async def _running(machine, topic="How bees see color"):
    detail = await machine.create_pipeline(topic, description="60 second explainer")
    await machine.start_pipeline(detail.pipeline.id)
    return detail.pipeline.id


class TestStartPipeline:
    def test_draft_becomes_running(self, machine):
        async def test():
            detail = await machine.create_pipeline("Topic")
            pipeline = await machine.start_pipeline(detail.pipeline.id)
            assert pipeline.status == PipelineStatus.RUNNING
            assert pipeline.current_stage == StageName.RESEARCH

        run_async(test())

    def test_starting_running_pipeline_is_idempotent(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            again = await machine.start_pipeline(pipeline_id)
            assert again.status == PipelineStatus.RUNNING

        run_async(test())

    def test_starting_failed_pipeline_is_rejected(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            stage = await machine.claim_stage(pipeline_id, StageName.RESEARCH, "a", "A")
            await machine.fail_stage(stage.id, "boom")
            with pytest.raises(InvalidStateError):
                await machine.start_pipeline(pipeline_id)

        run_async(test())

    def test_unknown_pipeline(self, machine):
        with pytest.raises(NotFoundError):
            run_async(machine.start_pipeline("missing"))


class TestClaimStage:
    def test_claim_sets_agent_and_timestamps(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            stage = await machine.claim_stage(
                pipeline_id, StageName.RESEARCH, "agent-7", "ResearchBot"
            )
            assert stage.status == StageStatus.CLAIMED
            assert stage.agent_id == "agent-7"
            assert stage.agent_name == "ResearchBot"
            assert stage.claimed_at is not None
            assert stage.started_at is not None

            detail = await machine.get_pipeline(pipeline_id)
            assert detail.pipeline.current_stage == StageName.RESEARCH

        run_async(test())

    def test_claiming_claimed_stage_conflicts(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            await machine.claim_stage(pipeline_id, StageName.RESEARCH, "a", "A")
            with pytest.raises(ConflictError) as exc_info:
                await machine.claim_stage(pipeline_id, StageName.RESEARCH, "b", "B")
            assert exc_info.value.status == StageStatus.CLAIMED

        run_async(test())

    def test_unknown_stage_name_is_not_found(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            with pytest.raises(NotFoundError):
                await machine.claim_stage(pipeline_id, "THUMBNAIL", "a", "A")

        run_async(test())

    def test_missing_pipeline_is_invalid_state(self, machine):
        with pytest.raises(InvalidStateError):
            run_async(machine.claim_stage("missing", StageName.RESEARCH, "a", "A"))

    def test_empty_agent_id_is_rejected(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            with pytest.raises(ValidationError):
                await machine.claim_stage(pipeline_id, StageName.RESEARCH, "", "A")

        run_async(test())

    def test_claim_by_id(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            detail = await machine.get_pipeline(pipeline_id)
            stage = await machine.claim_stage_by_id(detail.stages[0].id, "a", "A")
            assert stage.name == StageName.RESEARCH

            with pytest.raises(OrderingViolationError):
                await machine.claim_stage_by_id(detail.stages[2].id, "a", "A")
            with pytest.raises(NotFoundError):
                await machine.claim_stage_by_id("missing", "a", "A")

        run_async(test())


class TestStartStage:
    def test_only_claimant_may_start(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            stage = await machine.claim_stage(pipeline_id, StageName.RESEARCH, "a", "A")
            with pytest.raises(PermissionDeniedError):
                await machine.start_stage(stage.id, "intruder")
            running = await machine.start_stage(stage.id, "a")
            assert running.status == StageStatus.RUNNING

            with pytest.raises(ConflictError):
                await machine.start_stage(stage.id, "a")

        run_async(test())


class TestCompleteStage:
    def test_complete_records_output_and_attribution(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            stage = await machine.claim_stage(pipeline_id, StageName.RESEARCH, "a", "A")
            outcome = await machine.complete_stage(
                stage.id, {"facts": ["x"]}, ["https://cdn/research.json"]
            )
            assert outcome.stage.status == StageStatus.COMPLETE
            assert outcome.stage.output == {"facts": ["x"]}
            assert outcome.stage.artifacts == ["https://cdn/research.json"]
            assert outcome.stage.completed_at is not None
            assert outcome.pipeline.current_stage == StageName.SCRIPT
            assert outcome.attribution.percentage == 10
            assert outcome.attribution.agent_id == "a"

            previous = await machine.get_previous_stage_output(
                pipeline_id, StageName.SCRIPT
            )
            assert previous == {"facts": ["x"]}

        run_async(test())

    def test_pending_stage_cannot_be_completed(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            detail = await machine.get_pipeline(pipeline_id)
            with pytest.raises(ConflictError):
                await machine.complete_stage(detail.stages[0].id, {})

        run_async(test())

    def test_completing_twice_conflicts(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            stage = await machine.claim_stage(pipeline_id, StageName.RESEARCH, "a", "A")
            await machine.complete_stage(stage.id, {})
            with pytest.raises(ConflictError):
                await machine.complete_stage(stage.id, {})
            attributions = await machine.get_pipeline_attributions(pipeline_id)
            assert len(attributions) == 1

        run_async(test())

    def test_metrics_are_recorded(self, repo):
        metrics = MagicMock()
        machine = PipelineStateMachine(repo, metrics=metrics)

        async def test():
            pipeline_id = await _running(machine)
            stage = await machine.claim_stage(pipeline_id, StageName.RESEARCH, "a", "A")
            await machine.complete_stage(stage.id, {})

        run_async(test())
        metrics.record_pipeline_created.assert_called_once()
        metrics.record_stage_transition.assert_any_call(
            StageName.RESEARCH, StageStatus.CLAIMED
        )
        metrics.record_stage_transition.assert_any_call(
            StageName.RESEARCH, StageStatus.COMPLETE
        )
        metrics.record_attribution.assert_called_once()


class TestSkipStage:
    def test_skip_advances_without_attribution(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            for name in (StageName.RESEARCH, StageName.SCRIPT, StageName.VOICE):
                stage = await machine.claim_stage(pipeline_id, name, "a", "A")
                await machine.complete_stage(stage.id, {})

            detail = await machine.get_pipeline(pipeline_id)
            outcome = await machine.skip_stage(detail.stage(StageName.MUSIC).id)
            assert outcome.stage.status == StageStatus.SKIPPED
            assert outcome.attribution is None
            assert outcome.pipeline.current_stage == StageName.VISUAL

            visual = await machine.claim_stage(pipeline_id, StageName.VISUAL, "b", "B")
            assert visual.status == StageStatus.CLAIMED

            attributions = await machine.get_pipeline_attributions(pipeline_id)
            assert StageName.MUSIC not in {a.stage_name for a in attributions}

        run_async(test())

    def test_skip_out_of_order_is_rejected(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            detail = await machine.get_pipeline(pipeline_id)
            with pytest.raises(OrderingViolationError):
                await machine.skip_stage(detail.stage(StageName.VOICE).id)

        run_async(test())

    def test_skip_on_draft_pipeline_is_rejected(self, machine):
        async def test():
            detail = await machine.create_pipeline("Draft")
            with pytest.raises(InvalidStateError):
                await machine.skip_stage(detail.stages[0].id)

        run_async(test())


class TestFailStage:
    def test_fail_without_message_gets_default(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            stage = await machine.claim_stage(pipeline_id, StageName.RESEARCH, "a", "A")
            outcome = await machine.fail_stage(stage.id, "")
            assert outcome.stage.error
            assert outcome.pipeline.status == PipelineStatus.FAILED

        run_async(test())

    def test_failed_pipeline_rejects_further_claims(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            stage = await machine.claim_stage(pipeline_id, StageName.RESEARCH, "a", "A")
            await machine.fail_stage(stage.id, "upstream outage")
            with pytest.raises(InvalidStateError):
                await machine.claim_stage(pipeline_id, StageName.SCRIPT, "a", "A")

        run_async(test())

    def test_failed_stage_cannot_fail_again(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            stage = await machine.claim_stage(pipeline_id, StageName.RESEARCH, "a", "A")
            await machine.fail_stage(stage.id, "first")
            with pytest.raises(ConflictError):
                await machine.fail_stage(stage.id, "second")

        run_async(test())


class TestConcurrentOutcomes:
    """A stage failure that commits first keeps the pipeline FAILED."""

    def test_completion_after_concurrent_failure_is_rejected(self):
        repo = YieldingRepository()
        machine = PipelineStateMachine(repo)

        async def test():
            pipeline_id = await _running(machine)
            research = await machine.claim_stage(
                pipeline_id, StageName.RESEARCH, "researcher", "Researcher"
            )
            script = await repo.get_stage_by_name(pipeline_id, StageName.SCRIPT)

            failed, completed = await asyncio.gather(
                machine.fail_stage(script.id, "boom"),
                machine.complete_stage(research.id, {"facts": ["a"]}),
                return_exceptions=True,
            )

            assert failed.pipeline.status == PipelineStatus.FAILED
            assert isinstance(completed, InvalidStateError)
            assert completed.status == PipelineStatus.FAILED

            detail = await machine.get_pipeline(pipeline_id)
            assert detail.pipeline.status == PipelineStatus.FAILED
            assert detail.pipeline.current_stage == StageName.RESEARCH
            assert detail.stages[0].status == StageStatus.CLAIMED
            assert detail.stages[1].status == StageStatus.FAILED
            assert detail.attributions == []

        run_async(test())

    def test_skip_after_concurrent_failure_is_rejected(self):
        repo = YieldingRepository()
        machine = PipelineStateMachine(repo)

        async def test():
            pipeline_id = await _running(machine)
            research = await machine.claim_stage(
                pipeline_id, StageName.RESEARCH, "researcher", "Researcher"
            )
            await machine.complete_stage(research.id, {})
            script = await repo.get_stage_by_name(pipeline_id, StageName.SCRIPT)
            voice = await repo.get_stage_by_name(pipeline_id, StageName.VOICE)

            _, skipped = await asyncio.gather(
                machine.fail_stage(voice.id, "no voice"),
                machine.skip_stage(script.id),
                return_exceptions=True,
            )

            assert isinstance(skipped, InvalidStateError)
            detail = await machine.get_pipeline(pipeline_id)
            assert detail.pipeline.status == PipelineStatus.FAILED
            assert detail.pipeline.current_stage == StageName.SCRIPT
            assert detail.stages[1].status == StageStatus.PENDING

        run_async(test())

    def test_stage_guard_miss_is_still_a_conflict(self):
        repo = YieldingRepository()
        machine = PipelineStateMachine(repo)

        async def test():
            pipeline_id = await _running(machine)
            stage = await machine.claim_stage(
                pipeline_id, StageName.RESEARCH, "researcher", "Researcher"
            )
            results = await asyncio.gather(
                machine.complete_stage(stage.id, {"first": True}),
                machine.complete_stage(stage.id, {"second": True}),
                return_exceptions=True,
            )

            assert isinstance(results[1], ConflictError)
            detail = await machine.get_pipeline(pipeline_id)
            assert detail.pipeline.status == PipelineStatus.RUNNING
            assert detail.stages[0].output == {"first": True}
            assert len(detail.attributions) == 1

        run_async(test())


class TestReads:
    def test_list_pipelines_newest_first(self, machine):
        async def test():
            first = await machine.create_pipeline("first")
            second = await machine.create_pipeline("second")
            listed = await machine.list_pipelines()
            ids = [d.pipeline.id for d in listed]
            assert ids.index(second.pipeline.id) < ids.index(first.pipeline.id)
            assert all(len(d.stages) == 7 for d in listed)

            running = await machine.list_pipelines(status=PipelineStatus.RUNNING)
            assert running == []

        run_async(test())

    def test_attributions_sorted_by_percentage(self, machine):
        async def test():
            pipeline_id = await _running(machine)
            for name, agent in ((StageName.RESEARCH, "r"), (StageName.SCRIPT, "s")):
                stage = await machine.claim_stage(pipeline_id, name, agent, agent)
                await machine.complete_stage(stage.id, {})

            attributions = await machine.get_pipeline_attributions(pipeline_id)
            assert [a.percentage for a in attributions] == [25, 10]
            assert [a.agent_id for a in await machine.get_agent_attributions("s")] == ["s"]

        run_async(test())

    def test_missing_pipeline(self, machine):
        with pytest.raises(NotFoundError):
            run_async(machine.get_pipeline("missing"))
