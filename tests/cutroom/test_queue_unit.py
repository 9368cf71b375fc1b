"""Unit tests for the work queue."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from cutroom.config import CutroomSettings
from cutroom.executor import StageExecutor
from cutroom.queue import MAX_BATCH_CLAIM, WorkQueue
from cutroom.stages import build_stage_registry
from cutroom.state import (
    ConflictError,
    InMemoryPipelineRepository,
    InvalidStateError,
    PipelineStateMachine,
    StageName,
    StageStatus,
    ValidationError,
)


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def machine():
    return PipelineStateMachine(InMemoryPipelineRepository())


@pytest.fixture
def queue(machine):
    executor = StageExecutor(machine, build_stage_registry(CutroomSettings()))
    return WorkQueue(machine, executor=executor)


async def _running(machine, topic):
    detail = await machine.create_pipeline(topic)
    await machine.start_pipeline(detail.pipeline.id)
    return detail.pipeline.id


class TestAvailableStages:
    def test_only_running_pipelines_are_listed(self, machine, queue):
        async def test():
            await machine.create_pipeline("draft")
            running = await _running(machine, "running")

            failed = await _running(machine, "failed")
            stage = await machine.claim_stage(failed, StageName.RESEARCH, "a", "A")
            await machine.fail_stage(stage.id, "boom")

            available = await queue.get_available_stages()
            assert [item.pipeline.id for item in available] == [running]
            assert available[0].stage.name == StageName.RESEARCH

        run_async(test())

    def test_next_stage_unlocks_after_completion(self, machine, queue):
        async def test():
            pipeline_id = await _running(machine, "topic")
            stage = await machine.claim_stage(pipeline_id, StageName.RESEARCH, "a", "A")
            assert await queue.get_available_stages() == []

            await machine.complete_stage(stage.id, {})
            available = await queue.get_available_stages()
            assert [item.stage.name for item in available] == [StageName.SCRIPT]

        run_async(test())

    def test_filter_and_summary(self, machine, queue):
        async def test():
            first = await _running(machine, "first")
            await _running(machine, "second")
            stage = await machine.claim_stage(first, StageName.RESEARCH, "a", "A")
            await machine.complete_stage(stage.id, {})

            scripts = await queue.get_available_stages(StageName.SCRIPT)
            assert [item.pipeline.id for item in scripts] == [first]

            summary = await queue.summarize()
            assert summary.total_available == 2
            assert summary.by_stage["RESEARCH"] == 1
            assert summary.by_stage["SCRIPT"] == 1
            assert summary.by_stage["PUBLISH"] == 0

        run_async(test())


class TestClaimNext:
    def test_claims_oldest_matching_stage(self, machine, queue):
        async def test():
            first = await _running(machine, "first")
            await _running(machine, "second")

            claim = await queue.claim_next("agent-1", "One", [StageName.RESEARCH])
            assert claim.stage.pipeline_id == first
            assert claim.stage.status == StageStatus.CLAIMED
            assert claim.topic == "first"
            assert claim.execution is None

        run_async(test())

    def test_nothing_matching_returns_none(self, machine, queue):
        async def test():
            await _running(machine, "topic")
            assert await queue.claim_next("a", "A", [StageName.EDITOR]) is None

        run_async(test())

    def test_empty_capabilities_rejected(self, queue):
        with pytest.raises(ValidationError):
            run_async(queue.claim_next("a", "A", []))

    def test_auto_execute(self, machine, queue):
        async def test():
            pipeline_id = await _running(machine, "Deep sea vents")
            claim = await queue.claim_next(
                "a", "A", [StageName.RESEARCH], auto_execute=True, dry_run=True
            )
            assert claim.execution.success
            assert claim.stage.status == StageStatus.COMPLETE

            detail = await machine.get_pipeline(pipeline_id)
            assert detail.pipeline.current_stage == StageName.SCRIPT

        run_async(test())

    def test_lost_candidate_falls_through_to_next(self, machine, queue):
        async def test():
            first = await _running(machine, "first")
            second = await _running(machine, "second")

            real_claim = machine.claim_stage
            attempted = []

            async def contested_claim(pipeline_id, stage_name, agent_id, agent_name):
                attempted.append(pipeline_id)
                if pipeline_id == first:
                    raise ConflictError("taken", StageStatus.CLAIMED)
                return await real_claim(pipeline_id, stage_name, agent_id, agent_name)

            machine.claim_stage = contested_claim

            claim = await queue.claim_next("a", "A", [StageName.RESEARCH])
            assert claim.stage.pipeline_id == second
            assert attempted == [first, second]

        run_async(test())

    def test_all_candidates_lost_raises_conflict(self, machine, queue):
        async def test():
            await _running(machine, "only")
            machine.claim_stage = AsyncMock(side_effect=ConflictError("taken"))
            with pytest.raises(ConflictError):
                await queue.claim_next("a", "A", [StageName.RESEARCH])

        run_async(test())

    def test_candidate_whose_pipeline_failed_is_skipped(self, machine, queue):
        async def test():
            first = await _running(machine, "first")
            second = await _running(machine, "second")
            real_claim = machine.claim_stage

            async def claim_after_failure(pipeline_id, stage_name, agent_id, agent_name):
                if pipeline_id == first:
                    stage = await machine.repository.get_stage_by_name(first, stage_name)
                    await machine.fail_stage(stage.id, "source unavailable")
                return await real_claim(pipeline_id, stage_name, agent_id, agent_name)

            machine.claim_stage = claim_after_failure

            claim = await queue.claim_next("a", "A", [StageName.RESEARCH])
            assert claim.stage.pipeline_id == second
            assert claim.stage.status == StageStatus.CLAIMED

        run_async(test())

    def test_only_stale_candidates_raise_last_error(self, machine, queue):
        async def test():
            only = await _running(machine, "only")
            real_claim = machine.claim_stage

            async def claim_after_failure(pipeline_id, stage_name, agent_id, agent_name):
                stage = await machine.repository.get_stage_by_name(pipeline_id, stage_name)
                await machine.fail_stage(stage.id, "source unavailable")
                return await real_claim(pipeline_id, stage_name, agent_id, agent_name)

            machine.claim_stage = claim_after_failure

            with pytest.raises(InvalidStateError) as exc_info:
                await queue.claim_next("a", "A", [StageName.RESEARCH])
            assert exc_info.value.pipeline_id == only

        run_async(test())


class TestBatchClaim:
    def test_limits(self, queue):
        with pytest.raises(ValidationError):
            run_async(queue.batch_claim("a", "A", []))
        with pytest.raises(ValidationError):
            run_async(
                queue.batch_claim("a", "A", [f"s{i}" for i in range(MAX_BATCH_CLAIM + 1)])
            )

    def test_each_id_succeeds_or_fails_on_its_own(self, machine, queue):
        async def test():
            first = await _running(machine, "first")
            second = await _running(machine, "second")
            first_detail = await machine.get_pipeline(first)
            second_detail = await machine.get_pipeline(second)

            result = await queue.batch_claim(
                "a",
                "A",
                [
                    first_detail.stages[0].id,
                    second_detail.stages[0].id,
                    first_detail.stages[3].id,
                    "missing",
                ],
            )
            assert [item.success for item in result.results] == [True, True, False, False]
            assert result.claimed == 2
            assert result.failed == 2
            assert result.results[3].error == "Stage not found: missing"

        run_async(test())
