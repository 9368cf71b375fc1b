"""Unit tests for the PostgreSQL repository against a fake asyncpg pool.

Queries themselves are exercised by integration tests against a real
database; these tests cover guard handling, error wrapping and row
conversion.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from cutroom.state import (
    Attribution,
    Pipeline,
    PipelineStatus,
    Stage,
    StageName,
    StageStatus,
)
from cutroom.state.repository import DatabaseError, PostgresPipelineRepository


def run_async(coro):
    return asyncio.run(coro)


class FakeConnection:
    def __init__(self, execute_results=None, row=None):
        self.execute = AsyncMock(side_effect=list(execute_results or ["UPDATE 1"]))
        self.fetchrow = AsyncMock(return_value=row)
        self.fetch = AsyncMock(return_value=[row] if row else [])
        self.fetchval = AsyncMock(return_value=1)
        self.rolled_back = False

    @asynccontextmanager
    async def transaction(self):
        try:
            yield
        except BaseException:
            self.rolled_back = True
            raise


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.close = AsyncMock()

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def _repository(conn):
    repository = PostgresPipelineRepository("postgresql://test/cutroom")
    repository._pool = FakePool(conn)
    return repository


def _stage(status=StageStatus.CLAIMED):
    return Stage(
        pipeline_id="p1",
        name=StageName.RESEARCH,
        position=0,
        status=status,
        agent_id="a",
        agent_name="A",
    )


def _stage_row(**overrides):
    row = {
        "id": "s1",
        "pipeline_id": "p1",
        "name": "SCRIPT",
        "position": 1,
        "status": "COMPLETE",
        "agent_id": "writer",
        "agent_name": "Writer",
        "output": json.dumps({"hook": "Hi"}),
        "artifacts": ["https://cdn/script.txt"],
        "error": None,
        "created_at": datetime(2024, 1, 1, 12, 0),
        "claimed_at": datetime(2024, 1, 1, 12, 1),
        "started_at": None,
        "completed_at": datetime(2024, 1, 1, 12, 5),
    }
    row.update(overrides)
    return row


class TestConnection:
    def test_pool_required(self):
        repository = PostgresPipelineRepository("postgresql://test/cutroom")
        with pytest.raises(DatabaseError):
            run_async(repository.get_pipeline("p1"))

    def test_health_check_without_pool(self):
        repository = PostgresPipelineRepository("postgresql://test/cutroom")
        assert run_async(repository.health_check()) is False

    def test_health_check(self):
        assert run_async(_repository(FakeConnection()).health_check()) is True

    def test_disconnect_closes_pool(self):
        repository = _repository(FakeConnection())
        pool = repository._pool
        run_async(repository.disconnect())
        pool.close.assert_awaited_once()
        assert repository._pool is None


class TestStatusGuards:
    def test_update_stage_reports_guard_miss(self):
        conn = FakeConnection(execute_results=["UPDATE 0"])
        repository = _repository(conn)
        assert run_async(repository.update_stage(_stage(), [StageStatus.PENDING])) is False

        args = conn.execute.await_args.args
        assert args[-1] == ["PENDING"]

    def test_update_stage_success(self):
        repository = _repository(FakeConnection(execute_results=["UPDATE 1"]))
        assert run_async(repository.update_stage(_stage(), [StageStatus.PENDING])) is True

    def test_outcome_stops_after_guard_miss(self):
        conn = FakeConnection(execute_results=["UPDATE 0"])
        repository = _repository(conn)
        pipeline = Pipeline(topic="t", status=PipelineStatus.RUNNING)

        applied = run_async(
            repository.apply_stage_outcome(
                _stage(StageStatus.COMPLETE),
                [StageStatus.CLAIMED],
                pipeline,
                [PipelineStatus.RUNNING],
            )
        )
        assert applied is False
        assert conn.execute.await_count == 1

    def test_outcome_write_failure_rolls_back(self):
        conn = FakeConnection(execute_results=["UPDATE 1", RuntimeError("disk full")])
        repository = _repository(conn)
        pipeline = Pipeline(topic="t", status=PipelineStatus.RUNNING)

        with pytest.raises(DatabaseError) as exc_info:
            run_async(
                repository.apply_stage_outcome(
                    _stage(StageStatus.COMPLETE),
                    [StageStatus.CLAIMED],
                    pipeline,
                    [PipelineStatus.RUNNING],
                )
            )
        assert conn.rolled_back
        assert isinstance(exc_info.value.original_error, RuntimeError)

    def test_outcome_rolls_back_when_pipeline_not_running(self):
        conn = FakeConnection(execute_results=["UPDATE 1", "UPDATE 0"])
        repository = _repository(conn)
        pipeline = Pipeline(topic="t", status=PipelineStatus.RUNNING)
        attribution = Attribution(
            pipeline_id=pipeline.id,
            stage_id="s1",
            agent_id="a",
            agent_name="A",
            stage_name=StageName.RESEARCH,
            percentage=10,
        )

        applied = run_async(
            repository.apply_stage_outcome(
                _stage(StageStatus.COMPLETE),
                [StageStatus.CLAIMED],
                pipeline,
                [PipelineStatus.RUNNING],
                attribution,
            )
        )

        assert applied is False
        assert conn.rolled_back
        assert conn.execute.await_count == 2
        assert conn.execute.await_args.args[-1] == ["RUNNING"]


class TestRowConversion:
    def test_stage_row(self):
        repository = _repository(FakeConnection(row=_stage_row()))
        stage = run_async(repository.get_stage("s1"))

        assert stage.name == StageName.SCRIPT
        assert stage.status == StageStatus.COMPLETE
        assert stage.output == {"hook": "Hi"}
        assert stage.artifacts == ["https://cdn/script.txt"]
        assert stage.completed_at.tzinfo == timezone.utc
        assert stage.started_at is None

    def test_missing_row(self):
        repository = _repository(FakeConnection(row=None))
        assert run_async(repository.get_stage("nope")) is None

    def test_query_errors_are_wrapped(self):
        conn = FakeConnection()
        conn.fetchrow = AsyncMock(side_effect=OSError("connection reset"))
        repository = _repository(conn)
        with pytest.raises(DatabaseError):
            run_async(repository.get_pipeline("p1"))
