"""In-memory pipeline repository.

Implements the PipelineRepository protocol with plain dictionaries, for
local development (no CUTROOM_DATABASE_URL configured) and for tests.

Each method body runs without awaiting between its guard check and its
write, so on a single event loop every conditional update is atomic. That
is the same guarantee the PostgreSQL repository gets from row-level locks.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Collection, Dict, List, Optional, Tuple

from cutroom.state.models import (
    Attribution,
    Pipeline,
    PipelineStatus,
    Stage,
    StageName,
    StageStatus,
)


logger = logging.getLogger(__name__)


class InMemoryPipelineRepository:
    """Dictionary-backed implementation of PipelineRepository."""

    def __init__(self) -> None:
        self._pipelines: Dict[str, Pipeline] = {}
        self._stages: Dict[str, Stage] = {}
        self._stage_keys: Dict[Tuple[str, StageName], str] = {}
        self._attributions: List[Attribution] = []

    async def create_pipeline(self, pipeline: Pipeline, stages: List[Stage]) -> None:
        if pipeline.id in self._pipelines:
            raise ValueError(f"Pipeline already exists: {pipeline.id}")
        self._pipelines[pipeline.id] = pipeline
        for stage in stages:
            self._stages[stage.id] = stage
            self._stage_keys[(stage.pipeline_id, stage.name)] = stage.id

    async def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        return self._pipelines.get(pipeline_id)

    async def list_pipelines(
        self,
        limit: Optional[int] = None,
        status: Optional[PipelineStatus] = None,
        newest_first: bool = True,
    ) -> List[Pipeline]:
        # dict order is insertion order, which breaks created_at ties
        pipelines = [
            p for p in self._pipelines.values() if status is None or p.status == status
        ]
        ordered = sorted(
            enumerate(pipelines),
            key=lambda item: (item[1].created_at, item[0]),
            reverse=newest_first,
        )
        result = [p for _, p in ordered]
        return result[:limit] if limit is not None else result

    async def update_pipeline_status(
        self,
        pipeline_id: str,
        expected: Collection[PipelineStatus],
        status: PipelineStatus,
        updated_at: datetime,
    ) -> Optional[Pipeline]:
        existing = self._pipelines.get(pipeline_id)
        if existing is None or existing.status not in expected:
            return None
        updated = existing.model_copy(update={"status": status, "updated_at": updated_at})
        self._pipelines[pipeline_id] = updated
        return updated

    async def get_stage(self, stage_id: str) -> Optional[Stage]:
        return self._stages.get(stage_id)

    async def get_stage_by_name(
        self, pipeline_id: str, name: StageName
    ) -> Optional[Stage]:
        stage_id = self._stage_keys.get((pipeline_id, StageName(name)))
        return self._stages.get(stage_id) if stage_id else None

    async def list_stages(self, pipeline_id: str) -> List[Stage]:
        stages = [s for s in self._stages.values() if s.pipeline_id == pipeline_id]
        return sorted(stages, key=lambda s: s.position)

    async def list_stages_by_agent(
        self, agent_id: str, status: Optional[StageStatus] = None
    ) -> List[Stage]:
        stages = [
            s
            for s in self._stages.values()
            if s.agent_id == agent_id and (status is None or s.status == status)
        ]
        return sorted(
            stages,
            key=lambda s: s.completed_at or s.created_at,
            reverse=True,
        )

    async def update_stage(
        self, stage: Stage, expected: Collection[StageStatus]
    ) -> bool:
        existing = self._stages.get(stage.id)
        if existing is None or existing.status not in expected:
            return False
        self._stages[stage.id] = stage
        return True

    async def apply_stage_outcome(
        self,
        stage: Stage,
        expected: Collection[StageStatus],
        pipeline: Pipeline,
        pipeline_expected: Collection[PipelineStatus],
        attribution: Optional[Attribution] = None,
    ) -> bool:
        existing = self._stages.get(stage.id)
        if existing is None or existing.status not in expected:
            return False
        stored = self._pipelines.get(pipeline.id)
        if stored is None or stored.status not in pipeline_expected:
            logger.warning(
                "Pipeline status guard did not match",
                extra={
                    "pipeline_id": pipeline.id,
                    "status": stored.status.value if stored else None,
                },
            )
            return False
        if attribution is not None and any(
            a.pipeline_id == attribution.pipeline_id
            and a.stage_name == attribution.stage_name
            for a in self._attributions
        ):
            raise ValueError(
                "Attribution already recorded for "
                f"{attribution.pipeline_id}/{attribution.stage_name.value}"
            )

        self._stages[stage.id] = stage
        self._pipelines[pipeline.id] = stored.model_copy(
            update={
                "status": pipeline.status,
                "current_stage": pipeline.current_stage,
                "updated_at": pipeline.updated_at,
            }
        )
        if attribution is not None:
            self._attributions.append(attribution)
        return True

    async def list_attributions(
        self,
        pipeline_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> List[Attribution]:
        return [
            a
            for a in self._attributions
            if (pipeline_id is None or a.pipeline_id == pipeline_id)
            and (agent_id is None or a.agent_id == agent_id)
        ]

    async def count_pipelines_by_status(self) -> Dict[str, int]:
        counts = Counter(p.status.value for p in self._pipelines.values())
        return dict(counts)

    async def count_stages_by_name_and_status(self) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = {}
        for stage in self._stages.values():
            by_status = counts.setdefault(stage.name.value, {})
            by_status[stage.status.value] = by_status.get(stage.status.value, 0) + 1
        return counts

    async def list_recent_completions(self, limit: int = 10) -> List[Stage]:
        completed = [
            s for s in self._stages.values() if s.status == StageStatus.COMPLETE
        ]
        completed.sort(key=lambda s: s.completed_at, reverse=True)
        return completed[:limit]

    async def health_check(self) -> bool:
        return True

    def clear(self) -> None:
        """Remove every record."""
        self._pipelines.clear()
        self._stages.clear()
        self._stage_keys.clear()
        self._attributions.clear()
