"""Read-only views over the store: agent profiles and system statistics."""

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from cutroom.state.machine import PipelineRepository, ValidationError
from cutroom.state.models import (
    Pipeline,
    PipelineStatus,
    StageName,
    StageStatus,
)


logger = logging.getLogger(__name__)


RECENT_WORK_LIMIT = 10
ATTRIBUTION_HISTORY_LIMIT = 20
TOP_AGENT_LIMIT = 10
RECENT_PIPELINE_LIMIT = 5


class AgentStats(BaseModel):
    total_stages_completed: int
    total_contribution: int
    pending_rewards: int = Field(
        ..., description="Percentage points earned on COMPLETE pipelines"
    )
    stage_breakdown: Dict[str, int]


class WorkItem(BaseModel):
    stage_id: str
    stage_name: StageName
    pipeline_id: str
    pipeline_topic: Optional[str] = None
    pipeline_status: Optional[PipelineStatus] = None
    completed_at: Optional[datetime] = None


class AttributionEntry(BaseModel):
    pipeline_id: str
    pipeline_topic: Optional[str] = None
    stage_name: StageName
    percentage: int
    created_at: datetime


class AgentProfile(BaseModel):
    agent_id: str
    agent_name: str
    stats: AgentStats
    recent_work: List[WorkItem]
    attributions: List[AttributionEntry]


class AgentSummary(BaseModel):
    agent_id: str
    agent_name: str
    total_contribution: int
    stages_completed: int


class CompletionEntry(BaseModel):
    stage: StageName
    agent: Optional[str] = None
    topic: Optional[str] = None
    completed_at: Optional[datetime] = None


class SystemStats(BaseModel):
    total_pipelines: int
    pipelines_by_status: Dict[str, int]
    stages_by_name_and_status: Dict[str, Dict[str, int]]
    top_agents: List[AgentSummary]
    recent_pipelines: List[Pipeline]
    recent_completions: List[CompletionEntry]
    generated_at: datetime


class ReportingService:
    """Builds agent profiles and system statistics from the repository."""

    def __init__(self, repository: PipelineRepository):
        self.repository = repository

    async def _pipelines(self, pipeline_ids: List[str]) -> Dict[str, Pipeline]:
        found: Dict[str, Pipeline] = {}
        for pipeline_id in dict.fromkeys(pipeline_ids):
            pipeline = await self.repository.get_pipeline(pipeline_id)
            if pipeline is not None:
                found[pipeline_id] = pipeline
        return found

    async def get_agent_profile(self, agent_id: str) -> AgentProfile:
        """Work history and earned credit for one agent.

        An agent with no history gets an empty profile, not an error.

        Raises:
            ValidationError: If ``agent_id`` is blank.
        """
        if not agent_id or not agent_id.strip():
            raise ValidationError("Agent ID is required")

        completed = await self.repository.list_stages_by_agent(
            agent_id, status=StageStatus.COMPLETE
        )
        attributions = sorted(
            await self.repository.list_attributions(agent_id=agent_id),
            key=lambda a: a.created_at,
            reverse=True,
        )
        pipelines = await self._pipelines(
            [s.pipeline_id for s in completed] + [a.pipeline_id for a in attributions]
        )

        breakdown: Dict[str, int] = {}
        for stage in completed:
            breakdown[stage.name.value] = breakdown.get(stage.name.value, 0) + 1

        pending_rewards = sum(
            a.percentage
            for a in attributions
            if a.pipeline_id in pipelines
            and pipelines[a.pipeline_id].status == PipelineStatus.COMPLETE
            and not a.claimed
        )

        if attributions:
            agent_name = attributions[0].agent_name
        elif completed:
            agent_name = completed[0].agent_name or "Unknown"
        else:
            agent_name = "Unknown"

        recent_work = []
        for stage in completed[:RECENT_WORK_LIMIT]:
            pipeline = pipelines.get(stage.pipeline_id)
            recent_work.append(
                WorkItem(
                    stage_id=stage.id,
                    stage_name=stage.name,
                    pipeline_id=stage.pipeline_id,
                    pipeline_topic=pipeline.topic if pipeline else None,
                    pipeline_status=pipeline.status if pipeline else None,
                    completed_at=stage.completed_at,
                )
            )

        history = []
        for attribution in attributions[:ATTRIBUTION_HISTORY_LIMIT]:
            pipeline = pipelines.get(attribution.pipeline_id)
            history.append(
                AttributionEntry(
                    pipeline_id=attribution.pipeline_id,
                    pipeline_topic=pipeline.topic if pipeline else None,
                    stage_name=attribution.stage_name,
                    percentage=attribution.percentage,
                    created_at=attribution.created_at,
                )
            )

        return AgentProfile(
            agent_id=agent_id,
            agent_name=agent_name,
            stats=AgentStats(
                total_stages_completed=len(completed),
                total_contribution=sum(a.percentage for a in attributions),
                pending_rewards=pending_rewards,
                stage_breakdown=breakdown,
            ),
            recent_work=recent_work,
            attributions=history,
        )

    async def get_system_stats(self) -> SystemStats:
        """Aggregate counts across every pipeline, stage and agent."""
        by_status = await self.repository.count_pipelines_by_status()
        by_stage = await self.repository.count_stages_by_name_and_status()

        agents: "OrderedDict[str, AgentSummary]" = OrderedDict()
        for attribution in await self.repository.list_attributions():
            summary = agents.get(attribution.agent_id)
            if summary is None:
                summary = AgentSummary(
                    agent_id=attribution.agent_id,
                    agent_name=attribution.agent_name,
                    total_contribution=0,
                    stages_completed=0,
                )
                agents[attribution.agent_id] = summary
            summary.total_contribution += attribution.percentage
            summary.stages_completed += 1

        top_agents = sorted(
            agents.values(),
            key=lambda a: (a.stages_completed, a.total_contribution),
            reverse=True,
        )[:TOP_AGENT_LIMIT]

        recent_pipelines = await self.repository.list_pipelines(
            limit=RECENT_PIPELINE_LIMIT
        )

        completions = await self.repository.list_recent_completions(limit=10)
        topics = await self._pipelines([s.pipeline_id for s in completions])
        recent_completions = [
            CompletionEntry(
                stage=stage.name,
                agent=stage.agent_name,
                topic=topics[stage.pipeline_id].topic
                if stage.pipeline_id in topics
                else None,
                completed_at=stage.completed_at,
            )
            for stage in completions
        ]

        return SystemStats(
            total_pipelines=sum(by_status.values()),
            pipelines_by_status=by_status,
            stages_by_name_and_status=by_stage,
            top_agents=top_agents,
            recent_pipelines=recent_pipelines,
            recent_completions=recent_completions,
            generated_at=datetime.now(timezone.utc),
        )
