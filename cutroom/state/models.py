"""Pipeline state models.

This module defines the data models for the content pipeline, including:
- StageName: The seven production stages, in their fixed execution order
- PipelineStatus / StageStatus: Lifecycle states for pipelines and stages
- Pipeline, Stage, Attribution: Persisted records
- STAGE_ORDER / STAGE_WEIGHTS: Static ordering and reward weight tables

Stage order is static domain data. It is declared once here and never
derived from stored rows; every "next", "previous" and "index" lookup goes
through the helpers at the bottom of this module.

The models use Pydantic for validation, consistent with the configuration
approach in config.py.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate an opaque record identifier."""
    return uuid.uuid4().hex


class StageName(str, Enum):
    """Production stages that a pipeline progresses through.

    Stage Flow:
        RESEARCH → SCRIPT → VOICE → MUSIC → VISUAL → EDITOR → PUBLISH

    Each stage is claimed and completed by one agent. MUSIC is optional
    and is commonly skipped.
    """

    RESEARCH = "RESEARCH"
    SCRIPT = "SCRIPT"
    VOICE = "VOICE"
    MUSIC = "MUSIC"
    VISUAL = "VISUAL"
    EDITOR = "EDITOR"
    PUBLISH = "PUBLISH"


class PipelineStatus(str, Enum):
    """Lifecycle status of a pipeline.

    Attributes:
        DRAFT: Created, stages not yet claimable.
        RUNNING: Started; stages are claimed in order.
        COMPLETE: Last stage completed or skipped. Terminal.
        FAILED: A stage failed. Terminal, no resumption.
    """

    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class StageStatus(str, Enum):
    """Lifecycle status of a single stage."""

    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


# Fixed execution order. Never reordered, never derived at runtime.
STAGE_ORDER: List[StageName] = [
    StageName.RESEARCH,
    StageName.SCRIPT,
    StageName.VOICE,
    StageName.MUSIC,
    StageName.VISUAL,
    StageName.EDITOR,
    StageName.PUBLISH,
]

# Attribution percentage granted to the agent completing each stage.
# Sums to 100.
STAGE_WEIGHTS: Dict[StageName, int] = {
    StageName.RESEARCH: 10,
    StageName.SCRIPT: 25,
    StageName.VOICE: 20,
    StageName.MUSIC: 10,
    StageName.VISUAL: 15,
    StageName.EDITOR: 15,
    StageName.PUBLISH: 5,
}

# Predecessor statuses that unlock the following stage.
DONE_STAGE_STATUSES = frozenset({StageStatus.COMPLETE, StageStatus.SKIPPED})

# Statuses from which a stage may be completed, failed or skipped.
ACTIVE_STAGE_STATUSES = frozenset({StageStatus.CLAIMED, StageStatus.RUNNING})


class Pipeline(BaseModel):
    """One end-to-end content production job.

    Attributes:
        id: Opaque identifier.
        topic: What the content is about. Cannot be blank.
        description: Optional free-form brief.
        status: Pipeline lifecycle status.
        current_stage: The first stage that is not yet complete or skipped.
            Frozen once the pipeline is COMPLETE or FAILED.
        created_at: When the pipeline was created (UTC).
        updated_at: When the pipeline row was last written (UTC).
    """

    id: str = Field(default_factory=new_id, min_length=1)

    topic: str = Field(
        ...,
        min_length=1,
        description="Subject of the content being produced",
    )

    description: Optional[str] = Field(
        default=None,
        description="Optional brief for the production agents",
    )

    status: PipelineStatus = Field(default=PipelineStatus.DRAFT)

    current_stage: Optional[StageName] = Field(default=StageName.RESEARCH)

    created_at: datetime = Field(default_factory=_utcnow)

    updated_at: datetime = Field(default_factory=_utcnow)


class Stage(BaseModel):
    """One unit of work inside a pipeline.

    Attributes:
        id: Opaque identifier.
        pipeline_id: Owning pipeline.
        name: Fixed stage name; unique within the pipeline.
        position: Index of the stage in STAGE_ORDER, which is also its
            creation order within the pipeline.
        status: Stage lifecycle status.
        agent_id: Claiming agent, set on claim.
        agent_name: Display name of the claiming agent.
        output: Structured stage output, set on completion.
        artifacts: Ordered URIs of produced files.
        error: Failure reason, set on failure.
        claimed_at: When the stage was claimed.
        started_at: When work on the stage began.
        completed_at: When the stage reached COMPLETE, FAILED or SKIPPED.
    """

    id: str = Field(default_factory=new_id, min_length=1)
    pipeline_id: str = Field(..., min_length=1)
    name: StageName
    position: int = Field(..., ge=0, lt=len(STAGE_ORDER))
    status: StageStatus = Field(default=StageStatus.PENDING)
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    output: Optional[Any] = None
    artifacts: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    claimed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Attribution(BaseModel):
    """Permanent credit for an agent that completed a stage.

    Attributes:
        percentage: Fixed weight from STAGE_WEIGHTS.
        claimed: Whether the reward for this credit was paid out. Unrelated
            to the stage being claimed.
    """

    id: str = Field(default_factory=new_id, min_length=1)
    pipeline_id: str = Field(..., min_length=1)
    stage_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    agent_name: str
    stage_name: StageName
    percentage: int = Field(..., ge=0, le=100)
    created_at: datetime = Field(default_factory=_utcnow)
    claimed: bool = False


class PipelineDetail(BaseModel):
    """A pipeline together with its ordered stages and attributions."""

    pipeline: Pipeline
    stages: List[Stage] = Field(default_factory=list)
    attributions: List[Attribution] = Field(default_factory=list)

    def stage(self, name: StageName) -> Optional[Stage]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None


class StageOutcome(BaseModel):
    """Result of a completing, failing or skipping transition."""

    stage: Stage
    pipeline: Pipeline
    attribution: Optional[Attribution] = None


class AvailableStage(BaseModel):
    """A claimable stage paired with its owning pipeline."""

    stage: Stage
    pipeline: Pipeline


def get_stage_index(name: Any) -> int:
    """Return the position of a stage name in STAGE_ORDER, or -1.

    Example:
        >>> get_stage_index(StageName.RESEARCH)
        0
        >>> get_stage_index("THUMBNAIL")
        -1
    """
    try:
        return STAGE_ORDER.index(StageName(name))
    except ValueError:
        return -1


def get_next_stage_name(current: Any) -> Optional[StageName]:
    """Return the stage after ``current``, or None for the last/unknown stage.

    Example:
        >>> get_next_stage_name(StageName.RESEARCH)
        <StageName.SCRIPT: 'SCRIPT'>
        >>> get_next_stage_name(StageName.PUBLISH) is None
        True
    """
    idx = get_stage_index(current)
    if idx == -1 or idx == len(STAGE_ORDER) - 1:
        return None
    return STAGE_ORDER[idx + 1]


def get_previous_stage_name(current: Any) -> Optional[StageName]:
    """Return the stage before ``current``, or None for the first/unknown stage."""
    idx = get_stage_index(current)
    if idx <= 0:
        return None
    return STAGE_ORDER[idx - 1]


def is_first_stage(name: Any) -> bool:
    return get_stage_index(name) == 0


def is_last_stage(name: Any) -> bool:
    return get_stage_index(name) == len(STAGE_ORDER) - 1
