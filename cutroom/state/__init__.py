"""Pipeline state machine and persistence.

This module manages pipeline progression through the seven production stages:
- RESEARCH → SCRIPT → VOICE → MUSIC → VISUAL → EDITOR → PUBLISH

State is persisted to PostgreSQL (or kept in memory for local development)
with status-guarded conditional updates for concurrent claim protection.
"""

from cutroom.state.models import (
    STAGE_ORDER,
    STAGE_WEIGHTS,
    Attribution,
    AvailableStage,
    Pipeline,
    PipelineDetail,
    PipelineStatus,
    Stage,
    StageName,
    StageOutcome,
    StageStatus,
    get_next_stage_name,
    get_previous_stage_name,
    get_stage_index,
)
from cutroom.state.machine import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    OrderingViolationError,
    PermissionDeniedError,
    PipelineError,
    PipelineRepository,
    PipelineStateMachine,
    ValidationError,
)
from cutroom.state.memory import InMemoryPipelineRepository
from cutroom.state.repository import (
    DatabaseError,
    PostgresPipelineRepository,
)

__all__ = [
    # Models
    "STAGE_ORDER",
    "STAGE_WEIGHTS",
    "Attribution",
    "AvailableStage",
    "Pipeline",
    "PipelineDetail",
    "PipelineStatus",
    "Stage",
    "StageName",
    "StageOutcome",
    "StageStatus",
    "get_next_stage_name",
    "get_previous_stage_name",
    "get_stage_index",
    # State machine
    "ConflictError",
    "InvalidStateError",
    "NotFoundError",
    "OrderingViolationError",
    "PermissionDeniedError",
    "PipelineError",
    "PipelineRepository",
    "PipelineStateMachine",
    "ValidationError",
    # Repositories
    "DatabaseError",
    "InMemoryPipelineRepository",
    "PostgresPipelineRepository",
]
