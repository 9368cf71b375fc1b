"""Stage handler contract.

A stage handler implements the work for one stage name:
- validate(raw_input): pure schema check of the input shape
- execute(context): produce the stage output

Handlers never raise past execute(). Failed calls to generation services
raise ExternalServiceError internally and are replaced by deterministic
rule-based output; anything unrecoverable is returned as
StageResult(success=False, error=...).
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, List, Optional, Type

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cutroom.state.models import StageName


logger = logging.getLogger(__name__)


class ExternalServiceError(Exception):
    """Raised when a call to a generation service fails.

    Attributes:
        service: Name of the external service.
        status_code: HTTP status code, when the failure was an HTTP error.
    """

    def __init__(
        self,
        service: str,
        message: str,
        status_code: Optional[int] = None,
    ):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service} error: {message}")


class HandlerNotImplementedError(Exception):
    """Raised when no handler is registered for a stage name."""

    def __init__(self, stage_name: StageName):
        self.stage_name = stage_name
        super().__init__(f"No handler implemented for stage {stage_name.value}")


class PayloadModel(BaseModel):
    """Base for stage payloads.

    Payloads travel between agents as JSON with camelCase keys
    (``fullScript``, ``visualCue``); both spellings are accepted on input.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class StageArtifact(BaseModel):
    """A file produced by a stage."""

    type: str
    url: str
    name: Optional[str] = None


class StageContext(BaseModel):
    """Everything a handler receives for one execution.

    Attributes:
        pipeline_id: Owning pipeline.
        stage_id: Stage being executed.
        input: Pipeline topic/description merged with caller input and
            upstream outputs.
        previous_output: Output of the immediately preceding stage.
        config: Free-form handler options from the caller.
        dry_run: Force rule-based generation, no external calls.
    """

    pipeline_id: str
    stage_id: str
    input: Dict[str, Any] = Field(default_factory=dict)
    previous_output: Optional[Any] = None
    config: Optional[Dict[str, Any]] = None
    dry_run: bool = False


class StageResult(BaseModel):
    success: bool
    output: Optional[Any] = None
    error: Optional[str] = None
    artifacts: List[StageArtifact] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failure(cls, error: str) -> "StageResult":
        return cls(success=False, output=None, error=error)


def format_validation_errors(error: pydantic.ValidationError) -> List[str]:
    """Flatten pydantic errors into ``"path.to.field: message"`` strings."""
    messages = []
    for item in error.errors():
        path = ".".join(str(part) for part in item["loc"])
        messages.append(f"{path}: {item['msg']}" if path else item["msg"])
    return messages


class StageHandler(ABC):
    """Base class for stage handlers.

    Subclasses set ``name`` and ``input_schema`` and implement execute().
    ``upstream_inputs`` maps input keys to the stage whose output should
    fill them when the caller did not supply them.
    """

    name: ClassVar[StageName]
    input_schema: ClassVar[Type[BaseModel]]
    upstream_inputs: ClassVar[Dict[str, StageName]] = {}

    def validate(self, raw_input: Any) -> ValidationResult:
        """Check ``raw_input`` against the stage input schema. No I/O."""
        try:
            self.input_schema.model_validate(raw_input)
        except pydantic.ValidationError as e:
            return ValidationResult(valid=False, errors=format_validation_errors(e))
        return ValidationResult(valid=True)

    async def close(self) -> None:
        """Release any clients held by the handler."""

    @abstractmethod
    async def execute(self, context: StageContext) -> StageResult:
        """Run the stage. Must not raise."""
        ...
