"""RESEARCH stage: gather facts and hook ideas for a topic."""

import logging
from typing import Any, Dict, Optional

from pydantic import Field

from cutroom.stages.base import (
    ExternalServiceError,
    PayloadModel,
    StageContext,
    StageHandler,
    StageResult,
)
from cutroom.stages.llm import LLMClient
from cutroom.stages.models import ResearchOutput
from cutroom.state.models import StageName


logger = logging.getLogger(__name__)


RESEARCH_SYSTEM_PROMPT = """You are a researcher preparing material for short-form educational videos.
Find accurate, surprising and concrete facts. Always respond with valid JSON only."""


class ResearchInput(PayloadModel):
    topic: str = Field(..., min_length=1)
    description: Optional[str] = None
    target_audience: Optional[str] = None
    duration: Optional[float] = Field(None, gt=0)


def _build_research_prompt(params: ResearchInput, duration: float) -> str:
    description = params.description or "No additional description."
    return f"""Research the following topic for a {duration:g}-second vertical video.

Topic: {params.topic}
Description: {description}

Respond with ONLY valid JSON (no markdown) in this exact structure:
{{
  "facts": ["5-7 concise, verifiable facts"],
  "hooks": ["3 attention-grabbing opening lines"],
  "targetAudience": "who this video is for",
  "sources": ["where the facts can be verified"]
}}"""


def rule_based_research(params: ResearchInput, duration: float) -> ResearchOutput:
    """Deterministic research skeleton used without an LLM."""
    topic = params.topic
    facts = [
        f"{topic} is more widely used than most people realize.",
        f"The history of {topic} goes back further than you might expect.",
        f"Experts disagree on the most important aspect of {topic}.",
        f"Recent data shows growing interest in {topic}.",
        f"A common misconception about {topic} is that it is only for specialists.",
    ]
    if params.description:
        facts.insert(0, params.description.strip())

    return ResearchOutput(
        topic=topic,
        facts=facts,
        hooks=[
            f"You've been thinking about {topic} all wrong.",
            f"Here's what nobody tells you about {topic}.",
            f"{topic} in {duration:g} seconds.",
        ],
        target_audience=params.target_audience or "General audience curious about the topic",
        estimated_duration=duration,
        sources=[],
    )


class ResearchStage(StageHandler):
    name = StageName.RESEARCH
    input_schema = ResearchInput

    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm

    async def execute(self, context: StageContext) -> StageResult:
        try:
            params = ResearchInput.model_validate(context.input)
            duration = params.duration or 60
            model_used = "rule-based"

            if self.llm is not None and not context.dry_run:
                try:
                    research = await self._research_with_llm(params, duration)
                    model_used = self.llm.model_name
                except ExternalServiceError as e:
                    logger.warning(
                        "Research LLM call failed, using rule-based",
                        extra={"stage_id": context.stage_id, "error": str(e)},
                    )
                    research = rule_based_research(params, duration)
            else:
                research = rule_based_research(params, duration)

            return StageResult(
                success=True,
                output=research.to_payload(),
                metadata={"model": model_used, "fact_count": len(research.facts)},
            )
        except Exception as e:
            logger.error(
                "Research stage failed",
                extra={"stage_id": context.stage_id, "error": str(e)},
            )
            return StageResult.failure(str(e))

    async def _research_with_llm(
        self, params: ResearchInput, duration: float
    ) -> ResearchOutput:
        data: Dict[str, Any] = await self.llm.complete_json(
            RESEARCH_SYSTEM_PROMPT, _build_research_prompt(params, duration)
        )
        try:
            research = ResearchOutput.model_validate(
                {
                    "topic": params.topic,
                    "facts": data.get("facts") or [],
                    "hooks": data.get("hooks") or [],
                    "targetAudience": data.get("targetAudience")
                    or params.target_audience
                    or "General audience",
                    "estimatedDuration": duration,
                    "sources": data.get("sources") or [],
                }
            )
        except ValueError as e:
            raise ExternalServiceError("openai", f"Response validation failed: {e}") from e

        if not research.facts:
            raise ExternalServiceError("openai", "Response contained no facts")
        return research
