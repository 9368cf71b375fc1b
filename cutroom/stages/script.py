"""SCRIPT stage: turn research into a narrated short-form script.

Target length follows a speaking rate of ~150 words per minute. Sections
are sized at ~15 seconds each, capped by the number of available facts.
"""

import logging
import math
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from cutroom.stages.base import (
    ExternalServiceError,
    PayloadModel,
    StageContext,
    StageHandler,
    StageResult,
)
from cutroom.stages.llm import LLMClient
from cutroom.stages.models import WORDS_PER_MINUTE, ScriptOutput, ScriptSection
from cutroom.state.models import StageName


logger = logging.getLogger(__name__)


SECONDS_PER_SECTION = 15

SCRIPT_SYSTEM_PROMPT = """You are a professional video scriptwriter for social media.
Write engaging, concise scripts. Always respond with valid JSON only."""

DEFAULT_SPEAKER_NOTES = [
    "Start with energy - hook needs to grab attention",
    "Pause briefly between sections",
    "End with clear call to action",
]

ScriptStyle = Literal["educational", "entertaining", "news", "tutorial"]


class ResearchSummary(PayloadModel):
    topic: str
    facts: List[str]
    hooks: List[str]
    target_audience: str
    estimated_duration: float


class ScriptInput(PayloadModel):
    research: ResearchSummary
    style: Optional[ScriptStyle] = None
    duration: Optional[float] = Field(None, gt=0)


class ScriptDraft(PayloadModel):
    """Script body before the full text is assembled."""

    hook: str
    sections: List[ScriptSection]
    cta: str
    speaker_notes: List[str] = Field(default_factory=list)


def count_words(text: str) -> int:
    return len(text.split())


def target_word_count(duration: float) -> int:
    return round(duration / 60 * WORDS_PER_MINUTE)


def generate_visual_cue(fact: str, topic: str) -> str:
    """Pick a b-roll suggestion from keywords in the fact."""
    keywords = fact.lower()

    if "growth" in keywords or "increase" in keywords:
        return "Show upward trending graph animation"
    if "expert" in keywords or "professional" in keywords:
        return "Show professional/expert b-roll"
    if "data" in keywords or "statistic" in keywords:
        return "Display statistic as text overlay"

    return f"Show relevant b-roll for: {topic}"


def generate_sections(facts: List[str], topic: str, duration: float) -> List[ScriptSection]:
    """One ~15 second section per fact, as many as the duration allows."""
    section_count = min(len(facts), math.ceil(duration / SECONDS_PER_SECTION))
    if section_count == 0:
        return []
    section_duration = round(duration / section_count)

    return [
        ScriptSection(
            heading=f"Point {i + 1}",
            content=fact,
            visual_cue=generate_visual_cue(fact, topic),
            duration=section_duration,
        )
        for i, fact in enumerate(facts[:section_count])
    ]


def rule_based_script(research: ResearchSummary, duration: float) -> ScriptDraft:
    return ScriptDraft(
        hook=research.hooks[0] if research.hooks else f"Let's talk about {research.topic}",
        sections=generate_sections(research.facts, research.topic, duration),
        cta="Follow for more!",
        speaker_notes=list(DEFAULT_SPEAKER_NOTES),
    )


def assemble_script(draft: ScriptDraft, duration: float) -> ScriptOutput:
    full_script = "\n\n".join(
        [draft.hook, *(section.content for section in draft.sections), draft.cta]
    )
    return ScriptOutput(
        hook=draft.hook,
        body=draft.sections,
        cta=draft.cta,
        full_script=full_script,
        estimated_duration=duration,
        speaker_notes=draft.speaker_notes,
    )


def _build_script_prompt(research: ResearchSummary, style: str, duration: float) -> str:
    facts = "\n".join(f"{i + 1}. {fact}" for i, fact in enumerate(research.facts))
    hooks = "\n".join(f"{i + 1}. {hook}" for i, hook in enumerate(research.hooks))
    sections = math.ceil(duration / SECONDS_PER_SECTION)

    return f"""Create a video script for a {duration:g}-second {style} short-form video.

Topic: {research.topic}
Target Audience: {research.target_audience}
Key Facts:
{facts}

Hook Options:
{hooks}

Guidelines:
- Choose or improve the best hook for grabbing attention
- Create {sections} sections (~{SECONDS_PER_SECTION} sec each)
- Each section should have a visual cue for b-roll selection
- End with a compelling call to action
- Include 3-4 speaker notes for delivery

Respond with ONLY valid JSON (no markdown) in this exact structure:
{{
  "hook": "attention-grabbing opening line",
  "sections": [
    {{"heading": "section title", "content": "what to say", "visualCue": "what to show", "duration": {SECONDS_PER_SECTION}}}
  ],
  "cta": "call to action",
  "speakerNotes": ["delivery tip 1", "delivery tip 2"]
}}"""


class ScriptStage(StageHandler):
    name = StageName.SCRIPT
    input_schema = ScriptInput
    upstream_inputs = {"research": StageName.RESEARCH}

    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm

    async def execute(self, context: StageContext) -> StageResult:
        try:
            params = ScriptInput.model_validate(context.input)
            research = params.research
            style = params.style or "educational"
            duration = params.duration or research.estimated_duration or 60
            model_used = "rule-based"

            if self.llm is not None and not context.dry_run:
                try:
                    draft = await self._draft_with_llm(research, style, duration)
                    model_used = self.llm.model_name
                except ExternalServiceError as e:
                    logger.warning(
                        "Script LLM call failed, using rule-based",
                        extra={"stage_id": context.stage_id, "error": str(e)},
                    )
                    draft = rule_based_script(research, duration)
            else:
                draft = rule_based_script(research, duration)

            script = assemble_script(draft, duration)

            return StageResult(
                success=True,
                output=script.to_payload(),
                metadata={
                    "style": style,
                    "target_words": target_word_count(duration),
                    "actual_words": count_words(script.full_script),
                    "model": model_used,
                },
            )
        except Exception as e:
            logger.error(
                "Script stage failed",
                extra={"stage_id": context.stage_id, "error": str(e)},
            )
            return StageResult.failure(str(e))

    async def _draft_with_llm(
        self, research: ResearchSummary, style: str, duration: float
    ) -> ScriptDraft:
        data: Dict[str, Any] = await self.llm.complete_json(
            SCRIPT_SYSTEM_PROMPT, _build_script_prompt(research, style, duration)
        )
        try:
            return ScriptDraft.model_validate(data)
        except ValueError as e:
            raise ExternalServiceError("openai", f"Response validation failed: {e}") from e
