"""VISUAL stage: pick footage and overlays for each script section."""

import logging
from typing import List, Literal, Optional
from urllib.parse import quote

from pydantic import Field

from cutroom.stages.base import (
    ExternalServiceError,
    PayloadModel,
    StageContext,
    StageHandler,
    StageResult,
)
from cutroom.stages.clients import PexelsClient
from cutroom.stages.models import Overlay, OverlayStyle, VideoClip, VisualOutput
from cutroom.state.models import StageName


logger = logging.getLogger(__name__)


# Headings stay on screen for at most this many seconds
MAX_HEADING_SECONDS = 3

STOP_WORDS = frozenset({
    "show", "display", "for", "the", "a", "an", "with", "and", "or",
    "animation", "b-roll", "relevant", "appropriate", "video", "image",
})


class SectionCue(PayloadModel):
    heading: Optional[str] = None
    visual_cue: str
    duration: float = Field(..., ge=0)


class ScriptSections(PayloadModel):
    body: List[SectionCue]


class VisualInput(PayloadModel):
    script: ScriptSections
    style: Optional[Literal["stock", "generated", "mixed"]] = None


def extract_keywords(visual_cue: str) -> str:
    """Reduce a visual cue to up to three search keywords."""
    words = [
        word
        for word in visual_cue.lower().split()
        if len(word) > 3 and word not in STOP_WORDS
    ]
    return " ".join(words[:3])


class VisualStage(StageHandler):
    name = StageName.VISUAL
    input_schema = VisualInput
    upstream_inputs = {"script": StageName.SCRIPT}

    def __init__(
        self,
        stock: Optional[PexelsClient] = None,
        media_base_url: str = "https://media.cutroom.local",
    ):
        self.stock = stock
        self.media_base_url = media_base_url.rstrip("/")

    async def execute(self, context: StageContext) -> StageResult:
        try:
            params = VisualInput.model_validate(context.input)
            style = params.style or "stock"
            search = self.stock is not None and style != "generated" and not context.dry_run

            clips: List[VideoClip] = []
            overlays: List[Overlay] = []
            current_time = 0.0

            for section in params.script.body:
                clip = None
                if search:
                    clip = await self._find_stock_clip(context, section, current_time)
                if clip is None:
                    clip = self._placeholder_clip(section, current_time)
                clips.append(clip)

                if section.heading:
                    overlays.append(
                        Overlay(
                            type="text",
                            content=section.heading,
                            start_time=current_time,
                            duration=min(MAX_HEADING_SECONDS, section.duration),
                            style=OverlayStyle(),
                        )
                    )

                current_time += section.duration

            output = VisualOutput(clips=clips, images=[], overlays=overlays)
            return StageResult(
                success=True,
                output=output.to_payload(),
                metadata={
                    "style": style,
                    "clip_count": len(clips),
                    "overlay_count": len(overlays),
                    "total_duration": current_time,
                },
            )
        except Exception as e:
            logger.error(
                "Visual stage failed",
                extra={"stage_id": context.stage_id, "error": str(e)},
            )
            return StageResult.failure(str(e))

    async def close(self) -> None:
        if self.stock is not None:
            await self.stock.close()

    async def _find_stock_clip(
        self,
        context: StageContext,
        section: SectionCue,
        start_time: float,
    ) -> Optional[VideoClip]:
        keywords = extract_keywords(section.visual_cue)
        if not keywords:
            return None
        try:
            video = await self.stock.search_video(keywords)
        except ExternalServiceError as e:
            logger.warning(
                "Stock footage search failed, using placeholder",
                extra={"stage_id": context.stage_id, "query": keywords, "error": str(e)},
            )
            return None
        if video is None:
            return None
        return VideoClip(
            url=video.url,
            duration=section.duration,
            start_time=start_time,
            description=section.visual_cue,
            source="pexels",
        )

    def _placeholder_clip(self, section: SectionCue, start_time: float) -> VideoClip:
        return VideoClip(
            url=f"{self.media_base_url}/placeholder/clip?cue={quote(section.visual_cue)}",
            duration=section.duration,
            start_time=start_time,
            description=section.visual_cue,
            source="placeholder",
        )
