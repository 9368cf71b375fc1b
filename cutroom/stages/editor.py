"""EDITOR stage: assemble narration, footage and overlays into a render plan.

The plan lays the clips end to end under the narration, looping the
footage when it is shorter than the audio, and names the URLs the final
video and thumbnail are published at.
"""

import logging
import time
from typing import List, Optional

import pydantic
from pydantic import Field

from cutroom.stages.base import (
    PayloadModel,
    StageArtifact,
    StageContext,
    StageHandler,
    StageResult,
    format_validation_errors,
)
from cutroom.stages.models import (
    EditorOutput,
    ImageAsset,
    Overlay,
    TimelineEntry,
    VideoClip,
    VideoFormat,
)
from cutroom.state.models import StageName


logger = logging.getLogger(__name__)


class VoiceTrack(PayloadModel):
    audio_url: str = Field(..., min_length=1)
    duration: float = Field(..., gt=0)
    transcript: Optional[str] = None


class VisualTracks(PayloadModel):
    clips: List[VideoClip] = Field(default_factory=list)
    images: List[ImageAsset] = Field(default_factory=list)
    overlays: List[Overlay] = Field(default_factory=list)


class EditorInput(PayloadModel):
    voice: VoiceTrack
    visual: VisualTracks
    format: Optional[VideoFormat] = None


def build_timeline(
    clips: List[VideoClip],
    images: List[ImageAsset],
    overlays: List[Overlay],
    duration: float,
) -> List[TimelineEntry]:
    """Lay clips back to back until ``duration`` is covered.

    Clips repeat in order when their total is shorter than the audio and
    the last one is trimmed to end with it. Images and overlays keep their
    own timing, clamped to the video length.
    """
    timeline: List[TimelineEntry] = []

    usable = [clip for clip in clips if clip.duration > 0]
    cursor = 0.0
    index = 0
    while usable and cursor < duration:
        clip = usable[index % len(usable)]
        length = min(clip.duration, duration - cursor)
        timeline.append(
            TimelineEntry(
                kind="clip",
                start_time=round(cursor, 3),
                duration=round(length, 3),
                source_url=clip.url,
            )
        )
        cursor += length
        index += 1

    for image in images:
        if image.start_time < duration:
            timeline.append(
                TimelineEntry(
                    kind="image",
                    start_time=image.start_time,
                    duration=min(image.duration, duration - image.start_time),
                    source_url=image.url,
                )
            )

    for overlay in overlays:
        if overlay.start_time < duration:
            timeline.append(
                TimelineEntry(
                    kind="overlay",
                    start_time=overlay.start_time,
                    duration=min(overlay.duration, duration - overlay.start_time),
                    content=overlay.content,
                )
            )

    return timeline


class EditorStage(StageHandler):
    name = StageName.EDITOR
    input_schema = EditorInput
    upstream_inputs = {"voice": StageName.VOICE, "visual": StageName.VISUAL}

    def __init__(self, media_base_url: str = "https://media.cutroom.local"):
        self.media_base_url = media_base_url.rstrip("/")

    async def execute(self, context: StageContext) -> StageResult:
        started = time.perf_counter()
        try:
            params = EditorInput.model_validate(context.input)
        except pydantic.ValidationError as e:
            return StageResult.failure("; ".join(format_validation_errors(e)))

        if not params.visual.clips:
            return StageResult.failure("Visual output has no clips to edit")

        try:
            video_format = params.format or VideoFormat()
            duration = params.voice.duration
            timeline = build_timeline(
                params.visual.clips,
                params.visual.images,
                params.visual.overlays,
                duration,
            )

            base = f"{self.media_base_url}/{context.pipeline_id}"
            output = EditorOutput(
                video_url=f"{base}/final.mp4",
                thumbnail_url=f"{base}/thumbnail.jpg",
                duration=duration,
                format=video_format,
                render_time=round(time.perf_counter() - started, 4),
                audio_url=params.voice.audio_url,
                timeline=timeline,
            )

            logger.info(
                "Render plan built",
                extra={
                    "stage_id": context.stage_id,
                    "duration": duration,
                    "timeline_entries": len(timeline),
                },
            )

            return StageResult(
                success=True,
                output=output.to_payload(),
                artifacts=[
                    StageArtifact(type="video", url=output.video_url, name="final.mp4"),
                    StageArtifact(type="image", url=output.thumbnail_url, name="thumbnail.jpg"),
                ],
                metadata={
                    "resolution": f"{video_format.width}x{video_format.height}",
                    "fps": video_format.fps,
                    "clip_count": len(params.visual.clips),
                },
            )
        except Exception as e:
            logger.error(
                "Editor stage failed",
                extra={"stage_id": context.stage_id, "error": str(e)},
            )
            return StageResult.failure(str(e))
