"""Payload models exchanged between stages.

Each stage publishes its output as one of these models (dumped with
camelCase keys) and the next stage reads it back as its input.
"""

from typing import List, Literal, Optional

from pydantic import Field

from cutroom.stages.base import PayloadModel


WORDS_PER_MINUTE = 150


class ResearchOutput(PayloadModel):
    topic: str
    facts: List[str] = Field(default_factory=list)
    hooks: List[str] = Field(default_factory=list)
    target_audience: str
    estimated_duration: float = Field(60, gt=0)
    sources: List[str] = Field(default_factory=list)


class ScriptSection(PayloadModel):
    heading: str
    content: str
    visual_cue: str
    duration: float = Field(..., ge=0)


class ScriptOutput(PayloadModel):
    """A narrated short-form script.

    ``full_script`` is the hook, each section's content and the call to
    action joined by blank lines; it is what the VOICE stage reads aloud.
    """

    hook: str
    body: List[ScriptSection]
    cta: str
    full_script: str
    estimated_duration: float
    speaker_notes: List[str] = Field(default_factory=list)


class WordTimestamp(PayloadModel):
    word: str
    start: float
    end: float


class VoiceOutput(PayloadModel):
    audio_url: str
    duration: float = Field(..., ge=0)
    transcript: Optional[str] = None
    timestamps: List[WordTimestamp] = Field(default_factory=list)


class VideoClip(PayloadModel):
    url: str
    duration: float = Field(..., ge=0)
    start_time: float = 0
    description: Optional[str] = None
    source: Literal["pexels", "generated", "placeholder"] = "placeholder"


class ImageAsset(PayloadModel):
    url: str
    start_time: float = 0
    duration: float = Field(..., ge=0)
    description: Optional[str] = None


class OverlayStyle(PayloadModel):
    font_size: int = 48
    font_weight: str = "bold"
    color: str = "#ffffff"
    position: str = "bottom-center"


class Overlay(PayloadModel):
    type: Literal["text", "image"] = "text"
    content: str
    start_time: float = 0
    duration: float = Field(..., ge=0)
    style: Optional[OverlayStyle] = None


class VisualOutput(PayloadModel):
    clips: List[VideoClip] = Field(default_factory=list)
    images: List[ImageAsset] = Field(default_factory=list)
    overlays: List[Overlay] = Field(default_factory=list)


class VideoFormat(PayloadModel):
    """Output frame geometry; defaults to 9:16 portrait."""

    width: int = Field(1080, gt=0)
    height: int = Field(1920, gt=0)
    fps: int = Field(30, gt=0)


class TimelineEntry(PayloadModel):
    kind: Literal["clip", "image", "overlay"]
    start_time: float
    duration: float
    source_url: Optional[str] = None
    content: Optional[str] = None


class EditorOutput(PayloadModel):
    video_url: str
    thumbnail_url: str
    duration: float
    format: VideoFormat
    render_time: float
    audio_url: str
    timeline: List[TimelineEntry] = Field(default_factory=list)
