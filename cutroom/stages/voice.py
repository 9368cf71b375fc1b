"""VOICE stage: narrate the script.

With an ElevenLabs key the audio is synthesized and written under the
media directory; otherwise a placeholder URL is returned with timings
estimated from the speaking rate.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import Field

from cutroom.stages.base import (
    ExternalServiceError,
    PayloadModel,
    StageArtifact,
    StageContext,
    StageHandler,
    StageResult,
)
from cutroom.stages.clients import ElevenLabsClient
from cutroom.stages.models import WORDS_PER_MINUTE, VoiceOutput, WordTimestamp
from cutroom.state.models import StageName


logger = logging.getLogger(__name__)


def _write_audio(target: Path, audio: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(audio)

class ScriptText(PayloadModel):
    full_script: str = Field(..., min_length=1)


class VoiceInput(PayloadModel):
    script: ScriptText
    voice_id: Optional[str] = None
    speed: Optional[float] = Field(None, ge=0.5, le=2.0)


def estimate_timestamps(words: List[str]) -> List[WordTimestamp]:
    """Evenly spaced word timings at the nominal speaking rate."""
    seconds_per_word = 60 / WORDS_PER_MINUTE
    return [
        WordTimestamp(
            word=word,
            start=round(i * seconds_per_word, 2),
            end=round((i + 1) * seconds_per_word, 2),
        )
        for i, word in enumerate(words)
    ]


class VoiceStage(StageHandler):
    """Text-to-speech narration.

    Attributes:
        tts: ElevenLabs client, or None for placeholder output.
        default_voice_id: Voice used when the input names none.
        media_base_url: Public URL prefix for generated media.
        media_dir: Local directory that backs media_base_url.
    """

    name = StageName.VOICE
    input_schema = VoiceInput
    upstream_inputs = {"script": StageName.SCRIPT}

    def __init__(
        self,
        tts: Optional[ElevenLabsClient] = None,
        default_voice_id: str = "21m00Tcm4TlvDq8ikWAM",
        media_base_url: str = "https://media.cutroom.local",
        media_dir: str = "media",
    ):
        self.tts = tts
        self.default_voice_id = default_voice_id
        self.media_base_url = media_base_url.rstrip("/")
        self.media_dir = Path(media_dir)

    async def execute(self, context: StageContext) -> StageResult:
        try:
            params = VoiceInput.model_validate(context.input)
            text = params.script.full_script
            voice_id = params.voice_id or self.default_voice_id
            provider = "placeholder"

            voice: Optional[VoiceOutput] = None
            if self.tts is not None and not context.dry_run:
                try:
                    voice = await self._synthesize(context, text, voice_id, params.speed)
                    provider = "elevenlabs"
                except ExternalServiceError as e:
                    logger.warning(
                        "Voice synthesis failed, using placeholder",
                        extra={"stage_id": context.stage_id, "error": str(e)},
                    )
            if voice is None:
                voice = self._placeholder(context, text)

            return StageResult(
                success=True,
                output=voice.to_payload(),
                artifacts=[StageArtifact(type="audio", url=voice.audio_url, name="voice.mp3")],
                metadata={
                    "provider": provider,
                    "voice_id": voice_id,
                    "word_count": len(text.split()),
                },
            )
        except Exception as e:
            logger.error(
                "Voice stage failed",
                extra={"stage_id": context.stage_id, "error": str(e)},
            )
            return StageResult.failure(str(e))

    async def close(self) -> None:
        if self.tts is not None:
            await self.tts.close()

    def _placeholder(self, context: StageContext, text: str) -> VoiceOutput:
        words = text.split()
        return VoiceOutput(
            audio_url=f"{self.media_base_url}/placeholder/{context.pipeline_id}/voice.mp3",
            duration=round(len(words) / WORDS_PER_MINUTE * 60, 1),
            transcript=text,
            timestamps=estimate_timestamps(words),
        )

    async def _synthesize(
        self,
        context: StageContext,
        text: str,
        voice_id: str,
        speed: Optional[float],
    ) -> VoiceOutput:
        speech = await self.tts.synthesize(text, voice_id=voice_id, speed=speed)

        relative = Path(context.pipeline_id) / "voice.mp3"
        target = self.media_dir / relative
        await asyncio.to_thread(_write_audio, target, speech.audio)

        logger.info(
            "Voice audio written",
            extra={
                "stage_id": context.stage_id,
                "path": str(target),
                "bytes": len(speech.audio),
            },
        )

        return VoiceOutput(
            audio_url=f"{self.media_base_url}/{relative.as_posix()}",
            duration=round(speech.duration, 2),
            transcript=text,
            timestamps=[WordTimestamp.model_validate(w) for w in speech.words],
        )
