"""Stage handlers and the registry that maps stage names to them.

MUSIC and PUBLISH have no handler; agents complete those stages by
submitting output directly.
"""

from typing import Dict, Iterable, List, Optional

from cutroom.config import CutroomSettings
from cutroom.stages.base import (
    ExternalServiceError,
    HandlerNotImplementedError,
    StageArtifact,
    StageContext,
    StageHandler,
    StageResult,
    ValidationResult,
)
from cutroom.stages.clients import ElevenLabsClient, PexelsClient
from cutroom.stages.editor import EditorStage
from cutroom.stages.llm import LLMClient
from cutroom.stages.research import ResearchStage
from cutroom.stages.script import ScriptStage
from cutroom.stages.visual import VisualStage
from cutroom.stages.voice import VoiceStage
from cutroom.state.models import StageName


class StageRegistry:
    """Lookup from stage name to handler.

    Example:
        >>> registry = StageRegistry([ResearchStage(), ScriptStage()])
        >>> registry.has(StageName.SCRIPT)
        True
        >>> registry.get(StageName.MUSIC) is None
        True
    """

    def __init__(self, handlers: Iterable[StageHandler] = ()):
        self._handlers: Dict[StageName, StageHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: StageHandler) -> None:
        self._handlers[handler.name] = handler

    def get(self, name: StageName) -> Optional[StageHandler]:
        return self._handlers.get(StageName(name))

    def has(self, name: StageName) -> bool:
        return StageName(name) in self._handlers

    def require(self, name: StageName) -> StageHandler:
        """Return the handler for ``name``.

        Raises:
            HandlerNotImplementedError: If no handler is registered.
        """
        handler = self.get(name)
        if handler is None:
            raise HandlerNotImplementedError(StageName(name))
        return handler

    async def close(self) -> None:
        for handler in self._handlers.values():
            await handler.close()

    @property
    def stage_names(self) -> List[StageName]:
        return list(self._handlers)


def build_stage_registry(settings: CutroomSettings) -> StageRegistry:
    """Build the default registry, wiring in whichever services are configured."""
    llm = LLMClient.from_settings(settings)

    tts = None
    if settings.elevenlabs_api_key:
        tts = ElevenLabsClient(
            api_key=settings.elevenlabs_api_key,
            timeout=settings.http_timeout_seconds,
        )

    stock = None
    if settings.pexels_api_key:
        stock = PexelsClient(
            api_key=settings.pexels_api_key,
            timeout=settings.http_timeout_seconds,
        )

    return StageRegistry(
        [
            ResearchStage(llm=llm),
            ScriptStage(llm=llm),
            VoiceStage(
                tts=tts,
                default_voice_id=settings.elevenlabs_voice_id,
                media_base_url=settings.media_base_url,
                media_dir=settings.media_dir,
            ),
            VisualStage(stock=stock, media_base_url=settings.media_base_url),
            EditorStage(media_base_url=settings.media_base_url),
        ]
    )


__all__ = [
    "EditorStage",
    "ExternalServiceError",
    "HandlerNotImplementedError",
    "ResearchStage",
    "ScriptStage",
    "StageArtifact",
    "StageContext",
    "StageHandler",
    "StageRegistry",
    "StageResult",
    "ValidationResult",
    "VisualStage",
    "VoiceStage",
    "build_stage_registry",
]
