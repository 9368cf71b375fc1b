"""HTTP clients for the media generation services.

- ElevenLabsClient: text-to-speech with character alignment
- PexelsClient: portrait stock video search

Both raise ExternalServiceError on any failure so the calling stage can
fall back to rule-based output. A custom httpx transport can be passed in
for tests.
"""

import base64
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from cutroom.stages.base import ExternalServiceError


logger = logging.getLogger(__name__)


class SpeechResult(BaseModel):
    """Synthesized audio plus word timings derived from the alignment."""

    audio: bytes
    words: List[Dict[str, Any]]
    duration: float


class StockVideo(BaseModel):
    url: str
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None


class _ServiceClient:
    """Shared lifecycle for the service clients."""

    service = "http"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {}

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Make a request and convert every failure into ExternalServiceError."""
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ExternalServiceError(self.service, f"request failed: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                "External service returned an error",
                extra={
                    "service": self.service,
                    "status_code": response.status_code,
                    "path": path,
                },
            )
            raise ExternalServiceError(
                self.service,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response


def words_from_alignment(alignment: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Group ElevenLabs character timings into word timings."""
    characters = alignment.get("characters") or []
    starts = alignment.get("character_start_times_seconds") or []
    ends = alignment.get("character_end_times_seconds") or []

    words: List[Dict[str, Any]] = []
    current = ""
    word_start = 0.0
    word_end = 0.0
    for char, start, end in zip(characters, starts, ends):
        if char.isspace():
            if current:
                words.append({"word": current, "start": word_start, "end": word_end})
                current = ""
            continue
        if not current:
            word_start = start
        current += char
        word_end = end
    if current:
        words.append({"word": current, "start": word_start, "end": word_end})
    return words


class ElevenLabsClient(_ServiceClient):
    """ElevenLabs text-to-speech client.

    Example:
        >>> async with ElevenLabsClient(api_key="...") as tts:
        ...     result = await tts.synthesize("Hello there", voice_id="21m00Tcm4TlvDq8ikWAM")
    """

    service = "elevenlabs"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.elevenlabs.io",
        timeout: float = 30.0,
        model_id: str = "eleven_multilingual_v2",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key, base_url, timeout=timeout, transport=transport)
        self.model_id = model_id

    def _default_headers(self) -> Dict[str, str]:
        return {
            "xi-api-key": self.api_key,
            "Accept": "application/json",
        }

    async def synthesize(
        self,
        text: str,
        voice_id: str,
        speed: Optional[float] = None,
    ) -> SpeechResult:
        """Synthesize ``text`` and return audio bytes with word timings.

        Raises:
            ExternalServiceError: On HTTP failure or a malformed response.
        """
        payload: Dict[str, Any] = {"text": text, "model_id": self.model_id}
        if speed is not None:
            payload["voice_settings"] = {"speed": speed}

        response = await self._request(
            "POST",
            f"/v1/text-to-speech/{voice_id}/with-timestamps",
            json=payload,
        )

        try:
            data = response.json()
            audio = base64.b64decode(data["audio_base64"])
        except (ValueError, KeyError, TypeError) as e:
            raise ExternalServiceError(self.service, f"malformed response: {e}") from e

        words = words_from_alignment(data.get("alignment") or {})
        duration = words[-1]["end"] if words else 0.0
        return SpeechResult(audio=audio, words=words, duration=duration)


class PexelsClient(_ServiceClient):
    """Pexels stock video search client."""

    service = "pexels"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.pexels.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key, base_url, timeout=timeout, transport=transport)

    def _default_headers(self) -> Dict[str, str]:
        return {"Authorization": self.api_key}

    async def search_video(self, query: str) -> Optional[StockVideo]:
        """Return the best portrait match for ``query``, or None.

        Prefers the HD rendition of the top result.

        Raises:
            ExternalServiceError: On HTTP failure or a malformed response.
        """
        response = await self._request(
            "GET",
            "/videos/search",
            params={"query": query, "per_page": 1, "orientation": "portrait"},
        )

        try:
            videos = response.json().get("videos") or []
        except ValueError as e:
            raise ExternalServiceError(self.service, f"malformed response: {e}") from e

        if not videos:
            return None

        video = videos[0]
        files = video.get("video_files") or []
        chosen = next((f for f in files if f.get("quality") == "hd"), None)
        if chosen is None and files:
            chosen = files[0]
        if chosen is None or not chosen.get("link"):
            return None

        return StockVideo(
            url=chosen["link"],
            width=chosen.get("width"),
            height=chosen.get("height"),
            duration=video.get("duration"),
        )
