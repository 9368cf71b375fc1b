"""LLM access for the text-generating stages.

Wraps LangChain's ChatOpenAI so RESEARCH and SCRIPT can ask for a JSON
document and get back a dict, or an ExternalServiceError they can fall
back from.
"""

import json
import logging
from typing import Any, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from cutroom.config import CutroomSettings
from cutroom.stages.base import ExternalServiceError


logger = logging.getLogger(__name__)


def parse_llm_json(response_text: str) -> dict[str, Any]:
    """Parse an LLM response into a dictionary.

    Strips markdown code fences that models like to wrap JSON in.

    Raises:
        json.JSONDecodeError: If the response is not valid JSON.
        ValueError: If the JSON is not an object.
    """
    text = response_text.strip()

    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]

    if text.endswith("```"):
        text = text[:-3]

    data = json.loads(text.strip())
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class LLMClient:
    """JSON-producing chat client.

    Attributes:
        api_key: OpenAI API key.
        model_name: Chat model to use.
        base_url: Optional OpenAI-compatible endpoint.
        timeout: Request timeout in seconds.
        temperature: Sampling temperature.
    """

    def __init__(
        self,
        api_key: str,
        model_name: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.model_name = model_name
        self.base_url = base_url
        self.timeout = timeout
        self.temperature = temperature
        self._llm: Optional[ChatOpenAI] = None

    @classmethod
    def from_settings(cls, settings: CutroomSettings) -> Optional["LLMClient"]:
        """Build a client, or None when no API key is configured."""
        if not settings.openai_api_key:
            return None
        return cls(
            api_key=settings.openai_api_key,
            model_name=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout=settings.llm_timeout_seconds,
            temperature=settings.llm_temperature,
        )

    @property
    def llm(self) -> ChatOpenAI:
        if self._llm is None:
            self._llm = ChatOpenAI(
                base_url=self.base_url,
                model=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                api_key=self.api_key,
            )
        return self._llm

    async def complete_json(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        """Send one system+user exchange and parse the reply as JSON.

        Raises:
            ExternalServiceError: If the call fails or the reply is not a
                JSON object.
        """
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_prompt),
        ]

        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            raise ExternalServiceError("openai", f"LLM invocation failed: {e}") from e

        response_text = response.content
        if not isinstance(response_text, str):
            raise ExternalServiceError(
                "openai", f"Unexpected response type: {type(response_text)}"
            )

        try:
            return parse_llm_json(response_text)
        except ValueError as e:
            logger.warning(
                "Failed to parse LLM response as JSON",
                extra={"response_preview": response_text[:200], "error": str(e)},
            )
            raise ExternalServiceError("openai", f"Invalid JSON response: {e}") from e
