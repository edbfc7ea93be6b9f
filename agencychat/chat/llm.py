"""
Language-model backend used by the AI assistant.
"""
import logging
from typing import Optional, Protocol

from openai import AsyncOpenAI

from agencychat.config import OPENAI_API_KEY, OPENAI_BASE_URL

logger = logging.getLogger(__name__)


class LLMBackend(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> str: ...


class OpenAIBackend:
    name = "openai"

    def __init__(self, api_key: str, base_url: Optional[str] = None) -> None:
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        self.client = AsyncOpenAI(**kwargs)

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        resp = await self.client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""


def build_backend(api_key: Optional[str] = OPENAI_API_KEY,
                  base_url: Optional[str] = OPENAI_BASE_URL) -> Optional[LLMBackend]:
    """Return the configured backend, or None when no API key is set."""
    if not api_key:
        logger.info("OPENAI_API_KEY not set; AI assistant will report itself unavailable.")
        return None
    return OpenAIBackend(api_key=api_key, base_url=base_url)
