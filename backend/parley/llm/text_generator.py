"""
Text generation adapter consumed by the title generator.

Anything with ``async generate(prompt, **options) -> str`` can stand in for
the LLM; failures surface as GenerationError.
"""

import logging
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from ..core.errors import GenerationError
from ..core.logging_config import truncate_large_data
from .base import LLMMessage, LLMProvider

logger = logging.getLogger(__name__)


@runtime_checkable
class TextGenerator(Protocol):
    async def generate(self, prompt: str, **options: Any) -> str:
        ...


class LLMTextGenerator:
    """Adapts an LLMProvider to the single-prompt ``generate`` contract."""

    def __init__(
        self,
        provider: LLMProvider,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        log_calls: bool = True
    ):
        self.provider = provider
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.log_calls = log_calls

    async def generate(self, prompt: str, **options: Any) -> str:
        """
        Run one prompt through the provider.

        Args:
            prompt: User prompt text
            **options: ``temperature`` and ``max_tokens`` overrides, passed through

        Returns:
            str: Generated text, stripped

        Raises:
            GenerationError: The provider failed, timed out or returned nothing
        """
        messages = []
        if self.system_prompt:
            messages.append(LLMMessage.text("system", self.system_prompt))
        messages.append(LLMMessage.text("user", prompt))

        temperature = options.pop("temperature", self.temperature)
        if self.log_calls:
            logger.debug(f"Generating with {self.provider.name}: {truncate_large_data(prompt, 500)}")

        try:
            response = await self.provider.chat_completion(
                messages, temperature=temperature, **options
            )
        except httpx.TimeoutException as e:
            raise GenerationError(f"{self.provider.name} timed out") from e
        except httpx.HTTPError as e:
            raise GenerationError(f"{self.provider.name} request failed: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise GenerationError(f"Unexpected {self.provider.name} response: {e}") from e

        text = (response.content or "").strip()
        if not text:
            raise GenerationError(f"{self.provider.name} returned an empty response")
        return text


class UnconfiguredTextGenerator:
    """Used when no provider is configured; every call fails with GenerationError."""

    def __init__(self, reason: str = "No LLM provider configured"):
        self.reason = reason

    async def generate(self, prompt: str, **options: Any) -> str:
        raise GenerationError(self.reason)
