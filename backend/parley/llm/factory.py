"""
LLM Provider Factory - Creates the configured LLM provider instance.
"""

from typing import Optional
from .base import LLMProvider
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider


def create_llm_provider(
    provider: str = "ollama",
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    **kwargs
) -> Optional[LLMProvider]:
    """
    Create an LLM provider instance based on configuration.

    Args:
        provider: Provider name ("openai" or "ollama")
        api_key: API key for the provider (required for "openai")
        model: Model name (uses provider default if not specified)
        base_url: Custom base URL (uses provider default if not specified)
        **kwargs: Additional provider-specific parameters

    Returns:
        LLMProvider instance, or None if a required api_key is not configured
    """
    params = {}
    if model:
        params["model"] = model
    if base_url:
        params["base_url"] = base_url
    params.update(kwargs)

    if provider == "openai":
        if not api_key:
            return None
        return OpenAIProvider(api_key=api_key, **params)

    elif provider == "ollama":
        return OllamaProvider(api_key=api_key, **params)

    else:
        raise ValueError(f"Unsupported LLM provider: {provider}")
