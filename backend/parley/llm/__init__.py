"""LLM module - provides unified interface for LLM API providers."""

from .base import LLMProvider, LLMMessage, LLMResponse
from .openai_provider import OpenAIProvider
from .ollama_provider import OllamaProvider
from .factory import create_llm_provider
from .text_generator import LLMTextGenerator, TextGenerator, UnconfiguredTextGenerator

__all__ = [
    'LLMProvider',
    'LLMMessage',
    'LLMResponse',
    'OpenAIProvider',
    'OllamaProvider',
    'create_llm_provider',
    'TextGenerator',
    'LLMTextGenerator',
    'UnconfiguredTextGenerator',
]
