"""LLM 抽象层."""

from newsreader.llm.base import (
    LLMAuthError,
    LLMConfig,
    LLMError,
    LLMNotConfiguredError,
    LLMProvider,
    LLMRateLimitError,
    LLMTimeoutError,
    LLMUnavailableError,
    Message,
)
from newsreader.llm.factory import create_llm_provider
from newsreader.llm.ollama import OllamaProvider
from newsreader.llm.openai import OpenAIProvider

__all__ = [
    "LLMAuthError",
    "LLMConfig",
    "LLMError",
    "LLMNotConfiguredError",
    "LLMProvider",
    "LLMRateLimitError",
    "LLMTimeoutError",
    "LLMUnavailableError",
    "Message",
    "OllamaProvider",
    "OpenAIProvider",
    "create_llm_provider",
]
