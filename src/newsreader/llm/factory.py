"""LLM Provider 工厂."""

from newsreader.config import Settings
from newsreader.llm.base import LLMConfig, LLMNotConfiguredError, LLMProvider
from newsreader.llm.ollama import OllamaProvider
from newsreader.llm.openai import OpenAIProvider


def create_llm_provider(settings: Settings) -> LLMProvider:
    """根据配置创建 LLM Provider."""
    if settings.llm_provider == "ollama":
        config = LLMConfig(
            model=settings.ollama_model,
            temperature=0.3,
            max_tokens=settings.summary_max_tokens,
            timeout=settings.summary_timeout_seconds,
        )
        return OllamaProvider(config=config, host=settings.ollama_host)

    if not settings.openai_api_key:
        msg = "未配置 OpenAI API key"
        raise LLMNotConfiguredError(msg)

    config = LLMConfig(
        model=settings.openai_model,
        temperature=0.3,
        max_tokens=settings.summary_max_tokens,
        timeout=settings.summary_timeout_seconds,
    )
    return OpenAIProvider(
        config=config,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
    )
