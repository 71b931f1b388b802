"""LLM 抽象基类."""

from abc import ABC, abstractmethod

from pydantic import BaseModel


class Message(BaseModel):
    """对话消息."""

    role: str  # "system" | "user" | "assistant"
    content: str


class LLMConfig(BaseModel):
    """LLM 配置."""

    model: str
    temperature: float = 0.3
    max_tokens: int = 400
    timeout: float = 30.0


class LLMError(Exception):
    """LLM 调用失败."""

    code = "llm_error"


class LLMNotConfiguredError(LLMError):
    """未配置 API key."""

    code = "not_configured"


class LLMAuthError(LLMError):
    """API key 无效."""

    code = "invalid_api_key"


class LLMRateLimitError(LLMError):
    """触发限流."""

    code = "rate_limit"


class LLMUnavailableError(LLMError):
    """服务不可达."""

    code = "service_unavailable"


class LLMTimeoutError(LLMUnavailableError):
    """请求超时."""

    code = "timeout"


class LLMProvider(ABC):
    """LLM 服务提供者抽象基类."""

    def __init__(self, config: LLMConfig) -> None:
        self.config = config

    @property
    def model_name(self) -> str:
        return self.config.model

    @abstractmethod
    async def chat(self, messages: list[Message]) -> str:
        """对话，返回完整响应.

        Raises:
            LLMError: 各子类对应具体失败原因
        """
        ...

    async def close(self) -> None:
        """释放连接."""
