"""Ollama LLM Provider."""

import httpx

from newsreader.llm.base import (
    LLMConfig,
    LLMError,
    LLMProvider,
    LLMTimeoutError,
    LLMUnavailableError,
    Message,
)


class OllamaProvider(LLMProvider):
    """Ollama 本地模型 Provider."""

    def __init__(
        self,
        config: LLMConfig,
        host: str = "http://localhost:11434",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(config)
        self.host = host.rstrip("/")
        self._client = httpx.AsyncClient(timeout=config.timeout, transport=transport)

    async def close(self) -> None:
        """关闭客户端."""
        await self._client.aclose()

    async def chat(self, messages: list[Message]) -> str:
        """对话，返回完整响应."""
        url = f"{self.host}/api/chat"
        payload = {
            "model": self.config.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_tokens,
            },
        }

        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            msg = "Ollama 请求超时"
            raise LLMTimeoutError(msg) from e
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500:
                msg = f"Ollama 服务异常: {e.response.status_code}"
                raise LLMUnavailableError(msg) from e
            msg = f"Ollama 请求失败: {e.response.status_code}"
            raise LLMError(msg) from e
        except httpx.HTTPError as e:
            msg = f"无法连接 Ollama ({self.host})"
            raise LLMUnavailableError(msg) from e

        try:
            data = response.json()
        except ValueError as e:
            msg = "Ollama 返回了无法解析的响应"
            raise LLMUnavailableError(msg) from e

        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict):
            msg = "Ollama 响应缺少 message 字段"
            raise LLMUnavailableError(msg)
        return message.get("content") or ""
