"""OpenAI LLM Provider."""

from typing import Any

import openai
from openai import AsyncOpenAI

from newsreader.llm.base import (
    LLMAuthError,
    LLMConfig,
    LLMError,
    LLMProvider,
    LLMRateLimitError,
    LLMTimeoutError,
    LLMUnavailableError,
    Message,
)


class OpenAIProvider(LLMProvider):
    """OpenAI API Provider（支持所有 OpenAI 兼容接口）."""

    def __init__(
        self,
        config: LLMConfig,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        super().__init__(config)
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=config.timeout,
            max_retries=0,
        )

    async def close(self) -> None:
        await self.client.close()

    async def chat(self, messages: list[Message]) -> str:
        """对话，返回完整响应."""
        openai_messages: list[dict[str, Any]] = [
            {"role": m.role, "content": m.content} for m in messages
        ]

        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=openai_messages,  # type: ignore[arg-type]
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except openai.AuthenticationError as e:
            msg = "OpenAI API key 无效"
            raise LLMAuthError(msg) from e
        except openai.RateLimitError as e:
            msg = "OpenAI 限流，请稍后再试"
            raise LLMRateLimitError(msg) from e
        except openai.APITimeoutError as e:
            msg = "OpenAI 请求超时"
            raise LLMTimeoutError(msg) from e
        except openai.APIConnectionError as e:
            msg = "无法连接 OpenAI 服务"
            raise LLMUnavailableError(msg) from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                msg = f"OpenAI 服务异常: {e.status_code}"
                raise LLMUnavailableError(msg) from e
            msg = f"OpenAI 请求失败: {e.status_code}"
            raise LLMError(msg) from e

        content = response.choices[0].message.content
        return content or ""
