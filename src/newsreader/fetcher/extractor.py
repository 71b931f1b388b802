"""全文提取器."""

import asyncio
import re
from concurrent.futures import ThreadPoolExecutor

import httpx
from pydantic import BaseModel
from trafilatura import extract

from newsreader.utils.html_parser import count_words

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class FullTextResult(BaseModel):
    """全文抓取结果."""

    success: bool
    content: str | None = None  # 纯文本版本
    content_html: str | None = None  # HTML 版本
    word_count: int = 0
    error: str | None = None
    error_reason: str | None = None  # timeout|http_error|invalid_url|extraction_failed|exception


class FullTextExtractor:
    """下载网页并用 trafilatura 提取正文."""

    _executor = ThreadPoolExecutor(max_workers=4)

    def __init__(
        self,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def fetch(self, url: str) -> FullTextResult:
        """抓取指定 URL 的全文."""
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                downloaded = response.text
        except httpx.TimeoutException:
            return FullTextResult(success=False, error="下载页面超时", error_reason="timeout")
        except httpx.HTTPStatusError as e:
            return FullTextResult(
                success=False,
                error=f"下载页面失败: HTTP {e.response.status_code}",
                error_reason="http_error",
            )
        except httpx.HTTPError as e:
            return FullTextResult(
                success=False,
                error=f"下载页面失败: {type(e).__name__}",
                error_reason="http_error",
            )
        except httpx.InvalidURL as e:
            return FullTextResult(
                success=False,
                error=f"原文链接无效: {e}",
                error_reason="invalid_url",
            )

        # trafilatura 是同步库，放到线程池执行
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.extract_html, downloaded)

    def extract_html(self, downloaded: str) -> FullTextResult:
        """从已下载的 HTML 中提取正文."""
        try:
            html_content = extract(
                downloaded,
                include_comments=False,
                include_tables=True,
                include_images=True,
                include_links=True,
                output_format="html",
                favor_precision=False,
            )
            text_content = extract(
                downloaded,
                include_comments=False,
                include_tables=True,
                output_format="txt",
                favor_precision=False,
            )
        except Exception as e:
            return FullTextResult(success=False, error=str(e), error_reason="exception")

        if not html_content and not text_content:
            return FullTextResult(
                success=False,
                error="无法从页面内容中提取正文",
                error_reason="extraction_failed",
            )

        if html_content:
            html_content = self._clean_html(html_content)
        if text_content:
            text_content = self._clean_text(text_content)

        return FullTextResult(
            success=True,
            content=text_content,
            content_html=html_content,
            word_count=count_words(text_content or ""),
        )

    def _clean_html(self, html: str) -> str:
        html = re.sub(r"\n\s*\n", "\n\n", html)
        # 空标签
        html = re.sub(r"<(\w+)>\s*</\1>", "", html)
        return html.strip()

    def _clean_text(self, text: str) -> str:
        text = re.sub(r"\n{3,}", "\n\n", text)
        lines = [line.strip() for line in text.split("\n")]
        text = "\n".join(lines)
        # 控制字符
        text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f]", "", text)
        return text.strip()
