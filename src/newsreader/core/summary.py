"""AI 摘要服务."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from newsreader.config import Settings, get_settings
from newsreader.core.content import ArticleNotFoundError, ContentService
from newsreader.llm.base import LLMProvider, LLMUnavailableError, Message
from newsreader.llm.factory import create_llm_provider
from newsreader.models.article import Article
from newsreader.models.feed import Feed
from newsreader.utils.html_parser import html_to_text

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a news summarization assistant. Write concise, objective summaries."

SUMMARY_PROMPT = """Create an objective summary of the following article in {min_words}-{max_words} words.
Focus on the key facts and conclusions. Respond with the summary only.

Article Details:
Title: {title}
Author: {author}
Published: {published}

Article Content:
{content}"""


class NoContentError(Exception):
    """文章没有可用于摘要的内容."""


@dataclass
class SummaryResult:
    """摘要结果."""

    summary: str
    model: str
    cached: bool
    generated_at: datetime | None
    full_content_fetched: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "summary": self.summary,
            "model": self.model,
            "cached": self.cached,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "full_content_fetched": self.full_content_fetched,
        }


class SummaryService:
    """生成并缓存文章摘要."""

    def __init__(
        self,
        session: AsyncSession,
        provider: LLMProvider | None = None,
        content_service: ContentService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self._provider = provider
        self.content_service = content_service or ContentService(session, settings=self.settings)

    @property
    def provider(self) -> LLMProvider:
        # 延迟创建：命中缓存时不需要 API key
        if self._provider is None:
            self._provider = create_llm_provider(self.settings)
        return self._provider

    async def summarize(self, article_id: str, regenerate: bool = False) -> SummaryResult:
        """
        生成文章摘要.

        Raises:
            ArticleNotFoundError: 文章不存在
            NoContentError: 没有可用内容
            LLMError: 模型调用失败（具体子类见 newsreader.llm.base）
        """
        article = await self.session.get(Article, article_id)
        if article is None:
            msg = f"文章不存在: {article_id}"
            raise ArticleNotFoundError(msg)

        if article.ai_summary and not regenerate:
            return SummaryResult(
                summary=article.ai_summary,
                model=article.summary_model or "",
                cached=True,
                generated_at=article.summary_generated_at,
            )

        fetched = await self._ensure_full_content(article)
        content = self._best_content(article)
        if not content:
            msg = "文章没有可用于摘要的内容"
            raise NoContentError(msg)

        prompt = self._build_prompt(article, content)
        summary = await self.provider.chat(
            [
                Message(role="system", content=SYSTEM_PROMPT),
                Message(role="user", content=prompt),
            ]
        )
        summary = summary.strip()
        if not summary:
            msg = "模型返回了空摘要"
            raise LLMUnavailableError(msg)

        now = datetime.utcnow()
        article.ai_summary = summary
        article.summary_model = self.provider.model_name
        article.summary_generated_at = now
        article.updated_at = now
        await self.session.commit()
        logger.info(f"已生成文章 {article_id} 的摘要 ({article.summary_model})")

        return SummaryResult(
            summary=summary,
            model=article.summary_model,
            cached=False,
            generated_at=now,
            full_content_fetched=fetched,
        )

    async def _ensure_full_content(self, article: Article) -> bool:
        """只提供摘要的 Feed 先自动抓取全文；失败时继续用 RSS 内容."""
        if article.has_full_content:
            return False
        feed = await self.session.get(Feed, article.feed_id)
        if feed is None or not feed.is_partial_content:
            return False

        result = await self.content_service.fetch_content(article.id, fetch_type="auto")
        if not result.success:
            logger.info(f"自动抓取全文失败，使用 RSS 内容: {article.id}")
        return result.success

    def _best_content(self, article: Article) -> str:
        raw = article.full_content if article.has_full_content else None
        text = html_to_text(raw or article.content or "")
        return text[: self.settings.summary_max_content_chars]

    def _build_prompt(self, article: Article, content: str) -> str:
        return SUMMARY_PROMPT.format(
            min_words=self.settings.summary_min_words,
            max_words=self.settings.summary_max_words,
            title=article.title,
            author=article.author or "Unknown",
            published=article.published_at.isoformat() if article.published_at else "Unknown",
            content=content,
        )

    async def close(self) -> None:
        """释放本服务创建的 LLM 客户端."""
        if self._provider is not None:
            await self._provider.close()
