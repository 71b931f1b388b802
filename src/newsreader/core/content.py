"""全文抓取服务：缓存、并发去重、超时降级和抓取日志."""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from newsreader.config import Settings, get_settings
from newsreader.fetcher.extractor import FullTextExtractor, FullTextResult
from newsreader.models.article import Article
from newsreader.models.feed import Feed
from newsreader.models.usage import FetchLog

logger = logging.getLogger(__name__)


class ArticleNotFoundError(Exception):
    """文章不存在."""


@dataclass
class ContentResult:
    """抓取结果.

    失败时 content 为 RSS 原始内容（fallback=True），调用方照常展示。
    """

    success: bool
    content: str | None = None
    cached: bool = False
    fallback: bool = False
    timed_out: bool = False
    error: str | None = None
    error_reason: str | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "content": self.content,
            "cached": self.cached,
        }
        if self.fallback:
            data["fallback"] = True
        if self.error:
            data["error"] = self.error
            data["error_reason"] = self.error_reason
        if self.duration_ms is not None:
            data["duration_ms"] = self.duration_ms
        return data


class ContentService:
    """全文抓取服务."""

    # 每篇文章同时最多一个抓取任务，后来的请求等待同一个任务
    _in_flight: dict[str, asyncio.Task[FullTextResult]] = {}

    def __init__(
        self,
        session: AsyncSession,
        extractor: FullTextExtractor | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.timeout = self.settings.content_fetch_timeout_seconds
        self.extractor = extractor or FullTextExtractor(timeout=self.timeout)

    async def fetch_content(
        self,
        article_id: str,
        force: bool = False,
        fetch_type: str = "manual",
    ) -> ContentResult:
        """
        抓取文章全文.

        Args:
            article_id: 文章 ID
            force: 忽略已缓存的全文重新抓取
            fetch_type: manual（用户触发）| auto（摘要前自动抓取）

        Raises:
            ArticleNotFoundError: 文章不存在
        """
        article = await self.session.get(Article, article_id)
        if article is None:
            msg = f"文章不存在: {article_id}"
            raise ArticleNotFoundError(msg)

        if article.has_full_content and article.full_content and not force:
            return ContentResult(success=True, content=article.full_content, cached=True)

        if not article.url:
            await self._log(article, fetch_type, "failure", "no_url", "文章没有原文链接", None)
            await self.session.commit()
            return self._fallback(article, "文章没有原文链接", "no_url")

        task = self._in_flight.get(article_id)
        owner = task is None
        if task is None:
            task = asyncio.create_task(self.extractor.fetch(article.url))
            self._in_flight[article_id] = task
            task.add_done_callback(lambda _: self._in_flight.pop(article_id, None))
        else:
            logger.info(f"文章 {article_id} 正在抓取，等待已有任务")

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout)
        except asyncio.TimeoutError:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning(f"抓取文章 {article_id} 超时 ({self.timeout}s)")
            if owner:
                await self._log(article, fetch_type, "failure", "timeout", "抓取超时", duration_ms)
                await self.session.commit()
            fallback = self._fallback(article, "抓取超时", "timeout")
            fallback.timed_out = True
            fallback.duration_ms = duration_ms
            return fallback
        except Exception as e:
            # 抓取失败不影响阅读，退回 RSS 内容
            logger.exception(f"抓取文章 {article_id} 出错")
            result = FullTextResult(
                success=False,
                error=f"抓取出错: {type(e).__name__}",
                error_reason="exception",
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        if not owner:
            # 由发起抓取的请求负责写库和日志
            if result.success:
                return ContentResult(success=True, content=result.content_html or result.content)
            return self._fallback(article, result.error, result.error_reason)

        if not result.success:
            logger.info(f"抓取文章 {article_id} 失败: {result.error}")
            await self._log(
                article,
                fetch_type,
                "failure",
                result.error_reason or "extraction_failed",
                result.error,
                duration_ms,
            )
            await self.session.commit()
            fallback = self._fallback(article, result.error, result.error_reason)
            fallback.duration_ms = duration_ms
            return fallback

        now = datetime.utcnow()
        article.full_content = result.content_html or result.content
        article.has_full_content = True
        article.content_fetched_at = now
        article.updated_at = now
        await self._log(article, fetch_type, "success", None, None, duration_ms)
        await self.session.commit()
        logger.info(f"抓取文章 {article_id} 成功: {result.word_count} 词, {duration_ms}ms")

        return ContentResult(
            success=True,
            content=article.full_content,
            duration_ms=duration_ms,
        )

    def _fallback(
        self,
        article: Article,
        error: str | None,
        reason: str | None,
    ) -> ContentResult:
        return ContentResult(
            success=False,
            content=article.content,
            fallback=True,
            error=error,
            error_reason=reason,
        )

    async def _log(
        self,
        article: Article,
        fetch_type: str,
        status: str,
        reason: str | None,
        message: str | None,
        duration_ms: int | None,
    ) -> None:
        self.session.add(
            FetchLog(
                article_id=article.id,
                feed_id=article.feed_id,
                fetch_type=fetch_type,
                status=status,
                error_reason=reason,
                error_message=message,
                duration_ms=duration_ms,
            )
        )


async def get_fetch_stats(session: AsyncSession, recent_limit: int = 10) -> dict[str, Any]:
    """全文抓取健康统计."""
    now = datetime.utcnow()
    today_start = datetime(now.year, now.month, now.day)
    month_start = datetime(now.year, now.month, 1)

    periods: dict[str, Any] = {}
    for name, since in (
        ("today", today_start),
        ("thisMonth", month_start),
        ("lifetime", None),
    ):
        stmt = select(FetchLog.fetch_type, FetchLog.status, func.count()).group_by(
            FetchLog.fetch_type, FetchLog.status
        )
        if since is not None:
            stmt = stmt.where(FetchLog.created_at >= since)

        stats = {
            fetch_type: {"success": 0, "failure": 0, "total": 0}
            for fetch_type in ("manual", "auto")
        }
        for fetch_type, status, count in (await session.execute(stmt)).all():
            bucket = stats.setdefault(fetch_type, {"success": 0, "failure": 0, "total": 0})
            bucket[status] = bucket.get(status, 0) + count
            bucket["total"] += count
        periods[name] = stats

    success_count = func.sum(case((FetchLog.status == "success", 1), else_=0))
    feed_stmt = (
        select(FetchLog.feed_id, Feed.title, success_count, func.count())
        .join(Feed, Feed.id == FetchLog.feed_id, isouter=True)
        .group_by(FetchLog.feed_id, Feed.title)
        .order_by(func.count().desc())
    )
    by_feed = [
        {
            "feed_id": feed_id,
            "feed_title": title,
            "success": int(success or 0),
            "total": total,
            "success_rate": round((success or 0) / total, 3) if total else 0.0,
        }
        for feed_id, title, success, total in (await session.execute(feed_stmt)).all()
    ]

    avg_stmt = select(func.avg(FetchLog.duration_ms)).where(FetchLog.status == "success")
    avg_duration = (await session.execute(avg_stmt)).scalar()

    failures_stmt = (
        select(FetchLog)
        .where(FetchLog.status == "failure")
        .where(FetchLog.created_at >= now - timedelta(days=30))
        .order_by(FetchLog.created_at.desc())  # type: ignore[attr-defined]
        .limit(recent_limit)
    )
    recent_failures = [
        {
            "article_id": log.article_id,
            "feed_id": log.feed_id,
            "fetch_type": log.fetch_type,
            "error_reason": log.error_reason,
            "error_message": log.error_message,
            "created_at": log.created_at.isoformat(),
        }
        for log in (await session.execute(failures_stmt)).scalars().all()
    ]

    return {
        **periods,
        "byFeed": by_feed,
        "averageDurationMs": round(float(avg_duration), 1) if avg_duration is not None else None,
        "recentFailures": recent_failures,
    }
