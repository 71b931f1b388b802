"""文章 API.

Inoreader 的文章 ID 含有 `/`，路径参数使用 path 转换器。
"""

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from newsreader.api.deps import get_content_service, get_summary_service
from newsreader.core.content import ArticleNotFoundError, ContentService
from newsreader.core.queue import enqueue_change
from newsreader.core.summary import NoContentError, SummaryService
from newsreader.core.tags import get_or_create_tag, link_article, refresh_tag_counts
from newsreader.llm.base import LLMError
from newsreader.models.article import Article
from newsreader.models.database import get_session
from newsreader.models.feed import Feed
from newsreader.models.tag import ArticleTag, Tag
from newsreader.utils.html_parser import estimate_reading_time, extract_first_image, html_to_text

router = APIRouter(prefix="/api/articles", tags=["articles"])

SUMMARY_ERROR_STATUS = {
    "not_configured": 503,
    "invalid_api_key": 401,
    "rate_limit": 429,
    "service_unavailable": 502,
    "timeout": 504,
}


class MarkAllReadRequest(BaseModel):
    """批量标记已读."""

    feed_id: str | None = None
    tag: str | None = None
    before: datetime | None = None


class AttachTagRequest(BaseModel):
    """给文章添加标签（按 ID 或名称）."""

    tag_id: int | None = None
    name: str | None = None


def _article_item(article: Article) -> dict:
    return {
        "id": article.id,
        "feed_id": article.feed_id,
        "title": article.title,
        "author": article.author,
        "url": article.url,
        "image_url": extract_first_image(article.content or "", article.url),
        "published_at": article.published_at.isoformat() if article.published_at else None,
        "is_read": article.is_read,
        "is_starred": article.is_starred,
        "has_full_content": article.has_full_content,
        "has_summary": article.ai_summary is not None,
    }


async def _get_article(session: AsyncSession, article_id: str) -> Article:
    article = await session.get(Article, article_id)
    if not article:
        raise HTTPException(status_code=404, detail="文章不存在")
    return article


@router.get("")
async def list_articles(
    filter: Literal["unread", "starred", "all"] = Query("unread", description="筛选条件"),
    feed_id: str | None = Query(None, description="按 Feed 筛选"),
    tag: str | None = Query(None, description="按标签 slug 筛选"),
    page: int = Query(1, ge=1, description="页码"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """获取文章列表（按发布时间倒序）."""
    stmt = select(Article)
    if filter == "unread":
        stmt = stmt.where(Article.is_read == False)  # noqa: E712
    elif filter == "starred":
        stmt = stmt.where(Article.is_starred == True)  # noqa: E712
    if feed_id:
        stmt = stmt.where(Article.feed_id == feed_id)
    if tag:
        stmt = (
            stmt.join(ArticleTag, ArticleTag.article_id == Article.id)
            .join(Tag, Tag.id == ArticleTag.tag_id)
            .where(Tag.slug == tag)
        )

    total = (
        await session.execute(select(func.count()).select_from(stmt.subquery()))
    ).scalar_one()

    stmt = (
        stmt.order_by(Article.published_at.desc(), Article.id)  # type: ignore[union-attr]
        .offset((page - 1) * limit)
        .limit(limit)
    )
    articles = (await session.execute(stmt)).scalars().all()

    return {
        "total": total,
        "page": page,
        "limit": limit,
        "items": [_article_item(article) for article in articles],
    }


@router.post("/mark-all-read")
async def mark_all_read(
    request: MarkAllReadRequest | None = None,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """批量标记已读（可按 Feed、标签、时间筛选），变更会在下次同步时回写."""
    request = request or MarkAllReadRequest()
    stmt = select(Article).where(Article.is_read == False)  # noqa: E712
    if request.feed_id:
        stmt = stmt.where(Article.feed_id == request.feed_id)
    if request.tag:
        stmt = (
            stmt.join(ArticleTag, ArticleTag.article_id == Article.id)
            .join(Tag, Tag.id == ArticleTag.tag_id)
            .where(Tag.slug == request.tag)
        )
    if request.before:
        stmt = stmt.where(Article.published_at <= request.before)  # type: ignore[operator]

    articles = (await session.execute(stmt)).scalars().all()
    now = datetime.utcnow()
    for article in articles:
        article.is_read = True
        article.last_local_update = now
        article.updated_at = now
        await enqueue_change(session, article, "read")
    await session.commit()

    return {"marked": len(articles)}


@router.get("/{article_id:path}/tags")
async def get_article_tags(
    article_id: str,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """获取文章的标签."""
    await _get_article(session, article_id)
    stmt = (
        select(Tag)
        .join(ArticleTag, ArticleTag.tag_id == Tag.id)
        .where(ArticleTag.article_id == article_id)
        .order_by(Tag.name)
    )
    tags = (await session.execute(stmt)).scalars().all()
    return {"tags": [{"id": t.id, "name": t.name, "slug": t.slug, "color": t.color} for t in tags]}


@router.post("/{article_id:path}/tags")
async def attach_tag(
    article_id: str,
    request: AttachTagRequest,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """给文章添加标签，按名称添加时不存在则创建."""
    await _get_article(session, article_id)

    if request.tag_id is not None:
        tag = await session.get(Tag, request.tag_id)
        if not tag:
            raise HTTPException(status_code=404, detail="标签不存在")
    elif request.name and request.name.strip():
        tag, _ = await get_or_create_tag(session, request.name)
    else:
        raise HTTPException(status_code=400, detail="需要提供 tag_id 或 name")

    added = await link_article(session, article_id, tag.id)  # type: ignore[arg-type]
    await session.flush()
    await refresh_tag_counts(session)
    await session.commit()
    await session.refresh(tag)

    return {
        "article_id": article_id,
        "tag": {"id": tag.id, "name": tag.name, "slug": tag.slug},
        "added": added,
        "article_count": tag.article_count,
    }


@router.delete("/{article_id:path}/tags/{tag_id}")
async def detach_tag(
    article_id: str,
    tag_id: int,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """移除文章的标签."""
    link = await session.get(ArticleTag, (article_id, tag_id))
    if not link:
        raise HTTPException(status_code=404, detail="文章没有该标签")

    await session.delete(link)
    await session.flush()
    await refresh_tag_counts(session)
    await session.commit()
    return {"article_id": article_id, "tag_id": tag_id, "removed": True}


@router.patch("/{article_id:path}/read")
async def mark_read(
    article_id: str,
    read: bool = Query(True, description="是否已读"),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """标记文章已读/未读."""
    article = await _get_article(session, article_id)

    if article.is_read != read:
        now = datetime.utcnow()
        article.is_read = read
        article.last_local_update = now
        article.updated_at = now
        await enqueue_change(session, article, "read" if read else "unread")

        feed = await session.get(Feed, article.feed_id)
        if feed:
            feed.unread_count = max(0, feed.unread_count + (-1 if read else 1))
        await session.commit()

    return {"id": article_id, "is_read": article.is_read}


@router.patch("/{article_id:path}/star")
async def set_star(
    article_id: str,
    starred: bool | None = Query(None, description="是否收藏，不传则切换"),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """收藏/取消收藏."""
    article = await _get_article(session, article_id)
    target = (not article.is_starred) if starred is None else starred

    if article.is_starred != target:
        now = datetime.utcnow()
        article.is_starred = target
        article.last_local_update = now
        article.updated_at = now
        await enqueue_change(session, article, "star" if target else "unstar")
        await session.commit()

    return {"id": article_id, "is_starred": article.is_starred}


@router.post("/{article_id:path}/fetch-content")
async def fetch_content(
    article_id: str,
    force: bool = Query(False, description="忽略缓存重新抓取"),
    service: ContentService = Depends(get_content_service),
) -> dict:
    """抓取全文；失败或超时时返回 RSS 原始内容."""
    try:
        result = await service.fetch_content(article_id, force=force)
    except ArticleNotFoundError as e:
        raise HTTPException(status_code=404, detail="文章不存在") from e

    if result.timed_out:
        return JSONResponse(status_code=408, content=result.to_dict())  # type: ignore[return-value]
    return result.to_dict()


@router.post("/{article_id:path}/summarize")
async def summarize(
    article_id: str,
    regenerate: bool = Query(False, description="忽略缓存重新生成"),
    service: SummaryService = Depends(get_summary_service),
) -> dict:
    """生成 AI 摘要（有缓存时直接返回）."""
    try:
        result = await service.summarize(article_id, regenerate=regenerate)
    except ArticleNotFoundError as e:
        raise HTTPException(status_code=404, detail="文章不存在") from e
    except NoContentError as e:
        raise HTTPException(
            status_code=400, detail={"error": "no_content", "message": str(e)}
        ) from e
    except LLMError as e:
        raise HTTPException(
            status_code=SUMMARY_ERROR_STATUS.get(e.code, 502),
            detail={"error": e.code, "message": str(e)},
        ) from e

    return result.to_dict()


@router.get("/{article_id:path}")
async def get_article(
    article_id: str,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """获取文章详情."""
    article = await _get_article(session, article_id)
    feed = await session.get(Feed, article.feed_id)

    stmt = (
        select(Tag)
        .join(ArticleTag, ArticleTag.tag_id == Tag.id)
        .where(ArticleTag.article_id == article_id)
        .order_by(Tag.name)
    )
    tags = (await session.execute(stmt)).scalars().all()
    text = html_to_text(article.full_content or article.content or "")

    return {
        **_article_item(article),
        "feed_title": feed.title if feed else None,
        "is_partial_content": feed.is_partial_content if feed else False,
        # 分别返回，让前端能明确区分
        "content": article.full_content or article.content,
        "full_content": article.full_content,
        "content_html": article.content,
        "content_fetched_at": article.content_fetched_at.isoformat()
        if article.content_fetched_at
        else None,
        "reading_time": estimate_reading_time(text),
        "ai_summary": article.ai_summary,
        "summary_model": article.summary_model,
        "summary_generated_at": article.summary_generated_at.isoformat()
        if article.summary_generated_at
        else None,
        "tags": [{"id": t.id, "name": t.name, "slug": t.slug} for t in tags],
    }
