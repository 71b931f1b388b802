"""Feed 订阅源 API."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from newsreader.models.article import Article
from newsreader.models.database import get_session
from newsreader.models.feed import Feed
from newsreader.models.folder import Folder

router = APIRouter(prefix="/api/feeds", tags=["feeds"])


async def _local_unread_counts(session: AsyncSession) -> dict[str, int]:
    stmt = (
        select(Article.feed_id, func.count())
        .where(Article.is_read == False)  # noqa: E712
        .group_by(Article.feed_id)
    )
    return dict((await session.execute(stmt)).all())


def _feed_item(feed: Feed, unread: int) -> dict:
    return {
        "id": feed.id,
        "title": feed.title,
        "url": feed.url,
        "site_url": feed.site_url,
        "icon_url": feed.icon_url,
        "folder_id": feed.folder_id,
        "is_partial_content": feed.is_partial_content,
        "unread_count": unread,
    }


@router.get("")
async def list_feeds(
    session: AsyncSession = Depends(get_session),
) -> dict:
    """获取订阅列表（按文件夹分组，带本地未读数）."""
    feeds = (await session.execute(select(Feed).order_by(Feed.title))).scalars().all()
    folders = (await session.execute(select(Folder).order_by(Folder.name))).scalars().all()
    unread = await _local_unread_counts(session)

    groups: dict[str | None, list[dict]] = {}
    for feed in feeds:
        groups.setdefault(feed.folder_id, []).append(_feed_item(feed, unread.get(feed.id, 0)))

    result_folders = []
    for folder in folders:
        items = groups.pop(folder.id, [])
        result_folders.append(
            {
                "id": folder.id,
                "name": folder.name,
                "unread_count": sum(item["unread_count"] for item in items),
                "feeds": items,
            }
        )

    # 没有文件夹（或文件夹已不存在）的 Feed
    ungrouped = [item for items in groups.values() for item in items]

    return {
        "total": len(feeds),
        "total_unread": sum(unread.values()),
        "folders": result_folders,
        "ungrouped": ungrouped,
    }


@router.patch("/{feed_id:path}/partial-content")
async def set_partial_content(
    feed_id: str,
    enabled: bool = Query(..., description="RSS 是否只提供摘要"),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """标记 Feed 只提供摘要（生成摘要前会自动抓取全文）."""
    feed = await session.get(Feed, feed_id)
    if not feed:
        raise HTTPException(status_code=404, detail="Feed 不存在")

    feed.is_partial_content = enabled
    await session.commit()

    return {"id": feed_id, "is_partial_content": enabled}


@router.get("/{feed_id:path}")
async def get_feed(
    feed_id: str,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """获取 Feed 详情."""
    feed = await session.get(Feed, feed_id)
    if not feed:
        raise HTTPException(status_code=404, detail="Feed 不存在")

    folder = await session.get(Folder, feed.folder_id) if feed.folder_id else None
    unread = await _local_unread_counts(session)
    total_stmt = select(func.count()).where(Article.feed_id == feed_id)
    article_count = (await session.execute(total_stmt)).scalar_one()

    return {
        **_feed_item(feed, unread.get(feed.id, 0)),
        "folder_name": folder.name if folder else None,
        "remote_unread_count": feed.unread_count,
        "article_count": article_count,
        "created_at": feed.created_at.isoformat(),
        "updated_at": feed.updated_at.isoformat(),
    }
