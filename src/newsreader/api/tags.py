"""标签 API."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from newsreader.core.tags import delete_tag
from newsreader.models.article import Article
from newsreader.models.database import get_session
from newsreader.models.tag import ArticleTag, Tag, slugify

router = APIRouter(prefix="/api/tags", tags=["tags"])


class TagCreate(BaseModel):
    """新建标签."""

    name: str = Field(min_length=1, max_length=100)
    color: str | None = None
    description: str | None = None


class TagUpdate(BaseModel):
    """修改标签（只更新传入的字段）."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    color: str | None = None
    description: str | None = None


def _tag_item(tag: Tag) -> dict:
    return {
        "id": tag.id,
        "name": tag.name,
        "slug": tag.slug,
        "color": tag.color,
        "description": tag.description,
        "article_count": tag.article_count,
        "is_remote": tag.is_remote,
        "created_at": tag.created_at.isoformat(),
        "updated_at": tag.updated_at.isoformat(),
    }


async def _slug_taken(session: AsyncSession, slug: str, exclude_id: int | None = None) -> bool:
    stmt = select(Tag.id).where(Tag.slug == slug)
    if exclude_id is not None:
        stmt = stmt.where(Tag.id != exclude_id)
    return (await session.execute(stmt)).first() is not None


@router.get("")
async def list_tags(
    search: str | None = Query(None, description="按名称搜索"),
    sort: str = Query("name", pattern="^(name|count|recent)$", description="排序"),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """获取标签列表."""
    stmt = select(Tag)
    if search:
        stmt = stmt.where(Tag.name.ilike(f"%{search}%"))  # type: ignore[attr-defined]

    if sort == "count":
        stmt = stmt.order_by(Tag.article_count.desc(), Tag.name)  # type: ignore[attr-defined]
    elif sort == "recent":
        stmt = stmt.order_by(Tag.created_at.desc())  # type: ignore[attr-defined]
    else:
        stmt = stmt.order_by(Tag.name)

    tags = (await session.execute(stmt)).scalars().all()
    return {"total": len(tags), "items": [_tag_item(tag) for tag in tags]}


@router.post("", status_code=201)
async def create_tag(
    request: TagCreate,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """创建标签."""
    name = request.name.strip()
    slug = slugify(name) or name
    if await _slug_taken(session, slug):
        raise HTTPException(status_code=409, detail="标签已存在")

    tag = Tag(name=name, slug=slug, color=request.color, description=request.description)
    session.add(tag)
    await session.commit()
    await session.refresh(tag)
    return _tag_item(tag)


@router.get("/{tag_id}")
async def get_tag(
    tag_id: int,
    include_articles: bool = Query(False, description="同时返回文章"),
    limit: int = Query(50, ge=1, le=200, description="文章数量"),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """获取标签详情."""
    tag = await session.get(Tag, tag_id)
    if not tag:
        raise HTTPException(status_code=404, detail="标签不存在")

    data = _tag_item(tag)
    if include_articles:
        stmt = (
            select(Article)
            .join(ArticleTag, ArticleTag.article_id == Article.id)
            .where(ArticleTag.tag_id == tag_id)
            .order_by(Article.published_at.desc())  # type: ignore[union-attr]
            .limit(limit)
        )
        articles = (await session.execute(stmt)).scalars().all()
        data["articles"] = [
            {
                "id": a.id,
                "feed_id": a.feed_id,
                "title": a.title,
                "published_at": a.published_at.isoformat() if a.published_at else None,
                "is_read": a.is_read,
                "is_starred": a.is_starred,
            }
            for a in articles
        ]
    return data


@router.patch("/{tag_id}")
async def update_tag(
    tag_id: int,
    request: TagUpdate,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """修改标签."""
    tag = await session.get(Tag, tag_id)
    if not tag:
        raise HTTPException(status_code=404, detail="标签不存在")

    if request.name is not None:
        name = request.name.strip()
        slug = slugify(name) or name
        if await _slug_taken(session, slug, exclude_id=tag_id):
            raise HTTPException(status_code=409, detail="标签已存在")
        tag.name = name
        tag.slug = slug
    if request.color is not None:
        tag.color = request.color
    if request.description is not None:
        tag.description = request.description
    tag.updated_at = datetime.utcnow()

    await session.commit()
    await session.refresh(tag)
    return _tag_item(tag)


@router.delete("/{tag_id}")
async def remove_tag(
    tag_id: int,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """删除标签（同时移除文章关联）."""
    tag = await session.get(Tag, tag_id)
    if not tag:
        raise HTTPException(status_code=404, detail="标签不存在")

    await delete_tag(session, tag)
    await session.commit()
    return {"id": tag_id, "deleted": True}
