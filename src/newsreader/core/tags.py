"""标签维护."""

from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from newsreader.models.tag import ArticleTag, Tag, slugify


async def get_or_create_tag(
    session: AsyncSession,
    name: str,
    is_remote: bool = False,
) -> tuple[Tag, bool]:
    """按 slug 查找标签，不存在则创建（flush 以获得 ID）."""
    slug = slugify(name) or name.strip()
    result = await session.execute(select(Tag).where(Tag.slug == slug))
    tag = result.scalar_one_or_none()
    if tag:
        return tag, False

    tag = Tag(name=name.strip(), slug=slug, is_remote=is_remote)
    session.add(tag)
    await session.flush()
    return tag, True


async def link_article(session: AsyncSession, article_id: str, tag_id: int) -> bool:
    """关联文章与标签，已存在返回 False."""
    if await session.get(ArticleTag, (article_id, tag_id)):
        return False
    session.add(ArticleTag(article_id=article_id, tag_id=tag_id))
    return True


async def refresh_tag_counts(session: AsyncSession) -> None:
    """重新计算所有标签的文章数（不提交事务）."""
    count_subquery = (
        select(func.count())
        .select_from(ArticleTag)
        .where(ArticleTag.tag_id == Tag.id)
        .scalar_subquery()
    )
    await session.execute(
        update(Tag)
        .values(article_count=count_subquery)
        .execution_options(synchronize_session=False)
    )


async def delete_tag(session: AsyncSession, tag: Tag) -> None:
    """删除标签及其所有文章关联（不提交事务）."""
    await session.execute(delete(ArticleTag).where(ArticleTag.tag_id == tag.id))
    await session.delete(tag)
