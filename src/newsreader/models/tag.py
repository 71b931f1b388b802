"""Tag 标签模型."""

import re
from datetime import datetime

from sqlmodel import Field, SQLModel


class Tag(SQLModel, table=True):
    """标签（Inoreader label 或用户自建）."""

    __tablename__ = "tags"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(description="标签名")
    slug: str = Field(unique=True, index=True, description="由名称派生")
    color: str | None = Field(default=None, description="颜色")
    description: str | None = Field(default=None, description="描述")
    article_count: int = Field(default=0, description="关联文章数")
    is_remote: bool = Field(default=False, description="是否来自 Inoreader")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ArticleTag(SQLModel, table=True):
    """文章与标签的关联."""

    __tablename__ = "article_tags"  # type: ignore[assignment]

    article_id: str = Field(foreign_key="articles.id", primary_key=True)
    tag_id: int = Field(foreign_key="tags.id", primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


def slugify(name: str) -> str:
    """标签名转 slug."""
    slug = name.strip().lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_-]+", "-", slug)
    return slug.strip("-")
