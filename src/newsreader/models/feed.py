"""Feed 订阅源模型."""

from datetime import datetime

from sqlmodel import Field, SQLModel


class Feed(SQLModel, table=True):
    """RSS 订阅源."""

    __tablename__ = "feeds"  # type: ignore[assignment]

    id: str = Field(primary_key=True, description="Inoreader 中的 feed ID (streamId)")
    title: str = Field(description="Feed 标题")
    url: str = Field(description="Feed URL")
    site_url: str | None = Field(default=None, description="网站 URL")
    icon_url: str | None = Field(default=None, description="图标 URL")
    folder_id: str | None = Field(
        default=None, foreign_key="folders.id", description="所属文件夹"
    )
    is_partial_content: bool = Field(
        default=False, description="RSS 只提供摘要，需要抓取全文"
    )
    unread_count: int = Field(default=0, description="Inoreader 未读数快照")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
