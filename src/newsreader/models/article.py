"""Article 文章模型."""

from datetime import datetime

from sqlmodel import Field, SQLModel


class Article(SQLModel, table=True):
    """RSS 文章."""

    __tablename__ = "articles"  # type: ignore[assignment]

    id: str = Field(primary_key=True, description="Inoreader 中的 article ID")
    feed_id: str = Field(foreign_key="feeds.id", index=True, description="关联 Feed")
    title: str = Field(description="标题")
    author: str | None = Field(default=None, description="作者")
    url: str | None = Field(default=None, description="原文链接")
    content: str | None = Field(default=None, description="RSS 原始 HTML 内容")
    full_content: str | None = Field(default=None, description="抓取的全文内容")
    has_full_content: bool = Field(default=False, description="是否已抓取全文")
    content_fetched_at: datetime | None = Field(default=None)
    ai_summary: str | None = Field(default=None, description="AI 摘要")
    summary_model: str | None = Field(default=None, description="生成摘要的模型")
    summary_generated_at: datetime | None = Field(default=None)
    published_at: datetime | None = Field(default=None, description="发布时间")
    is_read: bool = Field(default=False, description="是否已读")
    is_starred: bool = Field(default=False, description="是否收藏")
    # 两个时间戳区分状态变化来自本地还是同步，用于避免回写循环
    last_local_update: datetime | None = Field(
        default=None, description="用户本地修改 is_read/is_starred 的时间"
    )
    last_sync_update: datetime | None = Field(
        default=None, description="同步写入 is_read/is_starred 的时间"
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
