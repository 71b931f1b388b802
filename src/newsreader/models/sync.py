"""同步相关模型：运行记录、元数据、回写队列."""

from datetime import datetime

from sqlmodel import Field, SQLModel


class SyncRun(SQLModel, table=True):
    """单次同步任务状态."""

    __tablename__ = "sync_runs"  # type: ignore[assignment]

    id: str = Field(primary_key=True, description="sync ID (uuid)")
    trigger: str = Field(description="触发方式: scheduled|manual")
    status: str = Field(
        default="pending",
        description="状态: pending|running|completed|partial|failed",
    )
    progress: int = Field(default=0, description="进度百分比")
    message: str | None = Field(default=None, description="当前步骤")
    items_processed: int = Field(default=0)
    total_items: int = Field(default=0)
    new_articles: int = Field(default=0)
    updated_articles: int = Field(default=0)
    deleted_articles: int = Field(default=0)
    new_tags: int = Field(default=0)
    failed_feeds: int = Field(default=0)
    total_feeds: int = Field(default=0)
    remote_calls: int = Field(default=0)
    retry_after: int | None = Field(default=None, description="限流后建议等待秒数")
    error_message: str | None = Field(default=None, description="错误信息")
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = Field(default=None)


class SyncMetadata(SQLModel, table=True):
    """同步元数据（键值存储）."""

    __tablename__ = "sync_metadata"  # type: ignore[assignment]

    key: str = Field(primary_key=True, description="键")
    value: str = Field(default="", description="值")
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SyncQueueEntry(SQLModel, table=True):
    """待回写到 Inoreader 的本地状态变更."""

    __tablename__ = "sync_queue"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    article_id: str = Field(index=True, description="Inoreader article ID")
    action_type: str = Field(description="read|unread|star|unstar")
    sync_attempts: int = Field(default=0, description="已尝试次数")
    last_attempt_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
