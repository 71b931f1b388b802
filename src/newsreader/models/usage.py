"""API 调用量与抓取日志模型."""

from datetime import date, datetime

from sqlmodel import Field, SQLModel


class ApiUsage(SQLModel, table=True):
    """每日外部 API 调用量."""

    __tablename__ = "api_usage"  # type: ignore[assignment]

    service: str = Field(primary_key=True, description="服务名")
    usage_date: date = Field(primary_key=True, description="日期 (UTC)")
    count: int = Field(default=0, description="本地记录的调用次数")
    zone1_usage: int | None = Field(default=None)
    zone1_limit: int | None = Field(default=None)
    zone2_usage: int | None = Field(default=None)
    zone2_limit: int | None = Field(default=None)
    reset_after: int | None = Field(default=None, description="配额重置剩余秒数")
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class FetchLog(SQLModel, table=True):
    """全文抓取尝试记录."""

    __tablename__ = "fetch_logs"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    article_id: str = Field(index=True)
    feed_id: str | None = Field(default=None, index=True)
    fetch_type: str = Field(default="manual", description="manual|auto")
    status: str = Field(description="success|failure")
    error_reason: str | None = Field(
        default=None, description="no_url|timeout|extraction_failed|exception"
    )
    error_message: str | None = Field(default=None)
    duration_ms: int | None = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
