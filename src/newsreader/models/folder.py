"""Folder 文件夹模型."""

from datetime import datetime

from sqlmodel import Field, SQLModel


class Folder(SQLModel, table=True):
    """Inoreader 文件夹（订阅分类）."""

    __tablename__ = "folders"  # type: ignore[assignment]

    id: str = Field(primary_key=True, description="Inoreader 中的 label ID")
    name: str = Field(description="文件夹名称")
    parent_id: str | None = Field(default=None, description="上级文件夹")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
