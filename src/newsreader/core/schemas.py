"""Inoreader API 响应模型（入口处校验，内部不再处理原始 dict）."""

import html
import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

READ_STATE = "user/-/state/com.google/read"
STARRED_STATE = "user/-/state/com.google/starred"

_LABEL_PATTERN = re.compile(r"^user/[^/]*/label/")
_READ_PATTERN = re.compile(r"^user/[^/]*/state/com\.google/read$")
_STARRED_PATTERN = re.compile(r"^user/[^/]*/state/com\.google/starred$")


def label_name(stream_id: str) -> str | None:
    """从 `user/<id>/label/<name>` 中取出标签名，非 label 返回 None."""
    if not _LABEL_PATTERN.match(stream_id):
        return None
    return _LABEL_PATTERN.sub("", stream_id)


class _RemoteModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RemoteTag(_RemoteModel):
    """tag/list 中的一项."""

    id: str
    type: str | None = None

    @property
    def label(self) -> str | None:
        return label_name(self.id)


class TagListResponse(_RemoteModel):
    tags: list[RemoteTag] = Field(default_factory=list)


class RemoteCategory(_RemoteModel):
    id: str
    label: str


class RemoteSubscription(_RemoteModel):
    """subscription/list 中的订阅源."""

    id: str
    title: str
    url: str = ""
    html_url: str | None = Field(default=None, alias="htmlUrl")
    icon_url: str | None = Field(default=None, alias="iconUrl")
    categories: list[RemoteCategory] = Field(default_factory=list)

    @property
    def folder(self) -> RemoteCategory | None:
        return self.categories[0] if self.categories else None


class SubscriptionListResponse(_RemoteModel):
    subscriptions: list[RemoteSubscription] = Field(default_factory=list)


class UnreadCount(_RemoteModel):
    id: str
    count: int = 0

    @field_validator("count", mode="before")
    @classmethod
    def _parse_count(cls, value: object) -> object:
        # Inoreader 有时返回字符串
        if isinstance(value, str):
            return int(value.replace(",", "") or 0)
        return value


class UnreadCountResponse(_RemoteModel):
    max: int | None = None
    unreadcounts: list[UnreadCount] = Field(default_factory=list)

    def as_map(self) -> dict[str, int]:
        return {item.id: item.count for item in self.unreadcounts}


class RemoteLink(_RemoteModel):
    href: str


class RemoteContent(_RemoteModel):
    content: str = ""


class RemoteOrigin(_RemoteModel):
    stream_id: str = Field(default="", alias="streamId")
    title: str | None = None


class StreamItem(_RemoteModel):
    """stream/contents 中的一篇文章."""

    id: str
    title: str | None = None
    author: str | None = None
    published: int | None = None
    canonical: list[RemoteLink] = Field(default_factory=list)
    alternate: list[RemoteLink] = Field(default_factory=list)
    summary: RemoteContent | None = None
    content: RemoteContent | None = None
    categories: list[str] = Field(default_factory=list)
    origin: RemoteOrigin = Field(default_factory=RemoteOrigin)

    @property
    def feed_id(self) -> str:
        return self.origin.stream_id

    @property
    def link(self) -> str | None:
        for links in (self.canonical, self.alternate):
            if links:
                return links[0].href
        return None

    @property
    def body(self) -> str:
        source = self.content or self.summary
        return html.unescape(source.content) if source else ""

    @property
    def display_title(self) -> str:
        return html.unescape(self.title) if self.title else "Untitled"

    @property
    def published_at(self) -> datetime | None:
        if not self.published:
            return None
        return datetime.utcfromtimestamp(self.published)

    @property
    def is_read(self) -> bool:
        return any(_READ_PATTERN.match(c) for c in self.categories)

    @property
    def is_starred(self) -> bool:
        return any(_STARRED_PATTERN.match(c) for c in self.categories)

    @property
    def labels(self) -> list[str]:
        names = [label_name(c) for c in self.categories]
        return [name for name in names if name]


class StreamContentsResponse(_RemoteModel):
    items: list[StreamItem] = Field(default_factory=list)
    continuation: str | None = None
