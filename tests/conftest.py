"""测试配置和 fixtures."""

import asyncio
import json
from collections.abc import AsyncGenerator
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

import newsreader.models  # noqa: F401
from newsreader.config import Settings
from newsreader.core.inoreader import InoreaderClient, InoreaderConfig
from newsreader.fetcher.extractor import FullTextResult
from newsreader.llm.base import LLMConfig, LLMProvider, Message

BASE_URL = "https://www.inoreader.com/reader/api/0"
USER = "user/1005921515"
PUBLISHED = 1_700_000_000


def make_item(
    item_id: str,
    feed_id: str,
    title: str = "Article",
    read: bool = False,
    starred: bool = False,
    labels: tuple[str, ...] = (),
    published: int = PUBLISHED,
) -> dict[str, Any]:
    """构造 stream/contents 中的一篇文章."""
    categories = [f"{USER}/state/com.google/reading-list"]
    if read:
        categories.append(f"{USER}/state/com.google/read")
    if starred:
        categories.append(f"{USER}/state/com.google/starred")
    categories.extend(f"{USER}/label/{label}" for label in labels)
    return {
        "id": item_id,
        "title": title,
        "author": "Author",
        "published": published,
        "canonical": [{"href": f"https://example.com/{item_id.rsplit('/', 1)[-1]}"}],
        "summary": {"content": f"<p>{title} body &amp; more</p>"},
        "categories": categories,
        "origin": {"streamId": feed_id, "title": feed_id},
    }


def item_id(n: int) -> str:
    return f"tag:google.com,2005:reader/item/{n:016x}"


class FakeExtractor:
    """可控的全文抓取器."""

    def __init__(self, result: FullTextResult, delay: float = 0.0) -> None:
        self.result = result
        self.delay = delay
        self.calls = 0

    async def fetch(self, url: str) -> FullTextResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result


class FakeProvider(LLMProvider):
    """记录调用的假模型."""

    def __init__(self, reply: str = "A short summary.", error: Exception | None = None) -> None:
        super().__init__(LLMConfig(model="fake-model"))
        self.reply = reply
        self.error = error
        self.calls: list[list[Message]] = []

    async def chat(self, messages: list[Message]) -> str:
        self.calls.append(messages)
        if self.error:
            raise self.error
        return self.reply


class FakeInoreader:
    """内存中的 Inoreader，通过 httpx.MockTransport 提供接口."""

    def __init__(self) -> None:
        self.tags: list[dict[str, Any]] = [
            {"id": f"{USER}/state/com.google/starred"},
            {"id": f"{USER}/label/Tech", "type": "folder"},
            {"id": f"{USER}/label/Important", "type": "tag"},
        ]
        self.subscriptions: list[dict[str, Any]] = [
            {
                "id": "feed/https://a.example.com/rss",
                "title": "Feed A",
                "url": "https://a.example.com/rss",
                "htmlUrl": "https://a.example.com",
                "categories": [{"id": f"{USER}/label/Tech", "label": "Tech"}],
            },
            {
                "id": "feed/https://b.example.com/rss",
                "title": "Feed B",
                "url": "https://b.example.com/rss",
                "htmlUrl": "https://b.example.com",
                "categories": [{"id": f"{USER}/label/Tech", "label": "Tech"}],
            },
            {
                "id": "feed/https://c.example.com/rss",
                "title": "Feed C",
                "url": "https://c.example.com/rss",
                "categories": [],
            },
        ]
        self.items: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.edit_calls: list[dict[str, list[str]]] = []
        # 路径片段 -> HTTP 状态码
        self.failures: dict[str, int] = {}
        self.rate_headers: dict[str, str] = {
            "X-Reader-Zone1-Usage": "12",
            "X-Reader-Zone1-Limit": "100",
            "X-Reader-Zone2-Usage": "3",
            "X-Reader-Zone2-Limit": "100",
            "X-Reader-Limits-Reset-After": "3600",
        }

    @property
    def feed_ids(self) -> list[str]:
        return [sub["id"] for sub in self.subscriptions]

    def add_articles(self, counts: dict[str, int]) -> None:
        """按 Feed 批量添加未读文章."""
        n = len(self.items)
        for feed_id, count in counts.items():
            for _ in range(count):
                n += 1
                self.items.append(make_item(item_id(n), feed_id, title=f"Article {n}"))

    def requests_to(self, fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if fragment in r.url.path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        for fragment, status in self.failures.items():
            if fragment in path:
                headers = {"Retry-After": "120"} if status == 429 else {}
                return httpx.Response(status, headers=headers, text="error")

        headers = self.rate_headers
        if path.endswith("/tag/list"):
            return httpx.Response(200, json={"tags": self.tags}, headers=headers)
        if path.endswith("/subscription/list"):
            return httpx.Response(
                200, json={"subscriptions": self.subscriptions}, headers=headers
            )
        if path.endswith("/unread-count"):
            counts: dict[str, int] = {}
            for item in self.items:
                feed_id = item["origin"]["streamId"]
                counts[feed_id] = counts.get(feed_id, 0) + 1
            body = {
                "max": 1000,
                "unreadcounts": [{"id": k, "count": str(v)} for k, v in counts.items()],
            }
            return httpx.Response(200, json=body, headers=headers)
        if "/stream/contents/" in path:
            return httpx.Response(200, json={"items": self.items}, headers=headers)
        if path.endswith("/edit-tag"):
            self.edit_calls.append(parse_qs(request.content.decode()))
            return httpx.Response(200, text="OK", headers=headers)
        return httpx.Response(404, text=json.dumps({"error": "not found"}))


@pytest.fixture
def settings() -> Settings:
    """测试配置（不读取环境中的真实凭据）."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        inoreader_access_token="test-token-123456",
        database_url="sqlite+aiosqlite:///:memory:",
        sync_enabled=False,
        openai_api_key="",
        content_fetch_timeout_seconds=1.0,
    )


@pytest.fixture
def fake_inoreader() -> FakeInoreader:
    return FakeInoreader()


@pytest.fixture
async def inoreader(fake_inoreader: FakeInoreader) -> AsyncGenerator[InoreaderClient, None]:
    """连接到 FakeInoreader 的客户端."""
    client = InoreaderClient(
        InoreaderConfig(base_url=BASE_URL, access_token="test-token-123456"),
        transport=httpx.MockTransport(fake_inoreader.handler),
    )
    yield client
    await client.close()


@pytest.fixture
async def test_engine():
    """创建测试数据库引擎."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_session_factory(test_engine):
    """创建测试会话工厂."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def async_session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    """创建测试会话."""
    async with test_session_factory() as session:
        yield session
