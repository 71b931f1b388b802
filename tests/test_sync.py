"""测试同步服务."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from newsreader.config import Settings
from newsreader.core import metadata
from newsreader.core.inoreader import InoreaderClient
from newsreader.core.lock import acquire_sync_lock
from newsreader.core.queue import enqueue_change
from newsreader.core.schemas import READ_STATE
from newsreader.core.sync import SyncInProgressError, SyncService
from newsreader.models.article import Article
from newsreader.models.feed import Feed
from newsreader.models.folder import Folder
from newsreader.models.sync import SyncMetadata, SyncQueueEntry, SyncRun
from newsreader.models.tag import ArticleTag, Tag
from newsreader.models.usage import ApiUsage

from conftest import FakeInoreader, item_id, make_item

FEED_A = "feed/https://a.example.com/rss"
FEED_B = "feed/https://b.example.com/rss"
FEED_C = "feed/https://c.example.com/rss"


async def _count(session: AsyncSession, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.fixture
def service(
    async_session: AsyncSession, inoreader: InoreaderClient, settings: Settings
) -> SyncService:
    return SyncService(inoreader, async_session, settings)


class TestCleanPass:
    """完整同步."""

    async def test_imports_everything(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """3 个 Feed、1 个文件夹、12 篇文章."""
        fake_inoreader.add_articles({FEED_A: 5, FEED_B: 4, FEED_C: 3})

        result = await service.run_sync(trigger="manual")

        assert result.status == "completed"
        assert result.metrics.new_articles == 12
        assert result.metrics.total_feeds == 3
        assert result.metrics.failed_feeds == 0
        assert result.remote_calls == 4
        assert await _count(async_session, Article) == 12
        assert await _count(async_session, Feed) == 3

        folders = (await async_session.execute(select(Folder))).scalars().all()
        assert [f.name for f in folders] == ["Tech"]
        feed_c = await async_session.get(Feed, FEED_C)
        assert feed_c.folder_id is None
        feed_a = await async_session.get(Feed, FEED_A)
        assert feed_a.unread_count == 5

        article = await async_session.get(Article, item_id(1))
        assert article.title == "Article 1"
        assert article.url == "https://example.com/0000000000000001"
        assert article.published_at == datetime.utcfromtimestamp(1_700_000_000)
        assert article.last_sync_update is not None

        data = result.to_dict()
        assert data["metrics"]["newArticles"] == 12
        assert sorted(data["sidebar"]["feedCounts"]) == sorted(
            [[FEED_A, 5], [FEED_B, 4], [FEED_C, 3]]
        )

    async def test_second_pass_is_idempotent(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """远端无变化时第二次同步不产生新增或更新."""
        fake_inoreader.add_articles({FEED_A: 5, FEED_B: 4, FEED_C: 3})
        await service.run_sync()

        result = await service.run_sync()

        assert result.status == "completed"
        assert result.metrics.new_articles == 0
        assert result.metrics.updated_articles == 0
        assert result.metrics.deleted_articles == 0
        assert result.metrics.new_tags == 0
        assert await _count(async_session, Article) == 12

    async def test_incremental_after_first_pass(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """首次全量，之后带 ot 参数增量拉取."""
        fake_inoreader.add_articles({FEED_A: 1})
        await service.run_sync()
        stored = await metadata.get_value(async_session, metadata.LAST_INCREMENTAL_TIMESTAMP)
        await service.run_sync()

        streams = fake_inoreader.requests_to("/stream/contents/")
        assert "ot" not in streams[0].url.params
        assert streams[1].url.params["ot"] == stored

    async def test_full_refresh_after_interval(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """距上次同步超过 N 天时重新全量."""
        old = int((datetime.utcnow() - timedelta(days=8)).timestamp())
        await metadata.set_value(async_session, metadata.LAST_INCREMENTAL_TIMESTAMP, str(old))
        await async_session.commit()

        await service.run_sync()

        stream = fake_inoreader.requests_to("/stream/contents/")[0]
        assert "ot" not in stream.url.params

    async def test_remote_labels_become_tags(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """远端 label 映射为标签，文件夹名不算标签."""
        fake_inoreader.items = [
            make_item(item_id(1), FEED_A, labels=("Tech", "Important")),
            make_item(item_id(2), FEED_B, labels=("Later",)),
        ]

        result = await service.run_sync()

        tags = (await async_session.execute(select(Tag).order_by(Tag.name))).scalars().all()
        assert [t.name for t in tags] == ["Important", "Later"]
        assert all(t.is_remote for t in tags)
        assert result.metrics.new_tags == 2
        important = next(t for t in tags if t.name == "Important")
        assert important.article_count == 1
        assert await _count(async_session, ArticleTag) == 2

    async def test_records_usage_and_metadata(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """记录调用量、配额头和同步元数据."""
        fake_inoreader.add_articles({FEED_A: 1})

        result = await service.run_sync()

        usage = (await async_session.execute(select(ApiUsage))).scalar_one()
        assert usage.count == 4
        assert usage.zone1_usage == 12
        assert await metadata.get_value(async_session, metadata.LAST_STATUS) == "completed"
        assert await metadata.get_value(async_session, metadata.SUCCESS_COUNT) == "1"
        assert await metadata.get_value(async_session, metadata.SYNC_LOCK) is None

        run = await async_session.get(SyncRun, result.sync_id)
        assert run.status == "completed"
        assert run.progress == 100
        assert run.new_articles == 1

    async def test_removes_unsubscribed_feed(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """远端已取消订阅的 Feed 连同文章一起删除."""
        async_session.add(Feed(id="feed/old", title="Old", url="https://old.example.com"))
        async_session.add(Article(id="old-1", feed_id="feed/old", title="Old article"))
        await async_session.commit()

        result = await service.run_sync()

        assert result.metrics.deleted_articles == 1
        assert await async_session.get(Feed, "feed/old") is None


class TestBudget:
    """调用预算."""

    async def test_never_exceeds_pass_budget(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """回写积压很多时，单次同步最多 5 次调用."""
        async_session.add(Feed(id=FEED_A, title="Feed A", url="https://a.example.com/rss"))
        now = datetime.utcnow()
        for n, action in enumerate(["read", "unread", "star", "unstar"]):
            article = Article(
                id=f"local-{n}",
                feed_id=FEED_A,
                title="Local",
                is_read=action == "read",
                is_starred=action == "star",
                last_local_update=now,
            )
            async_session.add(article)
            await enqueue_change(async_session, article, action)
        await async_session.commit()
        fake_inoreader.add_articles({FEED_A: 3})

        result = await service.run_sync()

        assert len(fake_inoreader.requests) <= 5
        assert result.remote_calls == 5
        assert len(fake_inoreader.edit_calls) == 1
        assert await _count(async_session, SyncQueueEntry) == 3

    async def test_daily_limit_exhausted(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """今日配额用完时不发起任何请求."""
        async_session.add(
            ApiUsage(service="inoreader", usage_date=datetime.utcnow().date(), count=100)
        )
        await async_session.commit()

        result = await service.run_sync()

        assert result.status == "partial"
        assert result.retry_after is not None and result.retry_after > 0
        assert fake_inoreader.requests == []

    async def test_daily_limit_too_low_for_a_pass(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """剩余配额不够一次同步时直接返回，不超出每日上限."""
        async_session.add(
            ApiUsage(service="inoreader", usage_date=datetime.utcnow().date(), count=99)
        )
        await async_session.commit()

        result = await service.run_sync()

        assert result.status == "partial"
        assert result.retry_after is not None
        assert fake_inoreader.requests == []
        usage = (await async_session.execute(select(ApiUsage))).scalar_one()
        await async_session.refresh(usage)
        assert usage.count == 99

    async def test_pass_budget_capped_by_daily_remaining(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """今日只剩 4 次调用时，本次不回写，总量正好到上限."""
        async_session.add(Feed(id=FEED_A, title="Feed A", url="https://a.example.com/rss"))
        article = Article(
            id="local-read",
            feed_id=FEED_A,
            title="Local",
            is_read=True,
            last_local_update=datetime.utcnow(),
        )
        async_session.add(article)
        await enqueue_change(async_session, article, "read")
        async_session.add(
            ApiUsage(service="inoreader", usage_date=datetime.utcnow().date(), count=96)
        )
        await async_session.commit()

        result = await service.run_sync()

        assert result.status == "completed"
        assert result.remote_calls == 4
        assert fake_inoreader.edit_calls == []
        assert await _count(async_session, SyncQueueEntry) == 1
        usage = (await async_session.execute(select(ApiUsage))).scalar_one()
        await async_session.refresh(usage)
        assert usage.count == 100

    async def test_budget_resets_between_passes(
        self,
        service: SyncService,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """同一个服务实例连续同步，每次都有完整的调用名额."""
        fake_inoreader.add_articles({FEED_A: 2})

        first = await service.run_sync()
        second = await service.run_sync()
        third = await service.run_sync()

        assert [r.status for r in (first, second, third)] == ["completed"] * 3
        assert [r.remote_calls for r in (first, second, third)] == [4, 4, 4]


class TestRateLimit:
    """限流."""

    async def test_stream_rate_limited(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """拉取文章时被限流：返回 partial，不写入文章."""
        fake_inoreader.add_articles({FEED_A: 3})
        fake_inoreader.failures["/stream/contents/"] = 429

        result = await service.run_sync()

        assert result.status == "partial"
        assert result.retry_after == 120
        assert await _count(async_session, Article) == 0
        assert await metadata.get_value(async_session, metadata.LAST_RETRY_AFTER) == "120"
        # 限流不计为失败，也不推进增量时间戳
        assert await metadata.get_value(async_session, metadata.FAILURE_COUNT) is None
        assert (
            await metadata.get_value(async_session, metadata.LAST_INCREMENTAL_TIMESTAMP)
            is None
        )
        assert await metadata.get_value(async_session, metadata.SYNC_LOCK) is None


class TestFailures:
    """错误处理."""

    async def test_auth_error_becomes_failed_result(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """认证失败返回 failed 结果，错误信息不含 token."""
        fake_inoreader.failures["/tag/list"] = 401

        result = await service.run_sync()

        assert result.status == "failed"
        assert result.error
        assert "test-token-123456" not in result.error
        assert await metadata.get_value(async_session, metadata.FAILURE_COUNT) == "1"
        assert await metadata.get_value(async_session, metadata.SYNC_LOCK) is None

    async def test_one_feed_failure_does_not_abort(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """单个 Feed 保存失败时其他 Feed 照常导入."""
        fake_inoreader.add_articles({FEED_A: 2, FEED_B: 2, FEED_C: 2})
        original = SyncService._upsert_feed_articles

        async def flaky(self, feed_id, items, tag_ids, metrics):
            if feed_id == FEED_B:
                msg = "disk full"
                raise RuntimeError(msg)
            return await original(self, feed_id, items, tag_ids, metrics)

        monkeypatch.setattr(SyncService, "_upsert_feed_articles", flaky)

        result = await service.run_sync()

        assert result.status == "partial"
        assert result.metrics.failed_feeds == 1
        assert result.failed_feed_ids == [FEED_B]
        assert result.metrics.new_articles == 4
        assert await _count(async_session, Article) == 4
        # 失败的 Feed 下次需要重新拉取，增量起点不前移
        assert (
            await metadata.get_value(async_session, metadata.LAST_INCREMENTAL_TIMESTAMP)
            is None
        )


class TestLock:
    """同步互斥."""

    async def test_rejects_concurrent_pass(
        self, service: SyncService, async_session: AsyncSession
    ) -> None:
        """已有同步在进行时拒绝."""
        assert await acquire_sync_lock(async_session, "other-process")

        with pytest.raises(SyncInProgressError):
            await service.run_sync()

    async def test_stale_lock_is_taken_over(
        self,
        service: SyncService,
        async_session: AsyncSession,
    ) -> None:
        """崩溃遗留的过期锁可以被接管."""
        assert await acquire_sync_lock(async_session, "crashed-process")
        lock = await async_session.get(SyncMetadata, metadata.SYNC_LOCK)
        lock.updated_at = datetime.utcnow() - timedelta(hours=1)
        await async_session.commit()

        result = await service.run_sync()

        assert result.status == "completed"


class TestLoopPrevention:
    """本地修改与远端状态的冲突处理."""

    async def test_local_change_wins_and_is_pushed_once(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """本地较新的已读状态保留并回写，之后的同步不再回写."""
        article_id = item_id(1)
        fake_inoreader.items = [make_item(article_id, FEED_A)]
        await service.run_sync()
        assert fake_inoreader.edit_calls == []

        # 用户在本地标记已读
        article = await async_session.get(Article, article_id)
        article.is_read = True
        article.last_local_update = datetime.utcnow()
        await enqueue_change(async_session, article, "read")
        await async_session.commit()

        # 远端仍是未读
        result = await service.run_sync()

        await async_session.refresh(article)
        assert article.is_read
        assert result.metrics.conflicts == 1
        assert result.pushed_changes == 1
        assert fake_inoreader.edit_calls == [{"i": [article_id], "a": [READ_STATE]}]
        assert await _count(async_session, SyncQueueEntry) == 0

        # 远端已同步为已读，再次同步不产生新的回写
        fake_inoreader.items = [make_item(article_id, FEED_A, read=True)]
        await service.run_sync()
        await service.run_sync()

        assert len(fake_inoreader.edit_calls) == 1
        assert await _count(async_session, SyncQueueEntry) == 0

    async def test_remote_change_applied_without_enqueue(
        self,
        service: SyncService,
        async_session: AsyncSession,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """远端状态变化直接应用，不进入回写队列."""
        article_id = item_id(1)
        fake_inoreader.items = [make_item(article_id, FEED_A)]
        await service.run_sync()

        fake_inoreader.items = [make_item(article_id, FEED_A, starred=True)]
        result = await service.run_sync()

        article = await async_session.get(Article, article_id)
        await async_session.refresh(article)
        assert article.is_starred
        assert result.metrics.updated_articles == 1
        assert await _count(async_session, SyncQueueEntry) == 0
        assert fake_inoreader.edit_calls == []
