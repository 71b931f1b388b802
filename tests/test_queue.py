"""测试回写队列."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from newsreader.core.budget import CallBudget
from newsreader.core.inoreader import InoreaderClient
from newsreader.core.queue import (
    QueuePolicy,
    clear_exhausted,
    drain_queue,
    enqueue_change,
    get_queue_stats,
    has_local_change,
)
from newsreader.core.schemas import READ_STATE, STARRED_STATE
from newsreader.models.article import Article
from newsreader.models.feed import Feed
from newsreader.models.sync import SyncQueueEntry

from conftest import FakeInoreader

POLICY = QueuePolicy(batch_size=100, max_retries=3, backoff_minutes=10)


@pytest.fixture
async def articles(async_session: AsyncSession) -> list[Article]:
    """三篇有本地修改的文章."""
    async_session.add(Feed(id="feed/q", title="Queue Feed", url="https://q.example.com/rss"))
    now = datetime.utcnow()
    items = [
        Article(
            id=f"queue-{i}",
            feed_id="feed/q",
            title=f"Queue {i}",
            is_read=True,
            last_local_update=now,
            last_sync_update=now - timedelta(hours=1),
        )
        for i in range(3)
    ]
    async_session.add_all(items)
    await async_session.commit()
    return items


async def _entries(session: AsyncSession) -> list[SyncQueueEntry]:
    return list((await session.execute(select(SyncQueueEntry))).scalars().all())


class TestEnqueue:
    """入队测试."""

    async def test_opposite_actions_coalesce(
        self, async_session: AsyncSession, articles: list[Article]
    ) -> None:
        """先已读再未读，只保留最后一次."""
        await enqueue_change(async_session, articles[0], "read")
        await enqueue_change(async_session, articles[0], "unread")
        await async_session.commit()

        entries = await _entries(async_session)
        assert [e.action_type for e in entries] == ["unread"]

    async def test_read_and_star_are_independent(
        self, async_session: AsyncSession, articles: list[Article]
    ) -> None:
        """已读和收藏分别记录."""
        await enqueue_change(async_session, articles[0], "read")
        await enqueue_change(async_session, articles[0], "star")
        await async_session.commit()

        assert sorted(e.action_type for e in await _entries(async_session)) == ["read", "star"]

    async def test_unknown_action(
        self, async_session: AsyncSession, articles: list[Article]
    ) -> None:
        """未知动作报错."""
        with pytest.raises(ValueError):
            await enqueue_change(async_session, articles[0], "archive")


class TestDrain:
    """回写测试."""

    async def test_batches_by_action(
        self,
        async_session: AsyncSession,
        articles: list[Article],
        inoreader: InoreaderClient,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """同一动作合并为一次请求，成功后删除并记录同步时间."""
        await enqueue_change(async_session, articles[0], "read")
        await enqueue_change(async_session, articles[1], "read")
        await enqueue_change(async_session, articles[2], "star")
        await async_session.commit()

        result = await drain_queue(async_session, inoreader, CallBudget(5), POLICY)

        assert result.pushed == 3
        assert result.calls == 2
        assert fake_inoreader.edit_calls == [
            {"i": ["queue-0", "queue-1"], "a": [READ_STATE]},
            {"i": ["queue-2"], "a": [STARRED_STATE]},
        ]
        assert await _entries(async_session) == []
        for article in articles:
            await async_session.refresh(article)
            assert not has_local_change(article)

    async def test_failure_sets_backoff(
        self,
        async_session: AsyncSession,
        articles: list[Article],
        inoreader: InoreaderClient,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """失败后记录重试次数，退避期内不再尝试."""
        await enqueue_change(async_session, articles[0], "read")
        await async_session.commit()
        fake_inoreader.failures["edit-tag"] = 500

        first = await drain_queue(async_session, inoreader, CallBudget(5), POLICY)
        assert first.failed == 1

        entry = (await _entries(async_session))[0]
        assert entry.sync_attempts == 1
        assert entry.last_attempt_at is not None

        second = await drain_queue(async_session, inoreader, CallBudget(5), POLICY)
        assert second.backing_off == 1
        assert second.calls == 0

        # 退避时间过后重试成功
        entry.last_attempt_at = datetime.utcnow() - timedelta(minutes=11)
        await async_session.commit()
        fake_inoreader.failures.clear()

        third = await drain_queue(async_session, inoreader, CallBudget(5), POLICY)
        assert third.pushed == 1
        assert await _entries(async_session) == []

    async def test_backoff_grows_exponentially(self) -> None:
        """退避时间指数增长."""
        assert POLICY.backoff(0) == timedelta(0)
        assert POLICY.backoff(1) == timedelta(minutes=10)
        assert POLICY.backoff(2) == timedelta(minutes=20)
        assert POLICY.backoff(3) == timedelta(minutes=40)

    async def test_retry_ceiling(
        self,
        async_session: AsyncSession,
        articles: list[Article],
        inoreader: InoreaderClient,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """达到最大重试次数后不再自动尝试，可手动清理."""
        entry = await enqueue_change(async_session, articles[0], "read")
        entry.sync_attempts = 3
        entry.last_attempt_at = datetime.utcnow() - timedelta(days=1)
        await async_session.commit()

        result = await drain_queue(async_session, inoreader, CallBudget(5), POLICY)

        assert result.calls == 0
        assert fake_inoreader.edit_calls == []
        stats = await get_queue_stats(async_session, POLICY.max_retries)
        assert stats["exhausted"] == 1
        assert stats["total"] == 1
        assert stats["by_action"] == {"read": 1}

        assert await clear_exhausted(async_session, POLICY.max_retries) == 1
        assert await _entries(async_session) == []

    async def test_stale_entries_dropped(
        self,
        async_session: AsyncSession,
        articles: list[Article],
        inoreader: InoreaderClient,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """已被同步覆盖的变更直接删除，不推送."""
        await enqueue_change(async_session, articles[0], "read")
        articles[0].last_sync_update = datetime.utcnow() + timedelta(seconds=1)
        await async_session.commit()

        result = await drain_queue(async_session, inoreader, CallBudget(5), POLICY)

        assert result.stale == 1
        assert result.calls == 0
        assert fake_inoreader.edit_calls == []
        assert await _entries(async_session) == []

    async def test_rate_limit_keeps_entries(
        self,
        async_session: AsyncSession,
        articles: list[Article],
        inoreader: InoreaderClient,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """限流时条目原样保留，不计入重试次数."""
        await enqueue_change(async_session, articles[0], "read")
        await enqueue_change(async_session, articles[1], "star")
        await async_session.commit()
        fake_inoreader.failures["edit-tag"] = 429

        result = await drain_queue(async_session, inoreader, CallBudget(5), POLICY)

        assert result.rate_limited
        assert result.retry_after == 120
        assert result.calls == 1
        entries = await _entries(async_session)
        assert len(entries) == 2
        assert all(e.sync_attempts == 0 for e in entries)

    async def test_respects_budget(
        self,
        async_session: AsyncSession,
        articles: list[Article],
        inoreader: InoreaderClient,
        fake_inoreader: FakeInoreader,
    ) -> None:
        """调用名额用完后剩余变更留到下次."""
        await enqueue_change(async_session, articles[0], "read")
        await enqueue_change(async_session, articles[1], "star")
        await async_session.commit()

        result = await drain_queue(async_session, inoreader, CallBudget(1), POLICY)

        assert result.calls == 1
        assert result.pushed == 1
        assert result.deferred == 1
        assert len(fake_inoreader.edit_calls) == 1
        assert len(await _entries(async_session)) == 1
