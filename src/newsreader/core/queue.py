"""本地已读/收藏变更回写队列."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from newsreader.core.budget import CallBudget
from newsreader.core.inoreader import (
    InoreaderClient,
    InoreaderError,
    InoreaderRateLimitError,
)
from newsreader.core.schemas import READ_STATE, STARRED_STATE
from newsreader.models.article import Article
from newsreader.models.sync import SyncQueueEntry

logger = logging.getLogger(__name__)

# action -> (添加/移除, 状态标签)
ACTION_TAGS: dict[str, tuple[str, str]] = {
    "read": ("add", READ_STATE),
    "unread": ("remove", READ_STATE),
    "star": ("add", STARRED_STATE),
    "unstar": ("remove", STARRED_STATE),
}

OPPOSITE_ACTION = {
    "read": "unread",
    "unread": "read",
    "star": "unstar",
    "unstar": "star",
}


@dataclass
class QueuePolicy:
    """回写重试策略."""

    batch_size: int = 100
    max_retries: int = 3
    backoff_minutes: int = 10

    def backoff(self, attempts: int) -> timedelta:
        """第 attempts 次失败后需要等待的时间（指数退避）."""
        if attempts <= 0:
            return timedelta(0)
        return timedelta(minutes=self.backoff_minutes * 2 ** (attempts - 1))


@dataclass
class DrainResult:
    """一次回写的结果."""

    pushed: int = 0
    failed: int = 0
    stale: int = 0
    backing_off: int = 0
    deferred: int = 0
    calls: int = 0
    rate_limited: bool = False
    retry_after: int | None = None


def has_local_change(article: Article) -> bool:
    """本地修改是否晚于最近一次同步写入."""
    if article.last_local_update is None:
        return False
    if article.last_sync_update is None:
        return True
    return article.last_local_update > article.last_sync_update


async def enqueue_change(
    session: AsyncSession,
    article: Article,
    action: str,
) -> SyncQueueEntry:
    """
    记录一次本地状态变更（不提交事务）.

    同一篇文章同一属性只保留最后一次变更，例如先标记已读再标记未读，
    队列中只剩 unread。
    """
    if action not in ACTION_TAGS:
        msg = f"未知的回写动作: {action}"
        raise ValueError(msg)

    await session.execute(
        delete(SyncQueueEntry)
        .where(SyncQueueEntry.article_id == article.id)
        .where(SyncQueueEntry.action_type.in_([action, OPPOSITE_ACTION[action]]))  # type: ignore[attr-defined]
    )
    entry = SyncQueueEntry(article_id=article.id, action_type=action)
    session.add(entry)
    return entry


async def drain_queue(
    session: AsyncSession,
    client: InoreaderClient,
    budget: CallBudget,
    policy: QueuePolicy,
) -> DrainResult:
    """
    把队列中的本地变更批量推送到 Inoreader.

    - 超过最大重试次数的条目保留在队列中，但不再自动重试
    - 仍在退避窗口内的条目本次跳过
    - 同步之后已被远端状态覆盖的条目直接删除，不再推送
    - 调用次数受 budget 限制，超出部分留到下次
    """
    result = DrainResult()
    now = datetime.utcnow()

    stmt = (
        select(SyncQueueEntry)
        .where(SyncQueueEntry.sync_attempts < policy.max_retries)
        .order_by(SyncQueueEntry.created_at, SyncQueueEntry.id)
    )
    entries = (await session.execute(stmt)).scalars().all()
    if not entries:
        logger.info("回写队列为空")
        return result

    ready: list[SyncQueueEntry] = []
    stale_ids: list[int] = []
    for entry in entries:
        if entry.sync_attempts > 0 and entry.last_attempt_at:
            if now < entry.last_attempt_at + policy.backoff(entry.sync_attempts):
                result.backing_off += 1
                continue

        article = await session.get(Article, entry.article_id)
        if article is None or not has_local_change(article):
            stale_ids.append(entry.id)  # type: ignore[arg-type]
            continue
        ready.append(entry)

    if stale_ids:
        await session.execute(
            delete(SyncQueueEntry).where(SyncQueueEntry.id.in_(stale_ids))  # type: ignore[union-attr]
        )
        await session.commit()
        result.stale = len(stale_ids)
        logger.info(f"删除 {len(stale_ids)} 条已被同步覆盖的回写记录")

    groups: dict[str, list[SyncQueueEntry]] = {action: [] for action in ACTION_TAGS}
    for entry in ready:
        groups[entry.action_type].append(entry)

    for action, group in groups.items():
        for start in range(0, len(group), policy.batch_size):
            batch = group[start : start + policy.batch_size]

            if result.rate_limited or not budget.consume():
                result.deferred += len(batch)
                continue

            result.calls += 1
            mode, state = ACTION_TAGS[action]
            item_ids = [entry.article_id for entry in batch]

            try:
                if mode == "add":
                    await client.edit_tag(item_ids, add=state)
                else:
                    await client.edit_tag(item_ids, remove=state)
            except InoreaderRateLimitError as e:
                result.rate_limited = True
                result.retry_after = e.retry_after
                result.deferred += len(batch)
                logger.warning(f"回写触发限流，剩余变更留到下次同步: {action}")
                continue
            except InoreaderError as e:
                # 回写失败对用户不可见，记录重试信息即可
                await _record_failure(session, batch, policy)
                result.failed += len(batch)
                logger.warning(f"回写 {len(batch)} 条 {action} 失败: {e}")
                continue

            await _record_success(session, batch)
            result.pushed += len(batch)
            logger.info(f"已回写 {len(batch)} 条 {action} 变更")

    return result


async def _record_success(session: AsyncSession, batch: list[SyncQueueEntry]) -> None:
    now = datetime.utcnow()
    for entry in batch:
        article = await session.get(Article, entry.article_id)
        if article:
            # 远端已与本地一致
            article.last_sync_update = now
    await session.execute(
        delete(SyncQueueEntry).where(
            SyncQueueEntry.id.in_([entry.id for entry in batch])  # type: ignore[union-attr]
        )
    )
    await session.commit()


async def _record_failure(
    session: AsyncSession,
    batch: list[SyncQueueEntry],
    policy: QueuePolicy,
) -> None:
    now = datetime.utcnow()
    for entry in batch:
        entry.sync_attempts += 1
        entry.last_attempt_at = now
        if entry.sync_attempts < policy.max_retries:
            wait = policy.backoff(entry.sync_attempts)
            logger.info(
                f"回写 {entry.article_id} 将在 {wait.total_seconds() / 60:.0f} 分钟后重试 "
                f"(第 {entry.sync_attempts}/{policy.max_retries} 次)"
            )
        else:
            logger.info(f"回写 {entry.article_id} 已达最大重试次数，不再自动重试")
    await session.commit()


async def get_queue_stats(session: AsyncSession, max_retries: int) -> dict:
    """回写队列诊断统计."""
    stmt = select(
        func.count().filter(SyncQueueEntry.sync_attempts == 0),
        func.count().filter(
            SyncQueueEntry.sync_attempts > 0,
            SyncQueueEntry.sync_attempts < max_retries,
        ),
        func.count().filter(SyncQueueEntry.sync_attempts >= max_retries),
        func.min(SyncQueueEntry.created_at),
    )
    pending, retrying, exhausted, oldest = (await session.execute(stmt)).one()

    by_action_stmt = select(SyncQueueEntry.action_type, func.count()).group_by(
        SyncQueueEntry.action_type
    )
    by_action = dict((await session.execute(by_action_stmt)).all())

    return {
        "pending": pending,
        "retrying": retrying,
        "exhausted": exhausted,
        "total": pending + retrying + exhausted,
        "by_action": by_action,
        "oldest_created_at": oldest.isoformat() if oldest else None,
    }


async def clear_exhausted(session: AsyncSession, max_retries: int) -> int:
    """删除已达最大重试次数的条目（运维操作）."""
    result = await session.execute(
        delete(SyncQueueEntry).where(SyncQueueEntry.sync_attempts >= max_retries)
    )
    await session.commit()
    logger.info(f"已清理 {result.rowcount} 条重试耗尽的回写记录")
    return result.rowcount
