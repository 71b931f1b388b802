"""同步服务 - 与 Inoreader 双向同步."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from newsreader.config import Settings, get_settings
from newsreader.core import metadata
from newsreader.core.budget import ApiUsageTracker, CallBudget
from newsreader.core.distribution import distribute_round_robin, filter_unread
from newsreader.core.inoreader import InoreaderClient, InoreaderError, InoreaderRateLimitError
from newsreader.core.lock import acquire_sync_lock, release_sync_lock
from newsreader.core.queue import DrainResult, QueuePolicy, drain_queue, has_local_change
from newsreader.core.schemas import (
    RemoteSubscription,
    StreamContentsResponse,
    StreamItem,
    SubscriptionListResponse,
    TagListResponse,
    UnreadCountResponse,
)
from newsreader.core.tags import get_or_create_tag, link_article, refresh_tag_counts
from newsreader.models.article import Article
from newsreader.models.feed import Feed
from newsreader.models.folder import Folder
from newsreader.models.sync import SyncQueueEntry, SyncRun
from newsreader.models.tag import ArticleTag, Tag
from newsreader.utils.sanitize import sanitize_error

logger = logging.getLogger(__name__)

SYNC_RUN_RETENTION = timedelta(hours=24)

# 标签、订阅、未读数、文章流
STRUCTURAL_CALLS = 4

RUN_MESSAGES = {
    "completed": "同步完成",
    "partial": "部分完成",
    "failed": "同步失败",
}


class SyncInProgressError(Exception):
    """已有同步在进行."""


@dataclass
class SyncMetrics:
    """单次同步的统计."""

    new_articles: int = 0
    updated_articles: int = 0
    deleted_articles: int = 0
    new_tags: int = 0
    failed_feeds: int = 0
    total_feeds: int = 0
    conflicts: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "newArticles": self.new_articles,
            "updatedArticles": self.updated_articles,
            "deletedArticles": self.deleted_articles,
            "newTags": self.new_tags,
            "failedFeeds": self.failed_feeds,
            "totalFeeds": self.total_feeds,
            "conflicts": self.conflicts,
            "duration": self.duration_ms,
        }


@dataclass
class SyncResult:
    """同步结果（错误也以结果形式返回，不抛给调用方）."""

    sync_id: str
    trigger: str
    status: str = "completed"
    metrics: SyncMetrics = field(default_factory=SyncMetrics)
    retry_after: int | None = None
    error: str | None = None
    remote_calls: int = 0
    pushed_changes: int = 0
    failed_feed_ids: list[str] = field(default_factory=list)
    sidebar: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status in ("completed", "partial")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "syncId": self.sync_id,
            "trigger": self.trigger,
            "status": self.status,
            "success": self.success,
            "metrics": self.metrics.to_dict(),
            "remoteCalls": self.remote_calls,
            "pushedChanges": self.pushed_changes,
            "sidebar": self.sidebar,
        }
        if self.failed_feed_ids:
            data["failedFeedIds"] = self.failed_feed_ids
        if self.retry_after is not None:
            data["retryAfter"] = self.retry_after
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class RemoteSnapshot:
    """一次同步拉取到的远端数据."""

    tags: TagListResponse
    subscriptions: SubscriptionListResponse
    unread_counts: UnreadCountResponse
    stream: StreamContentsResponse


class SyncService:
    """同步服务.

    一次同步（pass）的步骤：
    1. 获取同步锁，检查每日配额
    2. 拉取标签、订阅、未读数、文章流（共 4 次调用）
    3. 本地 upsert：文件夹 -> Feed -> 标签 -> 文章（按 Feed 提交）
    4. 用剩余调用名额回写本地已读/收藏变更
    5. 写入元数据和调用量，释放锁
    """

    def __init__(
        self,
        client: InoreaderClient,
        session: AsyncSession,
        settings: Settings | None = None,
    ) -> None:
        self.client = client
        self.session = session
        self.settings = settings or get_settings()
        self.budget = CallBudget(self.settings.sync_max_calls_per_pass)
        self.policy = QueuePolicy(
            batch_size=self.settings.sync_queue_batch_size,
            max_retries=self.settings.sync_queue_max_retries,
            backoff_minutes=self.settings.sync_queue_backoff_minutes,
        )
        self.tracker = ApiUsageTracker(session, self.settings.inoreader_daily_call_limit)

    async def run_sync(self, trigger: str = "manual", sync_id: str | None = None) -> SyncResult:
        """
        执行一次完整同步.

        Raises:
            SyncInProgressError: 已有同步在进行
        """
        sync_id = sync_id or str(uuid4())
        if not await acquire_sync_lock(
            self.session, sync_id, self.settings.sync_stale_lock_minutes
        ):
            msg = "已有同步正在进行"
            raise SyncInProgressError(msg)

        try:
            return await self._run_locked(sync_id, trigger)
        finally:
            await self.session.rollback()
            await release_sync_lock(self.session, sync_id)

    async def _run_locked(self, sync_id: str, trigger: str) -> SyncResult:
        started = time.monotonic()
        pass_started_ts = int(time.time())
        result = SyncResult(sync_id=sync_id, trigger=trigger)
        call_count_before = self.client.call_count

        await self._start_run(sync_id, trigger)
        logger.info(f"开始同步 {sync_id} ({trigger})")

        imported = False
        try:
            check = await self.tracker.check(STRUCTURAL_CALLS)
            if not check.allowed:
                msg = f"今日 Inoreader 调用配额不足 ({check.used}/{check.limit})"
                raise InoreaderRateLimitError(msg, retry_after=check.retry_after or 0)
            # 每次同步重新计数，且不超过今日剩余配额
            self.budget = CallBudget(
                min(self.settings.sync_max_calls_per_pass, check.remaining)
            )

            remote = await self._fetch_remote(sync_id)
            await self._import(sync_id, remote, result)
            imported = True

            await self._update_run(sync_id, progress=85, message="回写本地变更")
            drain = await self._drain()
            result.pushed_changes = drain.pushed
            if drain.rate_limited:
                result.status = "partial"
                result.retry_after = drain.retry_after
            if result.metrics.failed_feeds:
                result.status = "partial"
        except InoreaderRateLimitError as e:
            await self.session.rollback()
            result.status = "partial"
            result.retry_after = e.retry_after
            result.error = self._sanitize(str(e))
            logger.warning(f"同步 {sync_id} 被限流，{e.retry_after} 秒后可重试")
        except Exception as e:
            await self.session.rollback()
            result.status = "failed"
            result.error = self._sanitize(str(e) or type(e).__name__)
            logger.exception(f"同步 {sync_id} 失败")

        result.remote_calls = self.client.call_count - call_count_before
        result.metrics.duration_ms = int((time.monotonic() - started) * 1000)

        await self._finish(result, pass_started_ts, imported)
        result.sidebar = await get_sidebar_counts(self.session)

        logger.info(
            f"同步 {sync_id} 结束: {result.status}, 新增 {result.metrics.new_articles}, "
            f"更新 {result.metrics.updated_articles}, 远程调用 {result.remote_calls} 次"
        )
        return result

    # ---- 运行记录 ----

    async def _start_run(self, sync_id: str, trigger: str) -> None:
        cutoff = datetime.utcnow() - SYNC_RUN_RETENTION
        await self.session.execute(delete(SyncRun).where(SyncRun.started_at < cutoff))

        run = await self.session.get(SyncRun, sync_id)
        if run is None:
            run = SyncRun(id=sync_id, trigger=trigger)
            self.session.add(run)
        run.status = "running"
        run.message = "开始同步"
        await self.session.commit()
        # 之后只通过 UPDATE 语句更新，避免回滚后访问过期对象
        self.session.expunge(run)

    async def _update_run(self, sync_id: str, **values: Any) -> None:
        await self.session.execute(
            update(SyncRun)
            .where(SyncRun.id == sync_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    # ---- 拉取 ----

    async def _call(self, sync_id: str, progress: int, message: str, func, *args, **kwargs):
        if not self.budget.consume():
            msg = f"超过单次同步调用上限 ({self.budget.max_calls})"
            raise InoreaderError(msg)
        await self._update_run(sync_id, progress=progress, message=message)
        return await func(*args, **kwargs)

    async def _fetch_remote(self, sync_id: str) -> RemoteSnapshot:
        tags = await self._call(sync_id, 5, "获取文件夹和标签", self.client.get_tag_list)
        subscriptions = await self._call(
            sync_id, 15, "获取订阅列表", self.client.get_subscriptions
        )
        unread_counts = await self._call(
            sync_id, 25, "获取未读数", self.client.get_unread_counts
        )

        newer_than = await self._incremental_since()
        if newer_than:
            logger.info(f"增量同步: 自 {datetime.utcfromtimestamp(newer_than)} 起")
        else:
            logger.info("全量同步")
        stream = await self._call(
            sync_id,
            35,
            "获取文章",
            self.client.get_stream_contents,
            count=self.settings.sync_stream_fetch_size,
            exclude_read=True,
            newer_than=newer_than,
        )
        return RemoteSnapshot(
            tags=tags,
            subscriptions=subscriptions,
            unread_counts=unread_counts,
            stream=stream,
        )

    async def _incremental_since(self) -> int | None:
        """增量起点；从未同步或距上次全量超过 N 天时返回 None（全量）."""
        value = await metadata.get_value(self.session, metadata.LAST_INCREMENTAL_TIMESTAMP)
        if not value or not value.isdigit():
            return None
        since = int(value)
        max_age = self.settings.sync_full_interval_days * 86400
        if time.time() - since > max_age:
            return None
        return since

    # ---- 导入 ----

    async def _import(self, sync_id: str, remote: RemoteSnapshot, result: SyncResult) -> None:
        metrics = result.metrics
        subscriptions = remote.subscriptions.subscriptions

        await self._update_run(sync_id, progress=45, message="更新文件夹和订阅源")
        folder_names = await self._upsert_folders(remote.tags, subscriptions)
        await self._upsert_feeds(subscriptions, remote.unread_counts.as_map())
        await self.session.commit()
        metrics.total_feeds = len(subscriptions)

        metrics.deleted_articles = await self._remove_unsubscribed_feeds(subscriptions)
        await self.session.commit()

        tag_ids, metrics.new_tags = await self._upsert_remote_tags(
            remote.tags, remote.stream.items, folder_names
        )
        await self.session.commit()

        items = distribute_round_robin(
            filter_unread(remote.stream.items),
            max_total=self.settings.sync_max_articles,
            max_per_feed=self.settings.sync_max_articles_per_feed,
            feed_key=lambda item: item.feed_id,
        )
        await self._update_run(
            sync_id, progress=55, message="保存文章", total_items=len(items)
        )

        known_feeds = {sub.id for sub in subscriptions}
        by_feed: dict[str, list[StreamItem]] = {}
        for item in items:
            if item.feed_id not in known_feeds:
                logger.warning(f"文章 {item.id} 所属订阅源 {item.feed_id} 未订阅，跳过")
                continue
            by_feed.setdefault(item.feed_id, []).append(item)

        processed = 0
        for feed_id, feed_items in by_feed.items():
            try:
                await self._upsert_feed_articles(feed_id, feed_items, tag_ids, metrics)
                await self.session.commit()
            except Exception:
                # 单个 Feed 失败不影响其他 Feed
                await self.session.rollback()
                metrics.failed_feeds += 1
                result.failed_feed_ids.append(feed_id)
                logger.exception(f"保存订阅源 {feed_id} 的文章失败")
            processed += len(feed_items)
            await self._update_run(
                sync_id,
                items_processed=processed,
                progress=55 + int(30 * processed / max(len(items), 1)),
            )

        await refresh_tag_counts(self.session)
        await self.session.commit()

    async def _upsert_folders(
        self,
        tags: TagListResponse,
        subscriptions: list[RemoteSubscription],
    ) -> set[str]:
        """文件夹来自订阅分类和 tag/list 中 type=folder 的条目，返回文件夹名集合."""
        folders: dict[str, str] = {}
        for tag in tags.tags:
            if tag.type == "folder" and tag.label:
                folders[tag.id] = tag.label
        for sub in subscriptions:
            for category in sub.categories:
                folders[category.id] = category.label

        for folder_id, name in folders.items():
            folder = await self.session.get(Folder, folder_id)
            if folder is None:
                self.session.add(Folder(id=folder_id, name=name))
            elif folder.name != name:
                folder.name = name
                folder.updated_at = datetime.utcnow()
        await self.session.flush()
        return set(folders.values())

    async def _upsert_feeds(
        self,
        subscriptions: list[RemoteSubscription],
        unread_counts: dict[str, int],
    ) -> None:
        new_count = 0
        for sub in subscriptions:
            folder_id = sub.folder.id if sub.folder else None
            feed = await self.session.get(Feed, sub.id)
            if feed is None:
                self.session.add(
                    Feed(
                        id=sub.id,
                        title=sub.title,
                        url=sub.url,
                        site_url=sub.html_url,
                        icon_url=sub.icon_url,
                        folder_id=folder_id,
                        unread_count=unread_counts.get(sub.id, 0),
                    )
                )
                new_count += 1
                continue

            feed.title = sub.title
            feed.url = sub.url
            feed.site_url = sub.html_url
            feed.icon_url = sub.icon_url
            feed.folder_id = folder_id
            feed.unread_count = unread_counts.get(sub.id, 0)
            feed.updated_at = datetime.utcnow()

        if new_count:
            logger.info(f"新增 {new_count} 个订阅源")

    async def _remove_unsubscribed_feeds(self, subscriptions: list[RemoteSubscription]) -> int:
        """删除远端已取消订阅的 Feed 及其文章，返回删除的文章数."""
        if not subscriptions:
            # 空列表更可能是远端异常，不做清理
            logger.warning("订阅列表为空，跳过清理")
            return 0

        remote_ids = {sub.id for sub in subscriptions}
        local_ids = (await self.session.execute(select(Feed.id))).scalars().all()
        removed = [feed_id for feed_id in local_ids if feed_id not in remote_ids]
        if not removed:
            return 0

        article_ids = select(Article.id).where(Article.feed_id.in_(removed))  # type: ignore[attr-defined]
        await self.session.execute(
            delete(ArticleTag).where(ArticleTag.article_id.in_(article_ids))  # type: ignore[attr-defined]
        )
        await self.session.execute(
            delete(SyncQueueEntry).where(SyncQueueEntry.article_id.in_(article_ids))  # type: ignore[attr-defined]
        )
        deleted = await self.session.execute(
            delete(Article).where(Article.feed_id.in_(removed))  # type: ignore[attr-defined]
        )
        await self.session.execute(delete(Feed).where(Feed.id.in_(removed)))  # type: ignore[attr-defined]
        logger.info(f"删除 {len(removed)} 个已取消订阅的订阅源，{deleted.rowcount} 篇文章")
        return deleted.rowcount

    async def _upsert_remote_tags(
        self,
        tags: TagListResponse,
        items: list[StreamItem],
        folder_names: set[str],
    ) -> tuple[dict[str, int], int]:
        """远端 label（不含文件夹）映射为本地标签，返回 (label -> tag_id, 新增数)."""
        labels: list[str] = []
        for tag in tags.tags:
            if tag.type != "folder" and tag.label:
                labels.append(tag.label)
        for item in items:
            labels.extend(item.labels)

        tag_ids: dict[str, int] = {}
        new_count = 0
        for label in labels:
            if label in folder_names or label in tag_ids:
                continue
            tag, created = await get_or_create_tag(self.session, label, is_remote=True)
            tag_ids[label] = tag.id  # type: ignore[assignment]
            if created:
                new_count += 1
        return tag_ids, new_count

    async def _upsert_feed_articles(
        self,
        feed_id: str,
        items: list[StreamItem],
        tag_ids: dict[str, int],
        metrics: SyncMetrics,
    ) -> None:
        now = datetime.utcnow()
        new_count = 0
        updated_count = 0

        for item in items:
            article = await self.session.get(Article, item.id)
            if article is None:
                self.session.add(
                    Article(
                        id=item.id,
                        feed_id=feed_id,
                        title=item.display_title,
                        author=item.author,
                        url=item.link,
                        content=item.body,
                        published_at=item.published_at,
                        is_read=item.is_read,
                        is_starred=item.is_starred,
                        last_sync_update=now,
                    )
                )
                await self.session.flush()
                new_count += 1
            elif self._apply_remote(article, feed_id, item, now, metrics):
                updated_count += 1

            for label in item.labels:
                if label in tag_ids:
                    await link_article(self.session, item.id, tag_ids[label])

        metrics.new_articles += new_count
        metrics.updated_articles += updated_count

    def _apply_remote(
        self,
        article: Article,
        feed_id: str,
        item: StreamItem,
        now: datetime,
        metrics: SyncMetrics,
    ) -> bool:
        """用远端数据更新已有文章，返回是否有变化."""
        changed = False
        fields = {
            "feed_id": feed_id,
            "title": item.display_title,
            "author": item.author,
            "url": item.link,
            "content": item.body,
            "published_at": item.published_at,
        }
        for name, value in fields.items():
            if getattr(article, name) != value:
                setattr(article, name, value)
                changed = True

        state_differs = (
            article.is_read != item.is_read or article.is_starred != item.is_starred
        )
        if has_local_change(article):
            # 本地修改较新：保留本地状态，等待回写队列推送
            if state_differs:
                metrics.conflicts += 1
                logger.info(f"文章 {article.id} 本地修改较新，保留本地状态")
        else:
            if state_differs:
                if article.last_local_update is not None:
                    metrics.conflicts += 1
                article.is_read = item.is_read
                article.is_starred = item.is_starred
                changed = True
            article.last_sync_update = now

        if changed:
            article.updated_at = now
        return changed

    # ---- 回写 ----

    async def _drain(self) -> DrainResult:
        if self.budget.remaining <= 0:
            logger.info("本次同步调用名额已用完，回写留到下次")
            return DrainResult()
        return await drain_queue(self.session, self.client, self.budget, self.policy)

    # ---- 收尾 ----

    async def _finish(
        self,
        result: SyncResult,
        pass_started_ts: int,
        imported: bool,
    ) -> None:
        session = self.session
        now = datetime.utcnow()

        if imported:
            await metadata.set_value(session, metadata.LAST_SYNC_TIME, now.isoformat())
        if imported and not result.metrics.failed_feeds:
            # 有 Feed 导入失败时保留旧起点，下次重新拉取这些文章
            await metadata.set_value(
                session, metadata.LAST_INCREMENTAL_TIMESTAMP, str(pass_started_ts)
            )
        if result.status == "failed":
            await metadata.increment(session, metadata.FAILURE_COUNT)
        elif imported:
            await metadata.increment(session, metadata.SUCCESS_COUNT)

        await metadata.set_value(session, metadata.LAST_STATUS, result.status)
        await metadata.set_value(session, metadata.LAST_ERROR, result.error or "")
        await metadata.set_value(
            session,
            metadata.LAST_RETRY_AFTER,
            str(result.retry_after) if result.retry_after is not None else "",
        )

        if result.remote_calls:
            await self.tracker.record(result.remote_calls, self.client.rate_limit)
        await session.commit()

        metrics = result.metrics
        await self._update_run(
            result.sync_id,
            status=result.status,
            progress=100,
            message=RUN_MESSAGES.get(result.status, result.status),
            new_articles=metrics.new_articles,
            updated_articles=metrics.updated_articles,
            deleted_articles=metrics.deleted_articles,
            new_tags=metrics.new_tags,
            failed_feeds=metrics.failed_feeds,
            total_feeds=metrics.total_feeds,
            remote_calls=result.remote_calls,
            retry_after=result.retry_after,
            error_message=result.error,
            completed_at=now,
        )

    def _sanitize(self, message: str) -> str:
        secrets = [
            getattr(self.client.config, "access_token", ""),
            self.settings.inoreader_app_key,
        ]
        return sanitize_error(message, secrets)


async def get_sidebar_counts(session: AsyncSession) -> dict[str, Any]:
    """侧边栏未读数：按 Feed 和按标签."""
    feed_stmt = (
        select(Article.feed_id, func.count())
        .where(Article.is_read == False)  # noqa: E712
        .group_by(Article.feed_id)
    )
    feed_counts = [[feed_id, count] for feed_id, count in (await session.execute(feed_stmt)).all()]

    tag_stmt = (
        select(Tag.id, Tag.name, Tag.slug, func.count(Article.id))
        .join(ArticleTag, ArticleTag.tag_id == Tag.id, isouter=True)
        .join(
            Article,
            (Article.id == ArticleTag.article_id) & (Article.is_read == False),  # noqa: E712
            isouter=True,
        )
        .group_by(Tag.id, Tag.name, Tag.slug)
        .order_by(Tag.name)
    )
    tags = [
        {"id": tag_id, "name": name, "slug": slug, "count": unread}
        for tag_id, name, slug, unread in (await session.execute(tag_stmt)).all()
    ]
    return {"feedCounts": feed_counts, "tags": tags}
