"""定时任务定义."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from newsreader.config import Settings

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def sync_task(settings: Settings) -> None:
    """同步任务：与 Inoreader 双向同步."""
    from newsreader.core.inoreader import (
        InoreaderAuthError,
        InoreaderClient,
        InoreaderConfig,
    )
    from newsreader.core.sync import SyncInProgressError, SyncService
    from newsreader.models.database import async_session_maker

    try:
        config = InoreaderConfig.from_settings(settings)
    except InoreaderAuthError as e:
        logger.warning(f"Inoreader 未配置，跳过同步: {e}")
        return

    logger.info("开始定时同步...")

    try:
        session_factory = async_session_maker()
        async with InoreaderClient(config) as client, session_factory() as session:
            result = await SyncService(client, session, settings).run_sync(trigger="scheduled")
            logger.info(
                f"定时同步完成: 状态={result.status}, "
                f"新增={result.metrics.new_articles}, 更新={result.metrics.updated_articles}"
            )
    except SyncInProgressError:
        logger.info("已有同步在运行，跳过本次调度")
    except Exception as e:
        logger.exception(f"同步任务失败: {e}")


def build_sync_trigger(settings: Settings) -> CronTrigger:
    """按配置的小时列表（如 "2,14"）在指定时区整点触发."""
    return CronTrigger(hour=settings.sync_cron_hours, minute=0, timezone=settings.sync_timezone)


def create_scheduler(settings: Settings) -> AsyncIOScheduler | None:
    """创建并启动定时任务调度器."""
    global _scheduler

    if not settings.sync_enabled:
        logger.info("定时同步已禁用")
        return None

    _scheduler = AsyncIOScheduler(timezone=settings.sync_timezone)
    _scheduler.add_job(
        sync_task,
        build_sync_trigger(settings),
        args=[settings],
        id="sync_task",
        name="Inoreader 同步",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=3600,
    )

    _scheduler.start()
    logger.info(
        f"定时任务调度器已启动，同步时间: 每天 {settings.sync_cron_hours} 点 ({settings.sync_timezone})"
    )

    return _scheduler


async def shutdown_scheduler() -> None:
    """关闭定时任务调度器."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        logger.info("定时任务调度器已关闭")
        _scheduler = None
