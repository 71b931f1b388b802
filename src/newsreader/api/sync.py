"""同步 API."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from newsreader.api.deps import get_inoreader_client
from newsreader.config import Settings, get_settings
from newsreader.core import metadata
from newsreader.core.budget import ApiUsageTracker
from newsreader.core.inoreader import InoreaderClient
from newsreader.core.lock import is_sync_running
from newsreader.core.queue import clear_exhausted, get_queue_stats
from newsreader.core.sync import SyncInProgressError, SyncService
from newsreader.models.database import get_session
from newsreader.models.sync import SyncRun

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _run_to_dict(run: SyncRun) -> dict:
    return {
        "syncId": run.id,
        "trigger": run.trigger,
        "status": run.status,
        "progress": run.progress,
        "message": run.message,
        "itemsProcessed": run.items_processed,
        "totalItems": run.total_items,
        "metrics": {
            "newArticles": run.new_articles,
            "updatedArticles": run.updated_articles,
            "deletedArticles": run.deleted_articles,
            "newTags": run.new_tags,
            "failedFeeds": run.failed_feeds,
            "totalFeeds": run.total_feeds,
        },
        "remoteCalls": run.remote_calls,
        "retryAfter": run.retry_after,
        "error": run.error_message,
        "startedAt": run.started_at.isoformat(),
        "completedAt": run.completed_at.isoformat() if run.completed_at else None,
    }


@router.post("")
async def trigger_sync(
    session: AsyncSession = Depends(get_session),
    client: InoreaderClient = Depends(get_inoreader_client),
    settings: Settings = Depends(get_settings),
) -> dict:
    """手动触发同步（等待完成后返回结果）."""
    service = SyncService(client, session, settings)
    try:
        result = await service.run_sync(trigger="manual")
    except SyncInProgressError as e:
        raise HTTPException(
            status_code=409,
            detail={"error": "SYNC_IN_PROGRESS", "message": str(e)},
        ) from e

    body = result.to_dict()
    if result.retry_after is not None:
        return JSONResponse(
            status_code=429,
            content=body,
            headers={"Retry-After": str(result.retry_after)},
        )  # type: ignore[return-value]
    if result.status == "failed":
        return JSONResponse(status_code=500, content=body)  # type: ignore[return-value]
    return body


@router.get("/status/{sync_id}")
async def get_sync_status(
    sync_id: str,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """查询同步进度（记录保留 24 小时）."""
    run = await session.get(SyncRun, sync_id)
    if not run:
        raise HTTPException(status_code=404, detail="同步记录不存在")
    return _run_to_dict(run)


@router.get("/last-sync")
async def get_last_sync(
    session: AsyncSession = Depends(get_session),
) -> dict:
    """最近一次同步信息."""
    stmt = select(SyncRun).order_by(SyncRun.started_at.desc()).limit(1)  # type: ignore[attr-defined]
    latest = (await session.execute(stmt)).scalar_one_or_none()

    # 优先用元数据；没有时退回最近一次成功的运行记录
    last_sync_time = await metadata.get_value(session, metadata.LAST_SYNC_TIME)
    source = "sync_metadata" if last_sync_time else "none"
    if not last_sync_time:
        done_stmt = (
            select(SyncRun)
            .where(SyncRun.status.in_(["completed", "partial"]))  # type: ignore[attr-defined]
            .where(SyncRun.completed_at.is_not(None))  # type: ignore[union-attr]
            .order_by(SyncRun.completed_at.desc())  # type: ignore[union-attr]
            .limit(1)
        )
        done = (await session.execute(done_stmt)).scalar_one_or_none()
        if done:
            last_sync_time = done.completed_at.isoformat()  # type: ignore[union-attr]
            source = "sync_status"

    retry_after = await metadata.get_value(session, metadata.LAST_RETRY_AFTER)
    return {
        "lastSyncTime": last_sync_time,
        "source": source,
        "status": await metadata.get_value(session, metadata.LAST_STATUS),
        "error": await metadata.get_value(session, metadata.LAST_ERROR),
        "retryAfter": int(retry_after) if retry_after else None,
        "isRunning": await is_sync_running(session),
        "latestRun": _run_to_dict(latest) if latest else None,
    }


@router.get("/metadata")
async def get_sync_metadata(
    session: AsyncSession = Depends(get_session),
) -> dict:
    """同步元数据（运维诊断）."""
    items = await metadata.get_all(session)
    lock_owner = items.pop(metadata.SYNC_LOCK, "")
    return {
        "metadata": items,
        "isRunning": bool(lock_owner),
        "lockOwner": lock_owner or None,
    }


@router.get("/queue")
async def get_queue(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    """回写队列状态."""
    return await get_queue_stats(session, settings.sync_queue_max_retries)


@router.delete("/queue/exhausted")
async def delete_exhausted(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    """清理重试耗尽的回写记录."""
    removed = await clear_exhausted(session, settings.sync_queue_max_retries)
    return {"removed": removed}


@router.get("/api-usage")
async def get_api_usage(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    """今日 Inoreader 调用量."""
    tracker = ApiUsageTracker(session, settings.inoreader_daily_call_limit)
    usage = await tracker.get_today()
    check = await tracker.check()
    return {
        "date": usage.usage_date.isoformat() if usage else None,
        "count": usage.count if usage else 0,
        "limit": check.limit,
        "remaining": check.remaining,
        "allowed": check.allowed,
        "zone1": {
            "usage": usage.zone1_usage if usage else None,
            "limit": usage.zone1_limit if usage else None,
        },
        "zone2": {
            "usage": usage.zone2_usage if usage else None,
            "limit": usage.zone2_limit if usage else None,
        },
        "resetAfter": usage.reset_after if usage else None,
    }
