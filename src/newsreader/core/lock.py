"""同步互斥锁：保存在 sync_metadata 中，进程重启后依然有效."""

import logging
from datetime import datetime, timedelta

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from newsreader.core.metadata import SYNC_LOCK
from newsreader.models.sync import SyncMetadata

logger = logging.getLogger(__name__)


async def _ensure_lock_row(session: AsyncSession) -> None:
    if await session.get(SyncMetadata, SYNC_LOCK) is not None:
        return
    session.add(SyncMetadata(key=SYNC_LOCK, value=""))
    try:
        await session.commit()
    except IntegrityError:
        # 另一个进程刚好插入了同一行
        await session.rollback()


async def acquire_sync_lock(
    session: AsyncSession,
    owner: str,
    stale_minutes: int = 30,
) -> bool:
    """
    原子地获取同步锁.

    锁空闲，或持有时间超过 stale_minutes（视为进程崩溃遗留）时获取成功。
    """
    await _ensure_lock_row(session)

    now = datetime.utcnow()
    stale_before = now - timedelta(minutes=stale_minutes)
    result = await session.execute(
        update(SyncMetadata)
        .where(SyncMetadata.key == SYNC_LOCK)
        .where(
            or_(
                SyncMetadata.value == "",
                SyncMetadata.updated_at < stale_before,
            )
        )
        .values(value=owner, updated_at=now)
    )
    await session.commit()

    acquired = result.rowcount == 1
    if not acquired:
        logger.info(f"同步锁已被占用，{owner} 放弃本次同步")
    return acquired


async def release_sync_lock(session: AsyncSession, owner: str) -> None:
    """释放自己持有的同步锁."""
    await session.execute(
        update(SyncMetadata)
        .where(SyncMetadata.key == SYNC_LOCK)
        .where(SyncMetadata.value == owner)
        .values(value="", updated_at=datetime.utcnow())
    )
    await session.commit()


async def release_stale_lock(
    session: AsyncSession,
    stale_minutes: int = 30,
    force: bool = False,
) -> bool:
    """释放过期（或全部，force=True）的同步锁，返回是否释放了锁."""
    stmt = (
        update(SyncMetadata)
        .where(SyncMetadata.key == SYNC_LOCK)
        .where(SyncMetadata.value != "")
    )
    if not force:
        stale_before = datetime.utcnow() - timedelta(minutes=stale_minutes)
        stmt = stmt.where(SyncMetadata.updated_at < stale_before)

    result = await session.execute(stmt.values(value="", updated_at=datetime.utcnow()))
    await session.commit()
    return result.rowcount > 0


async def is_sync_running(session: AsyncSession) -> bool:
    """是否有同步正在进行."""
    item = await session.get(SyncMetadata, SYNC_LOCK)
    return bool(item and item.value)
