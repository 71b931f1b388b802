"""同步元数据读写（键值表）."""

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from newsreader.models.sync import SyncMetadata

LAST_SYNC_TIME = "last_sync_time"
LAST_INCREMENTAL_TIMESTAMP = "last_incremental_sync_timestamp"
SUCCESS_COUNT = "sync_success_count"
FAILURE_COUNT = "sync_failure_count"
LAST_STATUS = "last_sync_status"
LAST_ERROR = "last_sync_error"
LAST_RETRY_AFTER = "last_rate_limit_retry_after"
SYNC_LOCK = "sync_lock"


async def get_value(session: AsyncSession, key: str) -> str | None:
    """读取元数据，不存在或为空返回 None."""
    item = await session.get(SyncMetadata, key)
    if item is None or item.value == "":
        return None
    return item.value


async def set_value(session: AsyncSession, key: str, value: str) -> None:
    """写入元数据（不提交事务）."""
    item = await session.get(SyncMetadata, key)
    if item is None:
        session.add(SyncMetadata(key=key, value=value))
        return
    item.value = value
    item.updated_at = datetime.utcnow()


async def increment(session: AsyncSession, key: str) -> int:
    """计数器加一（不提交事务）."""
    current = await get_value(session, key)
    value = int(current) + 1 if current and current.isdigit() else 1
    await set_value(session, key, str(value))
    return value


async def get_all(session: AsyncSession) -> dict[str, str]:
    """读取全部元数据."""
    from sqlmodel import select

    result = await session.execute(select(SyncMetadata))
    return {item.key: item.value for item in result.scalars().all()}
