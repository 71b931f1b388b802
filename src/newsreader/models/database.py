"""数据库初始化和会话管理."""

import logging
from collections.abc import AsyncGenerator
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

logger = logging.getLogger(__name__)

# 全局引擎和会话工厂
_engine: Any = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(database_url: str) -> None:
    """初始化数据库，创建所有表."""
    global _engine, _session_factory

    # 确保所有表模型已注册到 metadata
    import newsreader.models  # noqa: F401

    _engine = create_async_engine(database_url, echo=False)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    """释放数据库连接."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def reset_stuck_states() -> None:
    """重置卡住的中间状态（服务重启后恢复）."""
    from newsreader.core.lock import release_stale_lock
    from newsreader.models.sync import SyncRun

    if _session_factory is None:
        return

    async with _session_factory() as session:
        result = await session.execute(
            update(SyncRun)
            .where(SyncRun.status.in_(["pending", "running"]))  # type: ignore[attr-defined]
            .values(
                status="failed",
                error_message="服务重启，同步被中断",
                completed_at=datetime.utcnow(),
            )
        )
        interrupted = result.rowcount
        await session.commit()

        released = await release_stale_lock(session, force=True)

    if interrupted or released:
        logger.info(f"已重置卡住的状态: 中断的同步={interrupted}, 释放同步锁={released}")


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """获取数据库会话（用于依赖注入）."""
    if _session_factory is None:
        msg = "数据库未初始化，请先调用 init_db()"
        raise RuntimeError(msg)

    async with _session_factory() as session:
        yield session


def async_session_maker() -> async_sessionmaker[AsyncSession]:
    """获取会话工厂（用于后台任务）."""
    if _session_factory is None:
        msg = "数据库未初始化，请先调用 init_db()"
        raise RuntimeError(msg)
    return _session_factory
