"""NewsReader 主应用入口."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from newsreader.api import analytics, articles, feeds, sync, tags
from newsreader.config import get_settings
from newsreader.models.database import close_db, init_db, reset_stuck_states
from newsreader.scheduler import create_scheduler, shutdown_scheduler

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """应用生命周期管理."""
    app_settings = get_settings()
    logging.getLogger().setLevel(app_settings.log_level)

    logger.info("正在初始化数据库...")
    await init_db(app_settings.database_url)

    # 上次进程异常退出时可能遗留同步锁和 running 状态
    logger.info("正在检查并重置卡住的状态...")
    await reset_stuck_states()

    logger.info("正在启动定时任务...")
    create_scheduler(app_settings)

    logger.info("NewsReader 启动完成！")
    yield

    logger.info("正在关闭...")
    await shutdown_scheduler()
    await close_db()
    logger.info("NewsReader 已关闭")


app = FastAPI(
    title="NewsReader",
    description="Inoreader 同步阅读器 - 双向同步、全文抓取与 AI 摘要",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(articles.router)
app.include_router(feeds.router)
app.include_router(tags.router)
app.include_router(sync.router)
app.include_router(analytics.router)


@app.get("/")
async def root() -> dict:
    """根路径."""
    return {
        "name": "NewsReader",
        "version": "0.1.0",
        "description": "Inoreader 同步阅读器",
    }


def run() -> None:
    """命令行入口."""
    import uvicorn

    uvicorn.run(
        "newsreader.main:app",
        host="0.0.0.0",
        port=8000,
    )


if __name__ == "__main__":
    run()
