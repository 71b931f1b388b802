"""统计 API."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from newsreader.core.content import get_fetch_stats
from newsreader.models.database import get_session

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


@router.get("/fetch-stats")
async def fetch_stats(
    session: AsyncSession = Depends(get_session),
) -> dict:
    """全文抓取成功率、耗时和最近失败记录."""
    return await get_fetch_stats(session)
