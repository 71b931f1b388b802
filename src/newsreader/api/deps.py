"""路由依赖."""

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from newsreader.config import Settings, get_settings
from newsreader.core.content import ContentService
from newsreader.core.inoreader import InoreaderAuthError, InoreaderClient, InoreaderConfig
from newsreader.core.summary import SummaryService
from newsreader.fetcher.extractor import FullTextExtractor
from newsreader.models.database import get_session


def get_extractor(settings: Settings = Depends(get_settings)) -> FullTextExtractor:
    return FullTextExtractor(timeout=settings.content_fetch_timeout_seconds)


def get_content_service(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    extractor: FullTextExtractor = Depends(get_extractor),
) -> ContentService:
    return ContentService(session, extractor=extractor, settings=settings)


async def get_summary_service(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    content_service: ContentService = Depends(get_content_service),
) -> AsyncGenerator[SummaryService, None]:
    service = SummaryService(session, content_service=content_service, settings=settings)
    try:
        yield service
    finally:
        await service.close()


async def get_inoreader_client(
    settings: Settings = Depends(get_settings),
) -> AsyncGenerator[InoreaderClient, None]:
    """创建 Inoreader 客户端."""
    try:
        config = InoreaderConfig.from_settings(settings)
    except InoreaderAuthError as e:
        raise HTTPException(status_code=400, detail=f"Inoreader 未配置: {e}") from e

    client = InoreaderClient(config)
    try:
        yield client
    finally:
        await client.close()
