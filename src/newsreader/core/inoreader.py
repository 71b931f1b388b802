"""Inoreader (Google Reader 兼容) API 客户端."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from newsreader.config import Settings
from newsreader.core.schemas import (
    StreamContentsResponse,
    StreamItem,
    SubscriptionListResponse,
    TagListResponse,
    UnreadCountResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 300

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class InoreaderConfig:
    """Inoreader 连接配置."""

    base_url: str
    access_token: str
    app_id: str = ""
    app_key: str = ""
    timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "InoreaderConfig":
        return cls(
            base_url=settings.inoreader_base_url.rstrip("/"),
            access_token=load_access_token(settings),
            app_id=settings.inoreader_app_id,
            app_key=settings.inoreader_app_key,
            timeout=settings.inoreader_timeout_seconds,
        )


@dataclass
class RateLimitSnapshot:
    """响应头中的配额信息（两个 zone 分别计数）."""

    zone1_usage: int | None = None
    zone1_limit: int | None = None
    zone2_usage: int | None = None
    zone2_limit: int | None = None
    reset_after: int | None = None

    @classmethod
    def from_headers(cls, headers: httpx.Headers) -> "RateLimitSnapshot | None":
        keys = (
            "X-Reader-Zone1-Usage",
            "X-Reader-Zone1-Limit",
            "X-Reader-Zone2-Usage",
            "X-Reader-Zone2-Limit",
        )
        if not any(key in headers for key in keys):
            return None
        return cls(
            zone1_usage=_header_int(headers, "X-Reader-Zone1-Usage"),
            zone1_limit=_header_int(headers, "X-Reader-Zone1-Limit"),
            zone2_usage=_header_int(headers, "X-Reader-Zone2-Usage"),
            zone2_limit=_header_int(headers, "X-Reader-Zone2-Limit"),
            reset_after=_header_int(headers, "X-Reader-Limits-Reset-After"),
        )


class InoreaderError(Exception):
    """Inoreader API 错误."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InoreaderAuthError(InoreaderError):
    """认证失败（token 无效或过期）."""


class InoreaderRateLimitError(InoreaderError):
    """触发 Inoreader 限流 (HTTP 429)."""

    def __init__(self, message: str, retry_after: int = DEFAULT_RETRY_AFTER) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


def load_access_token(settings: Settings) -> str:
    """读取 access token：环境变量优先，其次 token 文件."""
    if settings.inoreader_access_token:
        return settings.inoreader_access_token

    if settings.inoreader_token_file:
        path = Path(settings.inoreader_token_file).expanduser()
        if not path.exists():
            msg = f"token 文件不存在: {path}"
            raise InoreaderAuthError(msg)
        data = json.loads(path.read_text(encoding="utf-8"))
        token = data.get("access_token", "")
        if token:
            return token

    msg = "未配置 Inoreader access token"
    raise InoreaderAuthError(msg)


def _header_int(headers: httpx.Headers, key: str) -> int | None:
    value = headers.get(key)
    if not value:
        return None
    # 形如 "1,234" 或 "3600.5"
    value = value.replace(",", "").split(".")[0].strip()
    try:
        return int(value)
    except ValueError:
        return None


class InoreaderClient:
    """Inoreader API 客户端.

    每次请求都会计数并记录响应头中的配额信息，供同步预算使用。
    """

    def __init__(
        self,
        config: InoreaderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.call_count = 0
        self.rate_limit: RateLimitSnapshot | None = None
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """关闭客户端."""
        await self._client.aclose()

    async def __aenter__(self) -> "InoreaderClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _get_headers(self) -> dict[str, str]:
        """获取带认证的请求头."""
        headers = {"Authorization": f"Bearer {self.config.access_token}"}
        if self.config.app_id:
            headers["AppId"] = self.config.app_id
        if self.config.app_key:
            headers["AppKey"] = self.config.app_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """发送请求，统一处理配额头和错误."""
        self.call_count += 1
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                data=data,
                headers=self._get_headers(),
            )
        except httpx.HTTPError as e:
            msg = f"请求 {path} 失败: {type(e).__name__}"
            raise InoreaderError(msg) from e

        snapshot = RateLimitSnapshot.from_headers(response.headers)
        if snapshot:
            self.rate_limit = snapshot

        if response.status_code == 429:
            retry_after = (
                _header_int(response.headers, "Retry-After")
                or (snapshot.reset_after if snapshot else None)
                or DEFAULT_RETRY_AFTER
            )
            msg = f"Inoreader 限流: {path}"
            raise InoreaderRateLimitError(msg, retry_after=retry_after)

        if response.status_code in (401, 403):
            msg = f"Inoreader 认证失败: {response.status_code}"
            raise InoreaderAuthError(msg, status_code=response.status_code)

        if response.is_error:
            msg = f"Inoreader 请求失败: {path} {response.status_code} {response.reason_phrase}"
            raise InoreaderError(msg, status_code=response.status_code)

        return response

    async def _get_json(
        self,
        path: str,
        model: type[ModelT],
        params: dict[str, Any] | None = None,
    ) -> ModelT:
        response = await self._request("GET", path, params=params)
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            msg = f"Inoreader 响应格式错误: {path}"
            raise InoreaderError(msg) from e

    async def get_tag_list(self) -> TagListResponse:
        """获取文件夹/标签列表."""
        return await self._get_json("/tag/list", TagListResponse)

    async def get_subscriptions(self) -> SubscriptionListResponse:
        """获取订阅列表."""
        return await self._get_json("/subscription/list", SubscriptionListResponse)

    async def get_unread_counts(self) -> UnreadCountResponse:
        """获取未读数."""
        return await self._get_json("/unread-count", UnreadCountResponse)

    async def get_stream_contents(
        self,
        count: int = 100,
        exclude_read: bool = True,
        newer_than: int | None = None,
        continuation: str | None = None,
        stream_id: str = "user/-/state/com.google/reading-list",
    ) -> StreamContentsResponse:
        """获取文章流（单次请求，可用 continuation 翻页）."""
        params: dict[str, Any] = {"n": count}
        if exclude_read:
            params["xt"] = "user/-/state/com.google/read"
        if newer_than:
            params["ot"] = newer_than
        if continuation:
            params["c"] = continuation

        response = await self._request(
            "GET", f"/stream/contents/{stream_id}", params=params
        )
        try:
            data = response.json()
        except ValueError as e:
            msg = "Inoreader 响应格式错误: stream/contents"
            raise InoreaderError(msg) from e

        items: list[StreamItem] = []
        for raw in data.get("items", []):
            try:
                items.append(StreamItem.model_validate(raw))
            except ValidationError:
                logger.warning(f"跳过格式错误的文章: {raw.get('id', '?')}")

        return StreamContentsResponse(items=items, continuation=data.get("continuation"))

    async def edit_tag(
        self,
        item_ids: list[str],
        add: str | None = None,
        remove: str | None = None,
    ) -> None:
        """批量添加/移除文章状态标签."""
        if not item_ids:
            return
        data: dict[str, Any] = {"i": item_ids}
        if add:
            data["a"] = add
        if remove:
            data["r"] = remove

        await self._request("POST", "/edit-tag", data=data)
