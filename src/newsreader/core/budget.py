"""Inoreader 调用预算：单次同步上限 + 每日配额."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from newsreader.core.inoreader import RateLimitSnapshot
from newsreader.models.usage import ApiUsage

logger = logging.getLogger(__name__)

SERVICE_INOREADER = "inoreader"


class CallBudget:
    """单次同步允许的远程调用次数."""

    def __init__(self, max_calls: int) -> None:
        self.max_calls = max_calls
        self.used = 0

    @property
    def remaining(self) -> int:
        return max(0, self.max_calls - self.used)

    def consume(self, calls: int = 1) -> bool:
        """占用名额，不足时返回 False."""
        if calls > self.remaining:
            return False
        self.used += calls
        return True


@dataclass
class BudgetCheck:
    """每日配额检查结果."""

    allowed: bool
    used: int
    limit: int
    remaining: int
    retry_after: int | None = None


def seconds_until_utc_midnight(now: datetime | None = None) -> int:
    """距离 UTC 零点（每日配额重置）的秒数."""
    now = now or datetime.utcnow()
    tomorrow = datetime.combine(now.date() + timedelta(days=1), datetime.min.time())
    return max(1, int((tomorrow - now).total_seconds()))


class ApiUsageTracker:
    """记录每日调用量和配额响应头."""

    def __init__(
        self,
        session: AsyncSession,
        daily_limit: int,
        service: str = SERVICE_INOREADER,
    ) -> None:
        self.session = session
        self.daily_limit = daily_limit
        self.service = service

    async def get_today(self, today: date | None = None) -> ApiUsage | None:
        """获取今日记录."""
        today = today or datetime.utcnow().date()
        return await self.session.get(ApiUsage, (self.service, today))

    async def check(self, needed: int = 1) -> BudgetCheck:
        """检查今日余量是否还够 needed 次调用."""
        usage = await self.get_today()
        used = usage.count if usage else 0

        # 以 Inoreader 返回的 zone1 用量为准（如果有）
        if usage and usage.zone1_usage is not None:
            used = max(used, usage.zone1_usage)
        limit = self.daily_limit
        if usage and usage.zone1_limit:
            limit = min(limit, usage.zone1_limit)

        remaining = max(0, limit - used)
        if limit and remaining <= limit * 0.05:
            logger.error(f"Inoreader 配额告急: 今日仅剩 {remaining} 次调用")
        elif limit and remaining <= limit * 0.2:
            logger.warning(f"Inoreader 配额预警: 今日剩余 {remaining} 次调用")

        if remaining >= needed:
            return BudgetCheck(allowed=True, used=used, limit=limit, remaining=remaining)

        retry_after = (
            usage.reset_after if usage and usage.reset_after else seconds_until_utc_midnight()
        )
        return BudgetCheck(
            allowed=False,
            used=used,
            limit=limit,
            remaining=remaining,
            retry_after=retry_after,
        )

    async def record(
        self,
        calls: int,
        snapshot: RateLimitSnapshot | None = None,
    ) -> ApiUsage:
        """累加今日调用次数并保存配额头（不提交事务）."""
        today = datetime.utcnow().date()
        usage = await self.get_today(today)
        if usage is None:
            usage = ApiUsage(service=self.service, usage_date=today)
            self.session.add(usage)

        usage.count += calls
        if snapshot:
            usage.zone1_usage = snapshot.zone1_usage
            usage.zone1_limit = snapshot.zone1_limit
            usage.zone2_usage = snapshot.zone2_usage
            usage.zone2_limit = snapshot.zone2_limit
            usage.reset_after = snapshot.reset_after
        usage.updated_at = datetime.utcnow()
        return usage
