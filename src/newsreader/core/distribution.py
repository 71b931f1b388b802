"""文章分配：按 Feed 轮转抽取，避免高产 Feed 挤占其他 Feed."""

from collections.abc import Callable, Iterable
from typing import TypeVar

from newsreader.core.schemas import StreamItem

T = TypeVar("T")


def filter_unread(items: Iterable[StreamItem]) -> list[StreamItem]:
    """去掉已读文章（只在未读文章中分配名额）."""
    return [item for item in items if not item.is_read]


def distribute_round_robin(
    items: Iterable[T],
    max_total: int,
    max_per_feed: int,
    feed_key: Callable[[T], str],
) -> list[T]:
    """
    轮转分配文章名额.

    按 Feed 分组（保持 Feed 首次出现的顺序和组内顺序），每轮从每个 Feed
    取一篇，直到达到总上限；单个 Feed 最多 max_per_feed 篇。文章用完的
    Feed 在后续轮次中直接跳过，不占用名额。

    Args:
        items: 待分配的文章
        max_total: 总上限
        max_per_feed: 单个 Feed 上限
        feed_key: 取文章所属 Feed 的函数

    Returns:
        按抽取顺序排列的文章
    """
    if max_total <= 0 or max_per_feed <= 0:
        return []

    groups: dict[str, list[T]] = {}
    for item in items:
        groups.setdefault(feed_key(item), []).append(item)

    queues = [group[:max_per_feed] for group in groups.values()]
    selected: list[T] = []
    index = 0

    while queues and len(selected) < max_total:
        remaining: list[list[T]] = []
        for queue in queues:
            if len(selected) >= max_total:
                break
            selected.append(queue[index])
            if index + 1 < len(queue):
                remaining.append(queue)
        queues = remaining
        index += 1

    return selected
