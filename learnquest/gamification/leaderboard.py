"""
Leaderboard System

Ranks users by XP, completed achievements or current streak.

Ordering is descending on the metric with ties broken by user_id ascending,
so the same data always produces the same ranks. Ranks are 1-based positions
in the full ordering, never shared.
"""

import logging
import math
from typing import Optional, Union

from learnquest.db.store import ProgressStore
from learnquest.exceptions import NotFoundError, ValidationError
from learnquest.models.gamification import (
    LeaderboardEntry,
    LeaderboardMetric,
    LeaderboardPage,
    UserStats,
)

logger = logging.getLogger(__name__)


def _metric_value(stats: UserStats, metric: LeaderboardMetric) -> int:
    if metric == LeaderboardMetric.XP:
        return stats.xp
    if metric == LeaderboardMetric.ACHIEVEMENT_COUNT:
        return stats.achievement_count
    return stats.current_streak


def _parse_metric(metric: Union[str, LeaderboardMetric]) -> LeaderboardMetric:
    try:
        return LeaderboardMetric(metric)
    except ValueError:
        raise ValidationError(
            f"Unknown leaderboard metric: {metric}",
            field="metric",
            value=metric,
        ) from None


def order_stats(stats: list[UserStats], metric: LeaderboardMetric) -> list[UserStats]:
    """Full leaderboard ordering for a metric"""
    return sorted(stats, key=lambda s: (-_metric_value(s, metric), s.user_id))


class LeaderboardRanker:
    """Read-only ranking over the store's per-user stats (takes no locks)"""

    def __init__(self, store: ProgressStore):
        self.store = store

    async def rank(
        self,
        metric: Union[str, LeaderboardMetric] = LeaderboardMetric.XP,
        page: int = 1,
        page_size: int = 10,
    ) -> LeaderboardPage:
        """
        One page of the leaderboard

        Pages past the end come back empty with the real totals.

        Raises:
            ValidationError: unknown metric, page < 1 or page_size < 1
        """
        metric = _parse_metric(metric)
        if page < 1:
            raise ValidationError("Page must be at least 1", field="page", value=page)
        if page_size < 1:
            raise ValidationError("Page size must be at least 1", field="page_size", value=page_size)

        ordered = order_stats(await self.store.list_leaderboard_stats(), metric)
        total_count = len(ordered)
        offset = (page - 1) * page_size

        items = [
            LeaderboardEntry(user_id=stats.user_id, rank=offset + i + 1, display_stats=stats)
            for i, stats in enumerate(ordered[offset:offset + page_size])
        ]

        logger.debug(f"Leaderboard {metric.value} page {page}: {len(items)} of {total_count}")

        return LeaderboardPage(
            metric=metric,
            items=items,
            total_count=total_count,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total_count / page_size),
        )

    async def rank_of(
        self, user_id: str, metric: Union[str, LeaderboardMetric] = LeaderboardMetric.XP
    ) -> LeaderboardEntry:
        """A single user's position on the leaderboard"""
        metric = _parse_metric(metric)
        ordered = order_stats(await self.store.list_leaderboard_stats(), metric)

        entry: Optional[LeaderboardEntry] = None
        for position, stats in enumerate(ordered, start=1):
            if stats.user_id == user_id:
                entry = LeaderboardEntry(user_id=user_id, rank=position, display_stats=stats)
                break

        if entry is None:
            raise NotFoundError(
                f"User {user_id} not found",
                record_type="User",
                record_id=user_id,
                operation="rank_of",
            )
        return entry
