"""
GamificationService - Gamification Business Logic

Entry point for controllers: XP awards, achievement evaluation, leaderboards
and the read models the learner dashboard shows.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from learnquest.config import Settings
from learnquest.db.store import ProgressStore
from learnquest.exceptions import LearnQuestError, NotFoundError
from learnquest.gamification.achievement_system import AchievementEvaluator
from learnquest.gamification.catalog import AchievementCatalog
from learnquest.gamification.course_activity import CourseActivity
from learnquest.gamification.leaderboard import LeaderboardRanker
from learnquest.gamification.level_curve import level_progress
from learnquest.gamification.xp_system import (
    ACHIEVEMENT_EARNED,
    UserLockRegistry,
    XpAwarder,
    xp_for_action,
)
from learnquest.models.gamification import (
    AwardResult,
    EvaluationResult,
    LeaderboardEntry,
    LeaderboardMetric,
    LeaderboardPage,
    UserAchievementProgress,
    UserGamificationState,
)
from learnquest.utils.datetime_helpers import Clock, SystemClock, is_same_day

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """Outcome of a reconciliation run"""
    settled: Dict[str, AwardResult] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def achievements_unlocked(self) -> int:
        return sum(len(r.new_achievements) for r in self.settled.values())


class GamificationService:
    """
    Service for gamification features.

    Responsibilities:
    - XP awarding (daily cap, levels, streaks)
    - Achievement evaluation and rewards
    - Leaderboards
    - Read models for XP, achievements, chains and stats
    """

    def __init__(
        self,
        store: ProgressStore,
        course_activity: CourseActivity,
        settings: Settings,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            store: ProgressStore implementation
            course_activity: Source of course activity counts
            settings: Engine settings
            clock: Time source (system clock when omitted)
        """
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.locks = UserLockRegistry()
        self.evaluator = AchievementEvaluator(store, course_activity, self.clock, settings)
        self.awarder = XpAwarder(store, self.evaluator, self.clock, settings, locks=self.locks)
        self.leaderboard = LeaderboardRanker(store)
        logger.debug("GamificationService initialized")

    # ==========================================
    # Users
    # ==========================================

    async def create_user(
        self, user_id: str, display_name: Optional[str] = None
    ) -> UserGamificationState:
        """Initial gamification state for a new account (existing state is kept)"""
        now = self.clock.now()
        state = UserGamificationState(
            user_id=user_id,
            display_name=display_name,
            daily_xp_cap=self.settings.default_daily_xp_cap,
            last_xp_reset=now,
            created_at=now,
        )
        return await self.store.create_user_state(state)

    async def _require_state(self, user_id: str, operation: str) -> UserGamificationState:
        state = await self.store.get_user_state(user_id)
        if state is None:
            raise NotFoundError(
                f"User {user_id} not found",
                record_type="User",
                record_id=user_id,
                operation=operation,
            )
        return state

    # ==========================================
    # Engine operations
    # ==========================================

    async def award(
        self,
        user_id: str,
        activity_type: str,
        amount: int,
        metadata: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> AwardResult:
        return await self.awarder.award(user_id, activity_type, amount, metadata, timeout)

    async def evaluate(self, user_id: str) -> EvaluationResult:
        """
        Evaluate a user's achievements now

        Rewards for anything unlocked are granted as part of the call, so the
        result can include achievements unlocked by those rewards too.
        """
        settled = await self.awarder.settle(user_id)
        return EvaluationResult(
            newly_completed=settled.new_achievements,
            warnings=settled.warnings,
        )

    async def rank(
        self,
        metric: LeaderboardMetric = LeaderboardMetric.XP,
        page: int = 1,
        page_size: int = 10,
    ) -> LeaderboardPage:
        return await self.leaderboard.rank(metric, page, page_size)

    async def rank_of(
        self, user_id: str, metric: LeaderboardMetric = LeaderboardMetric.XP
    ) -> LeaderboardEntry:
        return await self.leaderboard.rank_of(user_id, metric)

    async def process_action(
        self,
        user_id: str,
        action_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AwardResult:
        """
        Handle a controller action (WATCH_VIDEO, COMPLETE_COURSE, ...)

        Actions worth XP go through award; anything else just re-checks
        achievements, since the activity may still move a count.
        """
        activity_type, xp = xp_for_action(action_type)
        if xp > 0:
            return await self.award(user_id, activity_type, xp, metadata)

        logger.debug(f"Action {action_type} carries no XP, evaluating achievements for {user_id}")
        return await self.awarder.settle(user_id)

    async def set_progress(
        self, user_id: str, achievement_id: str, progress: int
    ) -> UserAchievementProgress:
        """
        Manually set progress on an achievement (admin)

        Completing an achievement this way grants its XP reward like any
        other unlock.
        """
        async with self.locks.hold(user_id):
            record, newly_completed = await self.evaluator.set_progress(
                user_id, achievement_id, progress
            )

        if newly_completed:
            achievement = await self.store.get_achievement(achievement_id)
            if achievement is not None and achievement.xp_reward > 0:
                await self.award(
                    user_id,
                    ACHIEVEMENT_EARNED,
                    achievement.xp_reward,
                    {"achievement_id": achievement_id, "source": "admin"},
                )
        return record

    async def mark_notified(self, user_id: str, achievement_id: str) -> UserAchievementProgress:
        """
        Record that an unlock has been delivered to the user

        Raises:
            NotFoundError: no completed record for this user and achievement
        """
        async with self.locks.hold(user_id):
            record = await self.store.get_progress(user_id, achievement_id)
            if record is None or not record.is_completed:
                raise NotFoundError(
                    f"User {user_id} has not earned achievement {achievement_id}",
                    record_type="UserAchievementProgress",
                    record_id=f"{user_id}:{achievement_id}",
                    operation="mark_notified",
                )
            if not record.notified:
                record.notified = True
                await self.store.save_progress(record)
                logger.debug(f"Achievement {achievement_id} delivered to user {user_id}")
        return record

    async def reconcile(self, user_ids: Optional[List[str]] = None) -> ReconcileReport:
        """
        Re-evaluate achievements for users (all users when omitted)

        Catches up after awards that returned achievements_evaluated=False.
        A failure for one user is recorded in the report and does not stop
        the run.
        """
        if user_ids is None:
            user_ids = await self.store.list_user_ids()

        report = ReconcileReport()
        for user_id in user_ids:
            try:
                report.settled[user_id] = await self.awarder.settle(user_id)
            except LearnQuestError as e:
                report.failed[user_id] = e.message

        logger.info(
            f"Reconciled {len(report.settled)} user(s): "
            f"{report.achievements_unlocked} achievement(s) unlocked, {len(report.failed)} failed"
        )
        return report

    # ==========================================
    # Read models
    # ==========================================

    async def get_user_xp_info(self, user_id: str) -> Dict[str, Any]:
        """
        XP, level, daily cap and streak summary

        Returns:
            {
                'xp': int,
                'level': int,
                'daily_xp_earned': int,
                'daily_xp_cap': int,
                'daily_xp_remaining': int,
                'current_streak': int,
                'longest_streak': int,
                'achievement_count': int,
                'next_level_xp': int,
                'xp_to_next_level': int,
                'level_progress': int  # 0-100
            }
        """
        state = await self._require_state(user_id, "get_user_xp_info")

        # A new day has started even if no award has reset the counter yet
        daily_earned = state.daily_xp_earned
        if not is_same_day(state.last_xp_reset, self.clock.now(), self.settings.timezone):
            daily_earned = 0

        progress = level_progress(state.xp)
        return {
            "xp": state.xp,
            "level": state.level,
            "daily_xp_earned": daily_earned,
            "daily_xp_cap": state.daily_xp_cap,
            "daily_xp_remaining": max(0, state.daily_xp_cap - daily_earned),
            "current_streak": state.streak.current,
            "longest_streak": state.streak.longest,
            "achievement_count": await self.store.count_completed_achievements(user_id),
            "next_level_xp": progress.next_level_xp,
            "xp_to_next_level": progress.xp_to_next_level,
            "level_progress": progress.progress,
        }

    async def get_user_achievements(self, user_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """
        Earned achievements (most recent first) and ones in progress

        Earned achievements stay listed after being deactivated; in-progress
        ones only while they are active.
        """
        await self._require_state(user_id, "get_user_achievements")
        catalog = await AchievementCatalog.load(self.store, active_only=False)

        earned = []
        in_progress = []
        for record in await self.store.list_user_progress(user_id):
            achievement = catalog.get(record.achievement_id)
            if achievement is None:
                continue
            entry = {
                "achievement": achievement,
                "progress": record.progress,
                "earned_at": record.earned_at,
                "notified": record.notified,
            }
            if record.is_completed:
                earned.append(entry)
            elif achievement.is_active and record.progress > 0:
                in_progress.append(entry)

        earned.sort(key=lambda e: e["earned_at"], reverse=True)
        in_progress.sort(key=lambda e: e["progress"], reverse=True)
        return {"earned": earned, "in_progress": in_progress}

    async def get_achievement_chains(self, user_id: Optional[str] = None) -> List[List[Dict[str, Any]]]:
        """
        Achievement chains, entry tier first

        With a user_id, each link carries that user's progress and completion.
        """
        catalog = await AchievementCatalog.load(self.store)
        records: Dict[str, UserAchievementProgress] = {}
        if user_id is not None:
            await self._require_state(user_id, "get_achievement_chains")
            records = {p.achievement_id: p for p in await self.store.list_user_progress(user_id)}

        chains = []
        for chain in catalog.chains():
            links = []
            for achievement in chain:
                link: Dict[str, Any] = {"achievement": achievement}
                if user_id is not None:
                    record = records.get(achievement.id)
                    link["progress"] = record.progress if record else 0
                    link["is_completed"] = bool(record and record.is_completed)
                links.append(link)
            chains.append(links)
        return chains

    async def get_achievement_stats(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Catalog totals, plus a user's completion figures when user_id is given

        Returns:
            {
                'total': int,
                'by_category': {category: count},
                'by_rarity': {rarity: count},
                'total_xp_available': int,
                # with user_id:
                'completed': int,
                'completion_percentage': int,
                'xp_from_achievements': int
            }
        """
        catalog = await AchievementCatalog.load(self.store)

        by_category: Dict[str, int] = {}
        by_rarity: Dict[str, int] = {}
        for achievement in catalog:
            by_category[achievement.category.value] = by_category.get(achievement.category.value, 0) + 1
            by_rarity[achievement.rarity.value] = by_rarity.get(achievement.rarity.value, 0) + 1

        stats: Dict[str, Any] = {
            "total": len(catalog),
            "by_category": by_category,
            "by_rarity": by_rarity,
            "total_xp_available": sum(a.xp_reward for a in catalog),
        }

        if user_id is not None:
            await self._require_state(user_id, "get_achievement_stats")
            completed = [
                catalog.get(p.achievement_id)
                for p in await self.store.list_user_progress(user_id)
                if p.is_completed and catalog.get(p.achievement_id) is not None
            ]
            stats["completed"] = len(completed)
            stats["completion_percentage"] = (
                round(100 * len(completed) / len(catalog)) if len(catalog) else 0
            )
            stats["xp_from_achievements"] = sum(a.xp_reward for a in completed)

        return stats
