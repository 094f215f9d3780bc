"""
Achievement System

Evaluates achievement criteria against a user's current figures and records
progress toward, and completion of, each achievement.

Rules:
- Completed achievements are never re-evaluated or modified
- Stored progress never goes down, even when an underlying count drops
- Progress reaches 100 only on completion
- Inactive achievements are skipped (their progress is kept for reactivation)
- Seasonal achievements are only evaluated inside their window
- Chain links are informational unless chain gating is switched on
"""

import logging
import math
from datetime import datetime
from typing import Optional

from learnquest.config import Settings
from learnquest.db.store import ProgressStore
from learnquest.exceptions import NotFoundError, ValidationError
from learnquest.gamification.catalog import AchievementCatalog
from learnquest.gamification.course_activity import CourseActivity
from learnquest.models.gamification import (
    Achievement,
    CriteriaType,
    EngineWarning,
    EvaluationResult,
    ProgressHistoryEntry,
    UserAchievementProgress,
    UserGamificationState,
    WarningCode,
)
from learnquest.observability.metrics import record_unlock, record_warning
from learnquest.utils.datetime_helpers import Clock

logger = logging.getLogger(__name__)

MILESTONES = (25, 50, 75, 100)


def progress_percentage(value: float, threshold: float) -> int:
    """round(100 * value / threshold), halves rounded up, capped at 100"""
    if threshold <= 0:
        return 100
    return min(100, max(0, math.floor(100 * value / threshold + 0.5)))


def crossed_milestone(old_progress: int, new_progress: int) -> Optional[int]:
    """Highest quarter mark passed when moving from old to new progress"""
    passed = [m for m in MILESTONES if old_progress < m <= new_progress]
    return passed[-1] if passed else None


class AchievementEvaluator:
    """Computes and records achievement progress for one user at a time"""

    def __init__(
        self,
        store: ProgressStore,
        course_activity: CourseActivity,
        clock: Clock,
        settings: Settings,
    ):
        self.store = store
        self.course_activity = course_activity
        self.clock = clock
        self.settings = settings

    async def evaluate(self, user_id: str) -> EvaluationResult:
        """
        Check every available achievement for a user

        Callers are expected to hold the user's lock (the XP awarder and the
        gamification service do).

        Returns:
            EvaluationResult with achievements completed by this call (catalog
            order; usually empty) and any configuration warnings
        """
        state = await self.store.get_user_state(user_id)
        if state is None:
            raise NotFoundError(
                f"User {user_id} not found",
                record_type="User",
                record_id=user_id,
                operation="evaluate",
            )

        catalog = await AchievementCatalog.load(self.store)
        return await self._evaluate_state(state, catalog)

    async def _evaluate_state(
        self, state: UserGamificationState, catalog: AchievementCatalog
    ) -> EvaluationResult:
        now = self.clock.now()
        result = EvaluationResult(warnings=catalog.warnings())
        records = {p.achievement_id: p for p in await self.store.list_user_progress(state.user_id)}

        for achievement in catalog.available_at(now):
            record = records.get(achievement.id)
            if record is not None and record.is_completed:
                continue

            if not self._is_eligible(achievement, records, catalog):
                continue

            threshold = achievement.criteria.threshold
            if threshold <= 0:
                result.warnings.append(EngineWarning(
                    code=WarningCode.CONFIGURATION,
                    message=(
                        f"Achievement {achievement.id} has non-positive threshold "
                        f"{threshold}; treating it as satisfied"
                    ),
                    achievement_id=achievement.id,
                ))
                completed = True
            else:
                value = await self._measure(state, achievement)
                completed = value >= threshold

            if completed:
                record = self._complete(record, state.user_id, achievement, now)
                await self.store.save_progress(record)
                records[achievement.id] = record
                result.newly_completed.append(achievement)
                record_unlock(achievement.category.value, achievement.rarity.value)
                logger.info(
                    f"User {state.user_id} unlocked achievement: {achievement.id} "
                    f"({achievement.name}) +{achievement.xp_reward} XP"
                )
                continue

            # Progress below 100 is reserved for incomplete achievements
            percentage = min(99, progress_percentage(value, threshold))
            stored = record.progress if record else 0
            if percentage > stored:
                record = self._advance(record, state.user_id, achievement, percentage, now)
                await self.store.save_progress(record)
                records[achievement.id] = record
                logger.debug(
                    f"User {state.user_id} progress on {achievement.id}: {stored} -> {percentage}"
                )

        for warning in result.warnings:
            record_warning(warning.code.value)
            logger.warning(f"Achievement configuration: {warning.message}")

        return result

    def _is_eligible(
        self,
        achievement: Achievement,
        records: dict[str, UserAchievementProgress],
        catalog: AchievementCatalog,
    ) -> bool:
        """Chain gate: predecessor must be completed first (only when gating is on)"""
        if not self.settings.gate_chained_achievements:
            return True
        if achievement.chained_from is None or achievement.id in catalog.cyclic_ids:
            return True
        predecessor = records.get(achievement.chained_from)
        return predecessor is not None and predecessor.is_completed

    async def _measure(self, state: UserGamificationState, achievement: Achievement) -> int:
        """Current value of the figure an achievement's threshold applies to"""
        criteria = achievement.criteria

        if criteria.type == CriteriaType.DAILY_STREAK:
            return state.streak.current
        if criteria.type == CriteriaType.XP_TOTAL:
            return state.xp
        if criteria.type == CriteriaType.LEVEL_REACHED:
            return state.level

        return await self.course_activity.get_count(
            state.user_id, criteria.type.value, criteria.domain
        )

    @staticmethod
    def _complete(
        record: Optional[UserAchievementProgress],
        user_id: str,
        achievement: Achievement,
        now: datetime,
    ) -> UserAchievementProgress:
        if record is None:
            record = UserAchievementProgress(user_id=user_id, achievement_id=achievement.id)
        else:
            record = record.model_copy(deep=True)

        milestone = crossed_milestone(record.progress, 100)
        record.progress = 100
        record.is_completed = True
        record.earned_at = now
        record.progress_history.append(
            ProgressHistoryEntry(date=now, progress=100, milestone=milestone)
        )
        return record

    @staticmethod
    def _advance(
        record: Optional[UserAchievementProgress],
        user_id: str,
        achievement: Achievement,
        percentage: int,
        now: datetime,
    ) -> UserAchievementProgress:
        if record is None:
            record = UserAchievementProgress(user_id=user_id, achievement_id=achievement.id)
        else:
            record = record.model_copy(deep=True)

        milestone = crossed_milestone(record.progress, percentage)
        record.progress = percentage
        record.progress_history.append(
            ProgressHistoryEntry(date=now, progress=percentage, milestone=milestone)
        )
        return record

    async def set_progress(
        self, user_id: str, achievement_id: str, progress: int
    ) -> tuple[UserAchievementProgress, bool]:
        """
        Manually raise a user's progress on one achievement (admin tool)

        The same rules as evaluation apply: progress is never lowered, a
        completed achievement is left alone, and 100 completes it.

        Returns:
            (record, newly_completed)
        """
        if not 0 <= progress <= 100:
            raise ValidationError("Progress must be between 0 and 100", field="progress", value=progress)

        achievement = await self.store.get_achievement(achievement_id)
        if achievement is None:
            raise NotFoundError(
                f"Achievement {achievement_id} not found",
                record_type="Achievement",
                record_id=achievement_id,
                operation="set_progress",
            )
        if await self.store.get_user_state(user_id) is None:
            raise NotFoundError(
                f"User {user_id} not found",
                record_type="User",
                record_id=user_id,
                operation="set_progress",
            )

        now = self.clock.now()
        record = await self.store.get_progress(user_id, achievement_id)
        if record is not None and (record.is_completed or progress <= record.progress):
            return record, False
        if record is None and progress == 0:
            return UserAchievementProgress(user_id=user_id, achievement_id=achievement_id), False

        if progress == 100:
            record = self._complete(record, user_id, achievement, now)
            newly_completed = True
            record_unlock(achievement.category.value, achievement.rarity.value)
            logger.info(f"User {user_id} manually awarded achievement {achievement_id}")
        else:
            record = self._advance(record, user_id, achievement, progress, now)
            newly_completed = False

        await self.store.save_progress(record)
        return record, newly_completed
