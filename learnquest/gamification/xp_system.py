"""
XP Award System

Applies XP awards to a user's gamification state and folds in the
achievements (and their XP rewards) unlocked along the way.

Award Rules:
- Daily cap: at most `daily_xp_cap` XP per calendar day (reference timezone);
  the excess of a request is dropped, not banked
- The daily counter resets on the first award of a new day
- Level is recomputed from total XP on every change
- Streak-qualifying activities (daily_login, course_progress by default)
  update the daily streak, but only when XP is actually granted
- Each newly unlocked achievement grants its xp_reward through a nested
  award ("achievement_earned"), bounded per top-level call

Controller Action XP:
- WATCH_VIDEO: 10 XP
- COMPLETE_COURSE: 50 XP
- PASS_ASSESSMENT: 30 XP
- REVIEW_COURSE: 15 XP
- DAILY_LOGIN: 5 XP
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Optional, TypeVar

from learnquest.config import Settings
from learnquest.db.store import ProgressStore
from learnquest.exceptions import (
    ConcurrentUpdateError,
    LearnQuestError,
    NotFoundError,
    StaleStateError,
    ValidationError,
    wrap_external_exception,
)
from learnquest.gamification.achievement_system import AchievementEvaluator
from learnquest.gamification.level_curve import level_for
from learnquest.gamification.streak_system import apply_streak_activity, is_streak_activity
from learnquest.models.gamification import (
    AwardResult,
    EngineWarning,
    UserGamificationState,
    WarningCode,
)
from learnquest.observability.metrics import (
    achievement_evaluation_failures_total,
    record_award,
    record_award_failure,
    record_warning,
    state_update_conflicts_total,
    xp_award_duration_seconds,
)
from learnquest.utils.datetime_helpers import Clock, is_same_day

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACHIEVEMENT_EARNED = "achievement_earned"
ACHIEVEMENT_EVALUATION = "achievement_evaluation"

# Controller action -> (activity type, XP)
ACTION_XP = {
    "WATCH_VIDEO": ("video_watched", 10),
    "COMPLETE_COURSE": ("course_completion", 50),
    "PASS_ASSESSMENT": ("assessment_passed", 30),
    "REVIEW_COURSE": ("review_submitted", 15),
    "DAILY_LOGIN": ("daily_login", 5),
}


def xp_for_action(action_type: str) -> tuple[str, int]:
    """
    Activity type and XP for a controller action

    Unknown actions map to their lower-cased name and 0 XP.
    """
    return ACTION_XP.get(action_type, (action_type.lower(), 0))


class UserLockRegistry:
    """
    One asyncio.Lock per user; different users never share a lock

    A user's entry only exists while some task holds or waits for the lock.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        # tasks holding or waiting, per user
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str, deadline: Optional[float] = None) -> AsyncIterator[None]:
        """
        Hold the user's lock for the duration of the block

        Args:
            user_id: User whose lock to take
            deadline: Event loop time to give up waiting at (None waits forever)

        Raises:
            TimeoutError: lock not acquired before the deadline
        """
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            async with asyncio.timeout_at(deadline):
                await lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[user_id] -= 1
            if not self._users[user_id]:
                del self._users[user_id]
                del self._locks[user_id]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class AwardBudget:
    """Nested achievement-reward awards left for one top-level award"""
    remaining: int
    exhausted_warned: bool = False

    def take(self) -> bool:
        if self.remaining <= 0:
            return False
        self.remaining -= 1
        return True


class XpAwarder:
    """Grants XP to users and drives achievement evaluation after each award"""

    def __init__(
        self,
        store: ProgressStore,
        evaluator: AchievementEvaluator,
        clock: Clock,
        settings: Settings,
        locks: Optional[UserLockRegistry] = None,
    ):
        self.store = store
        self.evaluator = evaluator
        self.clock = clock
        self.settings = settings
        self.locks = locks or UserLockRegistry()

    async def award(
        self,
        user_id: str,
        activity_type: str,
        requested_amount: int,
        metadata: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> AwardResult:
        """
        Award XP for an activity

        Args:
            user_id: User receiving the XP
            activity_type: Activity being rewarded (video_watched, daily_login, ...)
            requested_amount: XP asked for, before the daily cap
            metadata: Free-form context for logs
            timeout: Seconds allowed for the whole award, evaluation included

        Returns:
            AwardResult; `achievements_evaluated=False` means XP was committed
            but evaluation failed (run reconcile later)

        Raises:
            ValidationError: negative requested_amount
            NotFoundError: unknown user
            ConcurrentUpdateError: state kept changing underneath us
            asyncio.TimeoutError: timeout hit before the XP was committed
        """
        if requested_amount < 0:
            raise ValidationError(
                "XP amount cannot be negative",
                field="requested_amount",
                value=requested_amount,
                user_id=user_id,
                operation="award",
            )

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        start = time.perf_counter()

        try:
            async with self.locks.hold(user_id, deadline):
                budget = AwardBudget(remaining=self.settings.max_achievement_awards)
                result = await self._award(
                    user_id, activity_type, requested_amount, metadata, budget, deadline
                )
        except Exception:
            record_award_failure(activity_type)
            raise
        finally:
            xp_award_duration_seconds.observe(time.perf_counter() - start)

        return result

    async def settle(self, user_id: str, timeout: Optional[float] = None) -> AwardResult:
        """
        Evaluate achievements outside of an award and grant the rewards of
        anything newly completed

        Used for explicit evaluations and reconciliation after a partially
        successful award. Errors propagate; rewards already granted stay.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        async with self.locks.hold(user_id, deadline):
            state = await self._within(deadline, self.store.get_user_state(user_id))
            if state is None:
                raise NotFoundError(
                    f"User {user_id} not found",
                    record_type="User",
                    record_id=user_id,
                    operation="settle",
                )
            result = AwardResult(
                user_id=user_id,
                activity_type=ACHIEVEMENT_EVALUATION,
                new_xp=state.xp,
                new_level=state.level,
                current_streak=state.streak.current,
                daily_cap_reached=self._cap_reached_today(state),
            )
            budget = AwardBudget(remaining=self.settings.max_achievement_awards)
            await self._evaluate_and_reward(result, budget, deadline)

        if result.new_achievements:
            logger.info(
                f"Settled {len(result.new_achievements)} achievement(s) for user {user_id}, "
                f"+{result.total_granted} XP"
            )
        return result

    def _cap_reached_today(self, state: UserGamificationState) -> bool:
        if not is_same_day(state.last_xp_reset, self.clock.now(), self.settings.timezone):
            return False
        return state.daily_xp_earned >= state.daily_xp_cap

    async def _award(
        self,
        user_id: str,
        activity_type: str,
        requested_amount: int,
        metadata: Optional[dict[str, Any]],
        budget: AwardBudget,
        deadline: Optional[float],
    ) -> AwardResult:
        """Award body; the caller holds the user's lock"""
        result = await self._within(
            deadline, self._commit_with_retries(user_id, activity_type, requested_amount)
        )

        if result.granted <= 0:
            return result

        logger.info(
            f"Awarded {result.granted} XP to user {user_id} for {activity_type}"
            + (f" {metadata}" if metadata else "")
        )

        try:
            await self._evaluate_and_reward(result, budget, deadline)
        except Exception as e:
            failure = e
            if not isinstance(e, (LearnQuestError, asyncio.TimeoutError)):
                failure = wrap_external_exception(e, operation="evaluate", user_id=user_id)
            error = str(failure) or type(failure).__name__
            achievement_evaluation_failures_total.labels(error_type=type(failure).__name__).inc()
            logger.error(
                f"Achievement evaluation failed for user {user_id} after committing "
                f"{result.granted} XP: {error}"
            )
            result.achievements_evaluated = False
            result.evaluation_error = error

        return result

    async def _evaluate_and_reward(
        self, result: AwardResult, budget: AwardBudget, deadline: Optional[float]
    ) -> None:
        evaluation = await self._within(deadline, self.evaluator.evaluate(result.user_id))
        result.warnings.extend(evaluation.warnings)

        for achievement in evaluation.newly_completed:
            result.new_achievements.append(achievement)
            if achievement.xp_reward <= 0:
                continue

            if not budget.take():
                if not budget.exhausted_warned:
                    budget.exhausted_warned = True
                    result.warnings.append(EngineWarning(
                        code=WarningCode.CHAIN_TOO_DEEP,
                        message=(
                            f"Stopped awarding achievement rewards after "
                            f"{self.settings.max_achievement_awards} nested awards"
                        ),
                        achievement_id=achievement.id,
                    ))
                    record_warning(WarningCode.CHAIN_TOO_DEEP.value)
                    logger.warning(
                        f"Achievement reward chain too deep for user {result.user_id} "
                        f"at {achievement.id}"
                    )
                continue

            reward = await self._award(
                result.user_id,
                ACHIEVEMENT_EARNED,
                achievement.xp_reward,
                {"achievement_id": achievement.id},
                budget,
                deadline,
            )
            self._merge(result, reward)

    @staticmethod
    def _merge(result: AwardResult, reward: AwardResult) -> None:
        """Fold a nested reward award into the award that triggered it"""
        result.total_granted += reward.total_granted
        result.new_xp = reward.new_xp
        result.new_level = reward.new_level
        result.level_up = result.level_up or reward.level_up
        result.daily_cap_reached = result.daily_cap_reached or reward.daily_cap_reached
        result.current_streak = reward.current_streak
        result.new_achievements.extend(reward.new_achievements)
        result.warnings.extend(reward.warnings)
        if not reward.achievements_evaluated:
            result.achievements_evaluated = False
            result.evaluation_error = reward.evaluation_error

    async def _commit_with_retries(
        self, user_id: str, activity_type: str, requested_amount: int
    ) -> AwardResult:
        """Read, apply and CAS-write the user's state, re-reading on conflicts"""
        attempts = self.settings.max_concurrent_update_retries + 1

        for attempt in range(1, attempts + 1):
            state = await self.store.get_user_state(user_id)
            if state is None:
                raise NotFoundError(
                    f"User {user_id} not found",
                    record_type="User",
                    record_id=user_id,
                    operation="award",
                )

            result, updated, changed = self._apply(state, activity_type, requested_amount)
            if not changed:
                return result

            try:
                await self.store.save_user_state(updated, expected_version=state.version)
            except StaleStateError:
                state_update_conflicts_total.inc()
                logger.warning(
                    f"Concurrent update on user {user_id} "
                    f"(attempt {attempt}/{attempts}), retrying"
                )
                continue

            record_award(activity_type, result.granted, result.level_up)
            return result

        raise ConcurrentUpdateError(user_id, attempts=attempts, operation="award")

    def _apply(
        self, state: UserGamificationState, activity_type: str, requested_amount: int
    ) -> tuple[AwardResult, UserGamificationState, bool]:
        """
        Pure award rules: daily reset, cap, XP, level, streak

        Returns:
            (result, updated state, whether the state needs saving)
        """
        now = self.clock.now()
        tz = self.settings.timezone
        updated = state.model_copy(deep=True)
        changed = False

        if not is_same_day(updated.last_xp_reset, now, tz):
            updated.daily_xp_earned = 0
            updated.last_xp_reset = now
            changed = True

        available = max(0, updated.daily_xp_cap - updated.daily_xp_earned)
        granted = min(requested_amount, available)

        if granted <= 0:
            if available == 0:
                logger.info(f"Daily XP cap reached for user {state.user_id}, {activity_type} not rewarded")
            result = AwardResult(
                user_id=state.user_id,
                activity_type=activity_type,
                new_xp=updated.xp,
                new_level=updated.level,
                daily_cap_reached=available == 0,
                current_streak=updated.streak.current,
            )
            return result, updated, changed

        old_level = updated.level
        updated.xp += granted
        updated.daily_xp_earned += granted
        updated.level = level_for(updated.xp)

        if is_streak_activity(activity_type, self.settings.streak_activity_types):
            streak_update = apply_streak_activity(updated.streak, now, tz)
            updated.streak = streak_update.streak
            logger.debug(f"User {state.user_id}: {streak_update.message}")

        if updated.level > old_level:
            logger.info(f"User {state.user_id} leveled up: {old_level} -> {updated.level}")

        result = AwardResult(
            user_id=state.user_id,
            activity_type=activity_type,
            granted=granted,
            total_granted=granted,
            new_xp=updated.xp,
            new_level=updated.level,
            level_up=updated.level > old_level,
            daily_cap_reached=updated.daily_xp_earned >= updated.daily_xp_cap,
            current_streak=updated.streak.current,
        )
        return result, updated, True

    @staticmethod
    async def _within(deadline: Optional[float], awaitable: Awaitable[T]) -> T:
        """Await under whatever is left of the deadline"""
        if deadline is None:
            return await awaitable

        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise asyncio.TimeoutError()
        async with asyncio.timeout_at(deadline):
            return await awaitable
