"""
Daily Streak Tracking

A streak counts consecutive calendar days (reference timezone) with at least
one streak-qualifying activity.

Logic:
- First ever activity: streak starts at 1
- Activity already counted today: no change
- Last activity yesterday: streak continues (+1)
- Gap of two or more days: streak resets to 1
- Longest streak only ever grows
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
from zoneinfo import ZoneInfo

from learnquest.models.gamification import StreakState
from learnquest.utils.datetime_helpers import UTC, days_between

logger = logging.getLogger(__name__)


class StreakOutcome(str, Enum):
    STARTED = "started"
    CONTINUED = "continued"
    UNCHANGED = "unchanged"
    RESET = "reset"


@dataclass
class StreakUpdate:
    """Result of applying one activity to a streak"""
    streak: StreakState
    outcome: StreakOutcome
    old_current: int
    message: str


def apply_streak_activity(streak: StreakState, now: datetime, tz: ZoneInfo = UTC) -> StreakUpdate:
    """
    Apply a streak-qualifying activity at `now` to a streak

    The input is not modified; the returned StreakUpdate carries the new state.

    Args:
        streak: Current streak state
        now: Moment of the activity
        tz: Reference timezone for calendar days

    Returns:
        StreakUpdate with the new streak, what happened and a display message
    """
    updated = streak.model_copy()
    old_current = streak.current
    last = streak.last_activity_date

    if last is None:
        updated.current = 1
        outcome = StreakOutcome.STARTED
        message = "Streak started! Day 1 🎉"
    else:
        gap_days = days_between(last, now, tz)

        if gap_days <= 0:
            # Already counted for today (or a clock that went backwards)
            outcome = StreakOutcome.UNCHANGED
            message = f"Streak continues! Day {updated.current} 🔥"
        elif gap_days == 1:
            updated.current += 1
            outcome = StreakOutcome.CONTINUED
            message = f"Streak continues! Day {updated.current} 🔥"
        else:
            updated.current = 1
            outcome = StreakOutcome.RESET
            message = f"Streak reset. Previous: {old_current} days. Starting fresh! Day 1 💪"
            logger.info(f"Streak broken: was {old_current}, gap was {gap_days} days")

    if updated.current > updated.longest:
        updated.longest = updated.current

    # Same-day repeats still refresh the timestamp, the day does not change
    updated.last_activity_date = now

    return StreakUpdate(
        streak=updated,
        outcome=outcome,
        old_current=old_current,
        message=message,
    )


def is_streak_activity(activity_type: str, streak_activity_types) -> bool:
    """Whether an activity type counts toward the daily streak"""
    return activity_type in set(streak_activity_types)
