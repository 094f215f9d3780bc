"""
Gamification engine for LearnQuest

Turns learning activity into:
- XP, levels and a daily XP cap
- Daily activity streaks
- Achievements (including chained tiers and seasonal events)
- Leaderboards
"""

from learnquest.gamification.level_curve import level_for, xp_for_level, level_progress
from learnquest.gamification.streak_system import apply_streak_activity, is_streak_activity
from learnquest.gamification.catalog import AchievementCatalog
from learnquest.gamification.course_activity import (
    CourseActivity,
    HttpCourseActivity,
    StaticCourseActivity,
)
from learnquest.gamification.achievement_system import AchievementEvaluator
from learnquest.gamification.xp_system import UserLockRegistry, XpAwarder, xp_for_action
from learnquest.gamification.leaderboard import LeaderboardRanker

__all__ = [
    "level_for",
    "xp_for_level",
    "level_progress",
    "apply_streak_activity",
    "is_streak_activity",
    "AchievementCatalog",
    "CourseActivity",
    "HttpCourseActivity",
    "StaticCourseActivity",
    "AchievementEvaluator",
    "UserLockRegistry",
    "XpAwarder",
    "xp_for_action",
    "LeaderboardRanker",
]
