"""Gamification models: user state, achievement definitions, progress, results"""
from enum import Enum
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional
from datetime import datetime, timezone

from learnquest.utils.datetime_helpers import ensure_aware


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================
# Enums
# ==========================================

class AchievementCategory(str, Enum):
    """Achievement categories"""
    COURSE = "course"
    ASSESSMENT = "assessment"
    STREAK = "streak"
    COMMUNITY = "community"
    SPECIAL = "special"


class AchievementRarity(str, Enum):
    """Achievement rarity, rarest last"""
    COMMON = "common"
    UNCOMMON = "uncommon"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


class CriteriaType(str, Enum):
    """What an achievement's threshold is measured against"""
    COURSE_COUNT = "course_count"
    ASSESSMENT_SCORE = "assessment_score"
    DAILY_STREAK = "daily_streak"
    REVIEW_COUNT = "review_count"
    VIDEO_COUNT = "video_count"
    PERFECT_SCORE = "perfect_score"
    SPEED_RUN = "speed_run"
    EXPLORER = "explorer"
    SOCIAL_LEARNER = "social_learner"
    # Measured from the user's own gamification state
    XP_TOTAL = "xp_total"
    LEVEL_REACHED = "level_reached"


class LeaderboardMetric(str, Enum):
    """Leaderboard sort keys"""
    XP = "xp"
    ACHIEVEMENT_COUNT = "achievement_count"
    STREAK = "streak"


class WarningCode(str, Enum):
    """Non-fatal conditions reported alongside successful results"""
    CONFIGURATION = "configuration_warning"
    CHAIN_TOO_DEEP = "achievement_chain_too_deep"


# ==========================================
# User state
# ==========================================

class StreakState(BaseModel):
    """Consecutive-day activity streak"""
    current: int = Field(default=0, ge=0)
    longest: int = Field(default=0, ge=0)
    last_activity_date: Optional[datetime] = None

    @model_validator(mode="after")
    def longest_covers_current(self) -> "StreakState":
        if self.longest < self.current:
            raise ValueError("streak.longest must be >= streak.current")
        return self


class UserGamificationState(BaseModel):
    """A user's persisted XP, level, daily cap and streak"""
    user_id: str
    display_name: Optional[str] = None
    xp: int = Field(default=0, ge=0)
    level: int = Field(default=1, ge=1)
    daily_xp_earned: int = Field(default=0, ge=0)
    daily_xp_cap: int = Field(default=500, ge=0)
    last_xp_reset: datetime = Field(default_factory=_utcnow)
    streak: StreakState = Field(default_factory=StreakState)
    created_at: datetime = Field(default_factory=_utcnow)
    version: int = Field(default=0, ge=0)


# ==========================================
# Achievement definitions
# ==========================================

class AchievementCriteria(BaseModel):
    """Achievement unlock rule"""
    type: CriteriaType
    threshold: float
    domain: Optional[str] = None
    time_limit_hours: Optional[float] = None


class SeasonalWindow(BaseModel):
    """Period during which a seasonal achievement can be earned"""
    start: datetime
    end: datetime
    event_name: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class Achievement(BaseModel):
    """Achievement definition"""
    id: str
    name: str
    description: str = ""
    icon: str = "🏆"
    category: AchievementCategory
    criteria: AchievementCriteria
    xp_reward: int = Field(default=0, ge=0)
    rarity: AchievementRarity = AchievementRarity.COMMON
    difficulty: int = Field(default=1, ge=1, le=5)
    tags: list[str] = Field(default_factory=list)
    is_active: bool = True
    chained_from: Optional[str] = None
    seasonal_window: Optional[SeasonalWindow] = None


# ==========================================
# Per-user achievement progress
# ==========================================

class ProgressHistoryEntry(BaseModel):
    """One recorded step of progress toward an achievement"""
    date: datetime
    progress: int = Field(ge=0, le=100)
    milestone: Optional[int] = None


class UserAchievementProgress(BaseModel):
    """User's progress toward (or completion of) one achievement"""
    user_id: str
    achievement_id: str
    progress: int = Field(default=0, ge=0, le=100)
    is_completed: bool = False
    earned_at: Optional[datetime] = None
    progress_history: list[ProgressHistoryEntry] = Field(default_factory=list)
    notified: bool = False


# ==========================================
# Results
# ==========================================

class EngineWarning(BaseModel):
    """Non-fatal problem noticed while processing"""
    code: WarningCode
    message: str
    achievement_id: Optional[str] = None


class EvaluationResult(BaseModel):
    """Outcome of one achievement evaluation pass"""
    newly_completed: list[Achievement] = Field(default_factory=list)
    warnings: list[EngineWarning] = Field(default_factory=list)


class AwardResult(BaseModel):
    """
    Outcome of an XP award

    `granted` is the XP applied for the requested activity itself;
    `total_granted` adds XP from achievement rewards unlocked on the way.
    """
    user_id: str
    activity_type: str
    granted: int = 0
    total_granted: int = 0
    new_xp: int = 0
    new_level: int = 1
    level_up: bool = False
    daily_cap_reached: bool = False
    current_streak: int = 0
    new_achievements: list[Achievement] = Field(default_factory=list)
    warnings: list[EngineWarning] = Field(default_factory=list)
    achievements_evaluated: bool = True
    evaluation_error: Optional[str] = None

    @property
    def partial(self) -> bool:
        """XP was committed but achievement evaluation did not finish"""
        return not self.achievements_evaluated


class LevelProgress(BaseModel):
    """Where a user sits between two levels"""
    xp: int
    level: int
    current_level_xp: int
    next_level_xp: int
    xp_to_next_level: int
    progress: int


# ==========================================
# Leaderboard
# ==========================================

class UserStats(BaseModel):
    """Per-user figures the leaderboard sorts on"""
    user_id: str
    display_name: Optional[str] = None
    xp: int = 0
    level: int = 1
    current_streak: int = 0
    achievement_count: int = 0
    created_at: Optional[datetime] = None


class LeaderboardEntry(BaseModel):
    """One ranked row"""
    user_id: str
    rank: int
    display_stats: UserStats


class LeaderboardPage(BaseModel):
    """A page of leaderboard rows plus pagination totals"""
    metric: LeaderboardMetric
    items: list[LeaderboardEntry] = Field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = 10
    total_pages: int = 0

