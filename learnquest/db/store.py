"""ProgressStore interface shared by the in-memory and Postgres stores"""
from abc import ABC, abstractmethod
from typing import Optional

from learnquest.models.gamification import (
    Achievement,
    UserAchievementProgress,
    UserGamificationState,
    UserStats,
)


class ProgressStore(ABC):
    """
    Persistence for per-user gamification state, achievement progress and
    the achievement catalog.

    Contract:
    - get_user_state returns None for unknown users (the engine raises NotFoundError)
    - save_user_state is a compare-and-swap: it writes only if the stored
      version equals expected_version, bumps the version, and raises
      StaleStateError otherwise
    - at most one progress record exists per user x achievement
    - returned models are copies; mutating them never changes stored data
    - store failures raise PersistenceError subclasses
    """

    # ---- user state ----

    @abstractmethod
    async def get_user_state(self, user_id: str) -> Optional[UserGamificationState]:
        ...

    @abstractmethod
    async def create_user_state(self, state: UserGamificationState) -> UserGamificationState:
        """Insert initial state at account creation (no-op if it exists)"""

    @abstractmethod
    async def save_user_state(
        self, state: UserGamificationState, expected_version: int
    ) -> UserGamificationState:
        """CAS write; returns the saved state carrying its new version"""

    @abstractmethod
    async def list_user_ids(self) -> list[str]:
        ...

    # ---- achievement progress ----

    @abstractmethod
    async def get_progress(self, user_id: str, achievement_id: str) -> Optional[UserAchievementProgress]:
        ...

    @abstractmethod
    async def list_user_progress(self, user_id: str) -> list[UserAchievementProgress]:
        ...

    @abstractmethod
    async def save_progress(self, progress: UserAchievementProgress) -> None:
        """Upsert keyed on (user_id, achievement_id)"""

    @abstractmethod
    async def count_completed_achievements(self, user_id: str) -> int:
        ...

    # ---- catalog ----

    @abstractmethod
    async def list_achievements(self) -> list[Achievement]:
        ...

    async def list_active_achievements(self) -> list[Achievement]:
        return [a for a in await self.list_achievements() if a.is_active]

    async def get_achievement(self, achievement_id: str) -> Optional[Achievement]:
        for achievement in await self.list_achievements():
            if achievement.id == achievement_id:
                return achievement
        return None

    # ---- leaderboard ----

    @abstractmethod
    async def list_leaderboard_stats(self) -> list[UserStats]:
        """One UserStats row per user with current xp, streak and completed count"""
