"""
In-memory ProgressStore

Keeps everything in dicts for the lifetime of the instance. Used by tests,
local development and replay tooling; nothing here is persisted.

Each instance is independent: create one per engine (no module-level store).
"""

import asyncio
import logging
from typing import Iterable, Optional

from learnquest.db.store import ProgressStore
from learnquest.exceptions import StaleStateError
from learnquest.models.gamification import (
    Achievement,
    UserAchievementProgress,
    UserGamificationState,
    UserStats,
)

logger = logging.getLogger(__name__)


class InMemoryProgressStore(ProgressStore):
    """Dict-backed store with the same CAS semantics as the Postgres store"""

    def __init__(self, achievements: Iterable[Achievement] = (), latency: float = 0.0):
        """
        Args:
            achievements: Initial catalog
            latency: Seconds every call sleeps before running; any call yields
                to the event loop, so concurrent callers interleave like they
                would against a real database
        """
        self.latency = latency
        self._user_states: dict[str, UserGamificationState] = {}
        self._progress: dict[tuple[str, str], UserAchievementProgress] = {}
        self._achievements: dict[str, Achievement] = {}
        for achievement in achievements:
            self._achievements[achievement.id] = achievement.model_copy(deep=True)

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    # ---- user state ----

    async def get_user_state(self, user_id: str) -> Optional[UserGamificationState]:
        await self._io()
        state = self._user_states.get(user_id)
        return state.model_copy(deep=True) if state else None

    async def create_user_state(self, state: UserGamificationState) -> UserGamificationState:
        await self._io()
        if state.user_id not in self._user_states:
            self._user_states[state.user_id] = state.model_copy(deep=True)
            logger.info(f"Created gamification state for user {state.user_id}")
        return self._user_states[state.user_id].model_copy(deep=True)

    async def save_user_state(
        self, state: UserGamificationState, expected_version: int
    ) -> UserGamificationState:
        await self._io()
        current = self._user_states.get(state.user_id)
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise StaleStateError(state.user_id, expected_version)

        saved = state.model_copy(deep=True)
        saved.version = expected_version + 1
        self._user_states[state.user_id] = saved
        logger.debug(f"Saved state for user {state.user_id} (version {saved.version})")
        return saved.model_copy(deep=True)

    async def list_user_ids(self) -> list[str]:
        await self._io()
        return sorted(self._user_states)

    # ---- achievement progress ----

    async def get_progress(self, user_id: str, achievement_id: str) -> Optional[UserAchievementProgress]:
        await self._io()
        progress = self._progress.get((user_id, achievement_id))
        return progress.model_copy(deep=True) if progress else None

    async def list_user_progress(self, user_id: str) -> list[UserAchievementProgress]:
        await self._io()
        return [
            p.model_copy(deep=True)
            for (uid, _), p in self._progress.items()
            if uid == user_id
        ]

    async def save_progress(self, progress: UserAchievementProgress) -> None:
        await self._io()
        self._progress[(progress.user_id, progress.achievement_id)] = progress.model_copy(deep=True)

    async def count_completed_achievements(self, user_id: str) -> int:
        await self._io()
        return sum(
            1 for (uid, _), p in self._progress.items()
            if uid == user_id and p.is_completed
        )

    # ---- catalog ----

    async def list_achievements(self) -> list[Achievement]:
        await self._io()
        return [a.model_copy(deep=True) for a in self._achievements.values()]

    async def upsert_achievement(self, achievement: Achievement) -> None:
        """Admin create/update of a definition"""
        await self._io()
        self._achievements[achievement.id] = achievement.model_copy(deep=True)

    # ---- leaderboard ----

    async def list_leaderboard_stats(self) -> list[UserStats]:
        await self._io()
        completed: dict[str, int] = {}
        for (uid, _), p in self._progress.items():
            if p.is_completed:
                completed[uid] = completed.get(uid, 0) + 1

        return [
            UserStats(
                user_id=state.user_id,
                display_name=state.display_name,
                xp=state.xp,
                level=state.level,
                current_streak=state.streak.current,
                achievement_count=completed.get(state.user_id, 0),
                created_at=state.created_at,
            )
            for state in self._user_states.values()
        ]
