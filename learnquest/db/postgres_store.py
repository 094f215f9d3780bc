"""Postgres-backed ProgressStore"""
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import psycopg

from learnquest.db.connection import Database
from learnquest.db.store import ProgressStore
from learnquest.exceptions import StaleStateError, wrap_external_exception
from learnquest.models.gamification import (
    Achievement,
    StreakState,
    UserAchievementProgress,
    UserGamificationState,
    UserStats,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS user_gamification (
    user_id TEXT PRIMARY KEY,
    display_name TEXT,
    xp BIGINT NOT NULL DEFAULT 0 CHECK (xp >= 0),
    level INTEGER NOT NULL DEFAULT 1 CHECK (level >= 1),
    daily_xp_earned INTEGER NOT NULL DEFAULT 0 CHECK (daily_xp_earned >= 0),
    daily_xp_cap INTEGER NOT NULL DEFAULT 500 CHECK (daily_xp_cap >= 0),
    last_xp_reset TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    streak_current INTEGER NOT NULL DEFAULT 0,
    streak_longest INTEGER NOT NULL DEFAULT 0,
    streak_last_activity TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    version INTEGER NOT NULL DEFAULT 0,
    CHECK (streak_longest >= streak_current)
);

CREATE TABLE IF NOT EXISTS achievements (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    icon TEXT NOT NULL DEFAULT '🏆',
    category TEXT NOT NULL,
    criteria JSONB NOT NULL,
    xp_reward INTEGER NOT NULL DEFAULT 0,
    rarity TEXT NOT NULL DEFAULT 'common',
    difficulty INTEGER NOT NULL DEFAULT 1,
    tags JSONB NOT NULL DEFAULT '[]',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    chained_from TEXT REFERENCES achievements(id),
    seasonal_window JSONB,
    sort_order INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS user_achievement_progress (
    user_id TEXT NOT NULL REFERENCES user_gamification(user_id),
    achievement_id TEXT NOT NULL REFERENCES achievements(id),
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    is_completed BOOLEAN NOT NULL DEFAULT FALSE,
    earned_at TIMESTAMPTZ,
    progress_history JSONB NOT NULL DEFAULT '[]',
    notified BOOLEAN NOT NULL DEFAULT FALSE,
    PRIMARY KEY (user_id, achievement_id)
);

CREATE INDEX IF NOT EXISTS idx_user_achievement_progress_completed
    ON user_achievement_progress (user_id) WHERE is_completed;
"""

_STATE_COLUMNS = """
    user_id, display_name, xp, level, daily_xp_earned, daily_xp_cap, last_xp_reset,
    streak_current, streak_longest, streak_last_activity, created_at, version
"""

_ACHIEVEMENT_COLUMNS = """
    id, name, description, icon, category, criteria, xp_reward, rarity, difficulty,
    tags, is_active, chained_from, seasonal_window
"""

_PROGRESS_COLUMNS = """
    user_id, achievement_id, progress, is_completed, earned_at, progress_history, notified
"""


def _row_to_state(row: dict) -> UserGamificationState:
    return UserGamificationState(
        user_id=row["user_id"],
        display_name=row["display_name"],
        xp=row["xp"],
        level=row["level"],
        daily_xp_earned=row["daily_xp_earned"],
        daily_xp_cap=row["daily_xp_cap"],
        last_xp_reset=row["last_xp_reset"],
        streak=StreakState(
            current=row["streak_current"],
            longest=row["streak_longest"],
            last_activity_date=row["streak_last_activity"],
        ),
        created_at=row["created_at"],
        version=row["version"],
    )


def _row_to_achievement(row: dict) -> Achievement:
    # JSONB columns arrive already decoded
    return Achievement.model_validate(dict(row))


def _row_to_progress(row: dict) -> UserAchievementProgress:
    return UserAchievementProgress.model_validate(dict(row))


class PostgresProgressStore(ProgressStore):
    """ProgressStore over the user_gamification / achievements / user_achievement_progress tables"""

    def __init__(self, db: Database):
        self.db = db

    @asynccontextmanager
    async def _translate_errors(self, operation: str, user_id: Optional[str] = None) -> AsyncIterator[None]:
        try:
            yield
        except psycopg.Error as e:
            raise wrap_external_exception(e, operation=operation, user_id=user_id) from e

    async def create_schema(self) -> None:
        """Create tables if they don't exist"""
        async with self._translate_errors("create_schema"):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(SCHEMA_SQL)
                await conn.commit()
        logger.info("Gamification schema ready")

    # ==========================================
    # User state
    # ==========================================

    async def get_user_state(self, user_id: str) -> Optional[UserGamificationState]:
        async with self._translate_errors("get_user_state", user_id):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        f"SELECT {_STATE_COLUMNS} FROM user_gamification WHERE user_id = %s",
                        (user_id,)
                    )
                    row = await cur.fetchone()
                    return _row_to_state(row) if row else None

    async def create_user_state(self, state: UserGamificationState) -> UserGamificationState:
        async with self._translate_errors("create_user_state", state.user_id):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        INSERT INTO user_gamification (
                            user_id, display_name, xp, level, daily_xp_earned, daily_xp_cap,
                            last_xp_reset, streak_current, streak_longest, streak_last_activity,
                            created_at, version
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 0)
                        ON CONFLICT (user_id) DO NOTHING
                        """,
                        (
                            state.user_id,
                            state.display_name,
                            state.xp,
                            state.level,
                            state.daily_xp_earned,
                            state.daily_xp_cap,
                            state.last_xp_reset,
                            state.streak.current,
                            state.streak.longest,
                            state.streak.last_activity_date,
                            state.created_at,
                        )
                    )
                    await cur.execute(
                        f"SELECT {_STATE_COLUMNS} FROM user_gamification WHERE user_id = %s",
                        (state.user_id,)
                    )
                    row = await cur.fetchone()
                await conn.commit()

        logger.info(f"Created gamification state for user {state.user_id}")
        return _row_to_state(row)

    async def save_user_state(
        self, state: UserGamificationState, expected_version: int
    ) -> UserGamificationState:
        async with self._translate_errors("save_user_state", state.user_id):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        f"""
                        UPDATE user_gamification
                        SET display_name = %s,
                            xp = %s,
                            level = %s,
                            daily_xp_earned = %s,
                            daily_xp_cap = %s,
                            last_xp_reset = %s,
                            streak_current = %s,
                            streak_longest = %s,
                            streak_last_activity = %s,
                            version = version + 1
                        WHERE user_id = %s AND version = %s
                        RETURNING {_STATE_COLUMNS}
                        """,
                        (
                            state.display_name,
                            state.xp,
                            state.level,
                            state.daily_xp_earned,
                            state.daily_xp_cap,
                            state.last_xp_reset,
                            state.streak.current,
                            state.streak.longest,
                            state.streak.last_activity_date,
                            state.user_id,
                            expected_version,
                        )
                    )
                    row = await cur.fetchone()
                await conn.commit()

        if not row:
            raise StaleStateError(state.user_id, expected_version)
        return _row_to_state(row)

    async def list_user_ids(self) -> list[str]:
        async with self._translate_errors("list_user_ids"):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT user_id FROM user_gamification ORDER BY user_id")
                    rows = await cur.fetchall()
                    return [row["user_id"] for row in rows]

    # ==========================================
    # Achievement progress
    # ==========================================

    async def get_progress(self, user_id: str, achievement_id: str) -> Optional[UserAchievementProgress]:
        async with self._translate_errors("get_progress", user_id):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        f"""
                        SELECT {_PROGRESS_COLUMNS}
                        FROM user_achievement_progress
                        WHERE user_id = %s AND achievement_id = %s
                        """,
                        (user_id, achievement_id)
                    )
                    row = await cur.fetchone()
                    return _row_to_progress(row) if row else None

    async def list_user_progress(self, user_id: str) -> list[UserAchievementProgress]:
        async with self._translate_errors("list_user_progress", user_id):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        f"SELECT {_PROGRESS_COLUMNS} FROM user_achievement_progress WHERE user_id = %s",
                        (user_id,)
                    )
                    rows = await cur.fetchall()
                    return [_row_to_progress(row) for row in rows]

    async def save_progress(self, progress: UserAchievementProgress) -> None:
        history = json.dumps([entry.model_dump(mode="json") for entry in progress.progress_history])

        async with self._translate_errors("save_progress", progress.user_id):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    # Completed rows are frozen and progress never goes down,
                    # whatever the caller sends
                    await cur.execute(
                        """
                        INSERT INTO user_achievement_progress (
                            user_id, achievement_id, progress, is_completed, earned_at,
                            progress_history, notified
                        )
                        VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s)
                        ON CONFLICT (user_id, achievement_id) DO UPDATE
                        SET progress = GREATEST(user_achievement_progress.progress, EXCLUDED.progress),
                            is_completed = EXCLUDED.is_completed,
                            earned_at = COALESCE(user_achievement_progress.earned_at, EXCLUDED.earned_at),
                            progress_history = EXCLUDED.progress_history,
                            notified = EXCLUDED.notified
                        WHERE NOT user_achievement_progress.is_completed
                        """,
                        (
                            progress.user_id,
                            progress.achievement_id,
                            progress.progress,
                            progress.is_completed,
                            progress.earned_at,
                            history,
                            progress.notified,
                        )
                    )
                await conn.commit()

    async def count_completed_achievements(self, user_id: str) -> int:
        async with self._translate_errors("count_completed_achievements", user_id):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT COUNT(*) AS count
                        FROM user_achievement_progress
                        WHERE user_id = %s AND is_completed
                        """,
                        (user_id,)
                    )
                    row = await cur.fetchone()
                    return row["count"] if row else 0

    # ==========================================
    # Catalog
    # ==========================================

    async def list_achievements(self) -> list[Achievement]:
        async with self._translate_errors("list_achievements"):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        f"SELECT {_ACHIEVEMENT_COLUMNS} FROM achievements ORDER BY sort_order, name"
                    )
                    rows = await cur.fetchall()
                    return [_row_to_achievement(row) for row in rows]

    async def list_active_achievements(self) -> list[Achievement]:
        async with self._translate_errors("list_active_achievements"):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        f"""
                        SELECT {_ACHIEVEMENT_COLUMNS}
                        FROM achievements
                        WHERE is_active
                        ORDER BY sort_order, name
                        """
                    )
                    rows = await cur.fetchall()
                    return [_row_to_achievement(row) for row in rows]

    async def get_achievement(self, achievement_id: str) -> Optional[Achievement]:
        async with self._translate_errors("get_achievement"):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        f"SELECT {_ACHIEVEMENT_COLUMNS} FROM achievements WHERE id = %s",
                        (achievement_id,)
                    )
                    row = await cur.fetchone()
                    return _row_to_achievement(row) if row else None

    # ==========================================
    # Leaderboard
    # ==========================================

    async def list_leaderboard_stats(self) -> list[UserStats]:
        async with self._translate_errors("list_leaderboard_stats"):
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT u.user_id, u.display_name, u.xp, u.level,
                               u.streak_current, u.created_at,
                               COALESCE(c.completed, 0) AS achievement_count
                        FROM user_gamification u
                        LEFT JOIN (
                            SELECT user_id, COUNT(*) AS completed
                            FROM user_achievement_progress
                            WHERE is_completed
                            GROUP BY user_id
                        ) c ON c.user_id = u.user_id
                        """
                    )
                    rows = await cur.fetchall()

        return [
            UserStats(
                user_id=row["user_id"],
                display_name=row["display_name"],
                xp=row["xp"],
                level=row["level"],
                current_streak=row["streak_current"],
                achievement_count=row["achievement_count"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
