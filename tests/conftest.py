"""Global test fixtures and utilities for learnquest tests"""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from learnquest.config import Settings
from learnquest.db.memory_store import InMemoryProgressStore
from learnquest.gamification.course_activity import StaticCourseActivity
from learnquest.models.gamification import (
    Achievement,
    AchievementCategory,
    AchievementCriteria,
    AchievementRarity,
    CriteriaType,
    UserGamificationState,
)
from learnquest.services.gamification_service import GamificationService
from learnquest.utils.datetime_helpers import FrozenClock


# ============================================================================
# Time & Settings Fixtures
# ============================================================================

@pytest.fixture
def start_time():
    """Monday noon UTC"""
    return datetime(2024, 3, 4, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(start_time):
    return FrozenClock(start_time)


@pytest.fixture
def settings():
    """Defaults only; ignores any .env in the working directory"""
    return Settings(_env_file=None)


# ============================================================================
# User & Achievement Fixtures
# ============================================================================

@pytest.fixture
def test_user_id():
    """Standard test user ID"""
    return "user-1"


def make_achievement(
    achievement_id: str,
    criteria_type: CriteriaType = CriteriaType.COURSE_COUNT,
    threshold: float = 1,
    xp_reward: int = 0,
    **kwargs,
) -> Achievement:
    """Achievement with sensible defaults for tests"""
    criteria = AchievementCriteria(
        type=criteria_type,
        threshold=threshold,
        domain=kwargs.pop("domain", None),
    )
    return Achievement(
        id=achievement_id,
        name=kwargs.pop("name", achievement_id.replace("_", " ").title()),
        category=kwargs.pop("category", AchievementCategory.COURSE),
        rarity=kwargs.pop("rarity", AchievementRarity.COMMON),
        criteria=criteria,
        xp_reward=xp_reward,
        **kwargs,
    )


@pytest.fixture
def achievement_factory():
    return make_achievement


@pytest.fixture
def course_activity():
    return StaticCourseActivity()


@pytest.fixture
def store():
    return InMemoryProgressStore()


@pytest.fixture
def user_state_factory(start_time):
    def factory(user_id: str = "user-1", **kwargs) -> UserGamificationState:
        kwargs.setdefault("last_xp_reset", start_time)
        kwargs.setdefault("created_at", start_time)
        return UserGamificationState(user_id=user_id, **kwargs)
    return factory


@pytest.fixture
async def seeded_store(store, user_state_factory, test_user_id):
    """In-memory store with one fresh user"""
    await store.create_user_state(user_state_factory(test_user_id))
    return store


@pytest.fixture
def service(seeded_store, course_activity, settings, clock):
    return GamificationService(seeded_store, course_activity, settings, clock=clock)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def mock_db_cursor():
    """Mock psycopg cursor with standard query results"""
    cursor = AsyncMock()
    cursor.fetchone = AsyncMock(return_value=None)
    cursor.fetchall = AsyncMock(return_value=[])
    cursor.execute = AsyncMock()
    return cursor


@pytest.fixture
def mock_db(mock_db_cursor):
    """
    Mock Database whose connection() yields a connection whose cursor()
    yields mock_db_cursor (both used as async context managers)
    """
    conn = MagicMock()
    conn.commit = AsyncMock()

    cursor_cm = MagicMock()
    cursor_cm.__aenter__ = AsyncMock(return_value=mock_db_cursor)
    cursor_cm.__aexit__ = AsyncMock(return_value=False)
    conn.cursor = MagicMock(return_value=cursor_cm)

    conn_cm = MagicMock()
    conn_cm.__aenter__ = AsyncMock(return_value=conn)
    conn_cm.__aexit__ = AsyncMock(return_value=False)

    db = MagicMock()
    db.connection = MagicMock(return_value=conn_cm)
    db.conn = conn
    return db
