"""Unit tests for leaderboard ranking (learnquest/gamification/leaderboard.py)"""
import pytest

from learnquest.exceptions import NotFoundError, ValidationError
from learnquest.gamification.leaderboard import LeaderboardRanker
from learnquest.models.gamification import (
    CriteriaType,
    LeaderboardMetric,
    StreakState,
    UserAchievementProgress,
)


@pytest.fixture
async def ranked_store(store, user_state_factory, achievement_factory):
    """
    xp:      carol 900, alice 500, bob 500, dave 100
    streak:  dave 9, bob 3, alice 1, carol 0
    badges:  bob 2, alice 1, others 0
    """
    users = [
        ("alice", 500, 1),
        ("bob", 500, 3),
        ("carol", 900, 0),
        ("dave", 100, 9),
    ]
    for user_id, xp, streak in users:
        await store.create_user_state(user_state_factory(
            user_id,
            display_name=user_id.title(),
            xp=xp,
            streak=StreakState(current=streak, longest=streak),
        ))

    await store.upsert_achievement(achievement_factory("a1", CriteriaType.COURSE_COUNT, 1))
    await store.upsert_achievement(achievement_factory("a2", CriteriaType.COURSE_COUNT, 2))
    for user_id, achievement_id in [("alice", "a1"), ("bob", "a1"), ("bob", "a2")]:
        await store.save_progress(UserAchievementProgress(
            user_id=user_id, achievement_id=achievement_id, progress=100, is_completed=True
        ))
    # Incomplete progress never counts
    await store.save_progress(UserAchievementProgress(user_id="carol", achievement_id="a1", progress=50))
    return store


@pytest.mark.asyncio
async def test_rank_by_xp_tie_break_on_user_id(ranked_store):
    page = await LeaderboardRanker(ranked_store).rank("xp", 1, 10)

    assert [(e.user_id, e.rank) for e in page.items] == [
        ("carol", 1), ("alice", 2), ("bob", 3), ("dave", 4)
    ]
    assert page.total_count == 4
    assert page.total_pages == 1
    assert page.items[0].display_stats.display_name == "Carol"


@pytest.mark.asyncio
async def test_rank_by_achievement_count(ranked_store):
    page = await LeaderboardRanker(ranked_store).rank(LeaderboardMetric.ACHIEVEMENT_COUNT)

    assert [e.user_id for e in page.items] == ["bob", "alice", "carol", "dave"]
    assert page.items[0].display_stats.achievement_count == 2
    assert page.items[2].display_stats.achievement_count == 0


@pytest.mark.asyncio
async def test_rank_by_streak(ranked_store):
    page = await LeaderboardRanker(ranked_store).rank("streak")

    assert [e.user_id for e in page.items] == ["dave", "bob", "alice", "carol"]


@pytest.mark.asyncio
async def test_pagination_keeps_global_ranks(ranked_store):
    ranker = LeaderboardRanker(ranked_store)

    second = await ranker.rank("xp", page=2, page_size=3)
    beyond = await ranker.rank("xp", page=5, page_size=3)

    assert [(e.user_id, e.rank) for e in second.items] == [("dave", 4)]
    assert second.total_pages == 2
    assert beyond.items == []
    assert beyond.total_count == 4


@pytest.mark.asyncio
async def test_rank_is_deterministic(ranked_store):
    ranker = LeaderboardRanker(ranked_store)

    first = await ranker.rank("xp", 1, 10)
    second = await ranker.rank("xp", 1, 10)

    assert first == second


@pytest.mark.asyncio
async def test_rank_validation(ranked_store):
    ranker = LeaderboardRanker(ranked_store)

    with pytest.raises(ValidationError):
        await ranker.rank("xp", page=0)
    with pytest.raises(ValidationError):
        await ranker.rank("xp", page_size=0)
    with pytest.raises(ValidationError):
        await ranker.rank("karma")


@pytest.mark.asyncio
async def test_empty_leaderboard(store):
    page = await LeaderboardRanker(store).rank()

    assert page.items == []
    assert page.total_count == 0
    assert page.total_pages == 0


@pytest.mark.asyncio
async def test_rank_of(ranked_store):
    ranker = LeaderboardRanker(ranked_store)

    entry = await ranker.rank_of("bob", "xp")

    assert entry.rank == 3
    assert entry.display_stats.xp == 500
    with pytest.raises(NotFoundError):
        await ranker.rank_of("ghost")
