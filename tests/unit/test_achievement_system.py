"""Unit tests for achievement evaluation (learnquest/gamification/achievement_system.py)"""
from datetime import timedelta

import pytest

from learnquest.config import Settings
from learnquest.exceptions import NotFoundError, ValidationError
from learnquest.gamification.achievement_system import (
    AchievementEvaluator,
    crossed_milestone,
    progress_percentage,
)
from learnquest.models.gamification import CriteriaType, SeasonalWindow, WarningCode


@pytest.fixture
def evaluator(seeded_store, course_activity, clock, settings):
    return AchievementEvaluator(seeded_store, course_activity, clock, settings)


# ============================================================================
# Helpers
# ============================================================================

def test_progress_percentage_rounds_half_up():
    assert progress_percentage(1, 8) == 13  # 12.5
    assert progress_percentage(1, 3) == 33
    assert progress_percentage(2, 3) == 67
    assert progress_percentage(5, 5) == 100
    assert progress_percentage(9, 5) == 100


def test_crossed_milestone():
    assert crossed_milestone(0, 20) is None
    assert crossed_milestone(0, 25) == 25
    assert crossed_milestone(20, 60) == 50
    assert crossed_milestone(10, 100) == 100
    assert crossed_milestone(50, 60) is None


# ============================================================================
# Evaluation
# ============================================================================

@pytest.mark.asyncio
async def test_evaluate_unknown_user(evaluator):
    with pytest.raises(NotFoundError):
        await evaluator.evaluate("ghost")


@pytest.mark.asyncio
async def test_evaluate_records_partial_progress(
    evaluator, seeded_store, course_activity, test_user_id, achievement_factory
):
    await seeded_store.upsert_achievement(achievement_factory("five_courses", CriteriaType.COURSE_COUNT, 5))
    course_activity.set_count(test_user_id, "course_count", 2)

    result = await evaluator.evaluate(test_user_id)

    assert result.newly_completed == []
    record = await seeded_store.get_progress(test_user_id, "five_courses")
    assert record.progress == 40
    assert record.is_completed is False
    assert record.earned_at is None
    assert record.progress_history[-1].progress == 40
    assert record.progress_history[-1].milestone == 25


@pytest.mark.asyncio
async def test_no_record_for_zero_progress(evaluator, seeded_store, test_user_id, achievement_factory):
    await seeded_store.upsert_achievement(achievement_factory("five_courses", CriteriaType.COURSE_COUNT, 5))

    await evaluator.evaluate(test_user_id)

    assert await seeded_store.get_progress(test_user_id, "five_courses") is None


@pytest.mark.asyncio
async def test_evaluate_completes(
    evaluator, seeded_store, course_activity, clock, test_user_id, achievement_factory
):
    await seeded_store.upsert_achievement(achievement_factory("first_course", CriteriaType.COURSE_COUNT, 1))
    course_activity.set_count(test_user_id, "course_count", 1)

    result = await evaluator.evaluate(test_user_id)

    assert [a.id for a in result.newly_completed] == ["first_course"]
    record = await seeded_store.get_progress(test_user_id, "first_course")
    assert record.progress == 100
    assert record.is_completed is True
    assert record.earned_at == clock.now()
    assert record.progress_history[-1].milestone == 100
    assert record.notified is False


@pytest.mark.asyncio
async def test_near_complete_capped_at_99(
    evaluator, seeded_store, course_activity, test_user_id, achievement_factory
):
    """199/200 rounds to 100 but is not complete"""
    await seeded_store.upsert_achievement(achievement_factory("videos", CriteriaType.VIDEO_COUNT, 200))
    course_activity.set_count(test_user_id, "video_count", 199)

    result = await evaluator.evaluate(test_user_id)

    assert result.newly_completed == []
    record = await seeded_store.get_progress(test_user_id, "videos")
    assert record.progress == 99
    assert record.is_completed is False


@pytest.mark.asyncio
async def test_completion_irreversible(
    evaluator, seeded_store, course_activity, clock, test_user_id, achievement_factory
):
    await seeded_store.upsert_achievement(achievement_factory("first_course", CriteriaType.COURSE_COUNT, 1))
    course_activity.set_count(test_user_id, "course_count", 1)
    await evaluator.evaluate(test_user_id)
    before = await seeded_store.get_progress(test_user_id, "first_course")

    course_activity.set_count(test_user_id, "course_count", 0)
    clock.advance(days=3)
    again = await evaluator.evaluate(test_user_id)

    after = await seeded_store.get_progress(test_user_id, "first_course")
    assert again.newly_completed == []
    assert after == before


@pytest.mark.asyncio
async def test_progress_never_decreases(
    evaluator, seeded_store, course_activity, test_user_id, achievement_factory
):
    await seeded_store.upsert_achievement(achievement_factory("ten_reviews", CriteriaType.REVIEW_COUNT, 10))
    course_activity.set_count(test_user_id, "review_count", 6)
    await evaluator.evaluate(test_user_id)

    course_activity.set_count(test_user_id, "review_count", 2)
    await evaluator.evaluate(test_user_id)

    record = await seeded_store.get_progress(test_user_id, "ten_reviews")
    assert record.progress == 60
    assert len(record.progress_history) == 1


@pytest.mark.asyncio
async def test_state_criteria(
    evaluator, seeded_store, test_user_id, achievement_factory, user_state_factory
):
    await seeded_store.upsert_achievement(achievement_factory("xp_1000", CriteriaType.XP_TOTAL, 1000))
    await seeded_store.upsert_achievement(achievement_factory("level_2", CriteriaType.LEVEL_REACHED, 2))
    state = await seeded_store.get_user_state(test_user_id)
    state.xp = 500
    state.level = 2
    await seeded_store.save_user_state(state, expected_version=state.version)

    result = await evaluator.evaluate(test_user_id)

    assert [a.id for a in result.newly_completed] == ["level_2"]
    assert (await seeded_store.get_progress(test_user_id, "xp_1000")).progress == 50


@pytest.mark.asyncio
async def test_domain_filter_passed_to_course_activity(
    evaluator, seeded_store, course_activity, test_user_id, achievement_factory
):
    await seeded_store.upsert_achievement(
        achievement_factory("python_pro", CriteriaType.COURSE_COUNT, 3, domain="python")
    )
    course_activity.set_count(test_user_id, "course_count", 10)
    course_activity.set_count(test_user_id, "course_count", 3, domain="python")

    result = await evaluator.evaluate(test_user_id)

    assert [a.id for a in result.newly_completed] == ["python_pro"]


@pytest.mark.asyncio
async def test_inactive_skipped(evaluator, seeded_store, course_activity, test_user_id, achievement_factory):
    await seeded_store.upsert_achievement(
        achievement_factory("retired", CriteriaType.COURSE_COUNT, 1, is_active=False)
    )
    course_activity.set_count(test_user_id, "course_count", 1)

    result = await evaluator.evaluate(test_user_id)

    assert result.newly_completed == []
    assert await seeded_store.get_progress(test_user_id, "retired") is None


@pytest.mark.asyncio
async def test_seasonal_window(
    evaluator, seeded_store, course_activity, clock, test_user_id, achievement_factory, start_time
):
    window = SeasonalWindow(
        start=start_time + timedelta(days=1),
        end=start_time + timedelta(days=2),
        event_name="Spring Sprint",
    )
    await seeded_store.upsert_achievement(
        achievement_factory("spring", CriteriaType.COURSE_COUNT, 1, seasonal_window=window)
    )
    course_activity.set_count(test_user_id, "course_count", 1)

    before = await evaluator.evaluate(test_user_id)
    clock.advance(days=1, hours=1)
    during = await evaluator.evaluate(test_user_id)

    assert before.newly_completed == []
    assert [a.id for a in during.newly_completed] == ["spring"]


@pytest.mark.asyncio
async def test_non_positive_threshold_completes_with_warning(
    evaluator, seeded_store, test_user_id, achievement_factory
):
    await seeded_store.upsert_achievement(achievement_factory("freebie", CriteriaType.COURSE_COUNT, 0))

    result = await evaluator.evaluate(test_user_id)

    assert [a.id for a in result.newly_completed] == ["freebie"]
    assert result.warnings[0].code == WarningCode.CONFIGURATION
    assert result.warnings[0].achievement_id == "freebie"


# ============================================================================
# Chains
# ============================================================================

@pytest.mark.asyncio
async def test_chains_ungated_by_default(
    evaluator, seeded_store, course_activity, test_user_id, achievement_factory
):
    await seeded_store.upsert_achievement(achievement_factory("reviews_5", CriteriaType.REVIEW_COUNT, 5))
    await seeded_store.upsert_achievement(
        achievement_factory("reviews_1", CriteriaType.REVIEW_COUNT, 1, chained_from="reviews_5")
    )
    course_activity.set_count(test_user_id, "review_count", 1)

    result = await evaluator.evaluate(test_user_id)

    assert [a.id for a in result.newly_completed] == ["reviews_1"]


@pytest.mark.asyncio
async def test_chain_gating(seeded_store, course_activity, clock, test_user_id, achievement_factory):
    settings = Settings(_env_file=None, gate_chained_achievements=True)
    evaluator = AchievementEvaluator(seeded_store, course_activity, clock, settings)
    await seeded_store.upsert_achievement(achievement_factory("courses_1", CriteriaType.COURSE_COUNT, 1))
    await seeded_store.upsert_achievement(
        achievement_factory("courses_5", CriteriaType.COURSE_COUNT, 5, chained_from="courses_1")
    )
    await seeded_store.upsert_achievement(
        achievement_factory("courses_10", CriteriaType.COURSE_COUNT, 10, chained_from="courses_5")
    )

    course_activity.set_count(test_user_id, "course_count", 0)
    await evaluator.evaluate(test_user_id)
    assert await seeded_store.get_progress(test_user_id, "courses_5") is None

    course_activity.set_count(test_user_id, "course_count", 5)
    result = await evaluator.evaluate(test_user_id)

    # Predecessor completed earlier in the same pass unlocks the next tier
    assert [a.id for a in result.newly_completed] == ["courses_1", "courses_5"]
    assert (await seeded_store.get_progress(test_user_id, "courses_10")).progress == 50


@pytest.mark.asyncio
async def test_cyclic_chain_warns_and_evaluates(
    seeded_store, course_activity, clock, test_user_id, achievement_factory
):
    settings = Settings(_env_file=None, gate_chained_achievements=True)
    evaluator = AchievementEvaluator(seeded_store, course_activity, clock, settings)
    await seeded_store.upsert_achievement(
        achievement_factory("a", CriteriaType.VIDEO_COUNT, 1, chained_from="b")
    )
    await seeded_store.upsert_achievement(
        achievement_factory("b", CriteriaType.VIDEO_COUNT, 2, chained_from="a")
    )
    course_activity.set_count(test_user_id, "video_count", 2)

    result = await evaluator.evaluate(test_user_id)

    assert [a.id for a in result.newly_completed] == ["a", "b"]
    assert {w.achievement_id for w in result.warnings} == {"a", "b"}
    assert all(w.code == WarningCode.CONFIGURATION for w in result.warnings)


# ============================================================================
# Admin progress
# ============================================================================

@pytest.mark.asyncio
async def test_set_progress_raises_progress(evaluator, seeded_store, test_user_id, achievement_factory):
    await seeded_store.upsert_achievement(achievement_factory("five_courses", CriteriaType.COURSE_COUNT, 5))

    record, completed = await evaluator.set_progress(test_user_id, "five_courses", 80)

    assert completed is False
    assert record.progress == 80
    assert record.progress_history[-1].milestone == 75


@pytest.mark.asyncio
async def test_set_progress_never_lowers(evaluator, seeded_store, test_user_id, achievement_factory):
    await seeded_store.upsert_achievement(achievement_factory("five_courses", CriteriaType.COURSE_COUNT, 5))
    await evaluator.set_progress(test_user_id, "five_courses", 80)

    record, completed = await evaluator.set_progress(test_user_id, "five_courses", 30)

    assert completed is False
    assert record.progress == 80


@pytest.mark.asyncio
async def test_set_progress_completes(evaluator, seeded_store, test_user_id, achievement_factory):
    await seeded_store.upsert_achievement(achievement_factory("five_courses", CriteriaType.COURSE_COUNT, 5))

    record, completed = await evaluator.set_progress(test_user_id, "five_courses", 100)

    assert completed is True
    assert record.is_completed is True
    assert record.earned_at is not None


@pytest.mark.asyncio
async def test_set_progress_validation(evaluator, seeded_store, test_user_id, achievement_factory):
    await seeded_store.upsert_achievement(achievement_factory("five_courses", CriteriaType.COURSE_COUNT, 5))

    with pytest.raises(ValidationError):
        await evaluator.set_progress(test_user_id, "five_courses", 101)
    with pytest.raises(NotFoundError):
        await evaluator.set_progress(test_user_id, "missing", 10)
    with pytest.raises(NotFoundError):
        await evaluator.set_progress("ghost", "five_courses", 10)
