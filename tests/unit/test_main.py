"""Tests for the maintenance entry point"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from learnquest.exceptions import ConfigurationError
from learnquest.main import build_parser, main, run


def test_parser_reconcile_users():
    args = build_parser().parse_args(["reconcile", "--user", "a", "--user", "b"])

    assert args.command == "reconcile"
    assert args.users == ["a", "b"]


def test_parser_leaderboard_defaults():
    args = build_parser().parse_args(["leaderboard"])

    assert args.metric == "xp"
    assert args.page == 1
    assert args.page_size == 10


def test_parser_rejects_unknown_metric():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["leaderboard", "--metric", "karma"])


@pytest.fixture
def patched_infrastructure(seeded_store):
    db = MagicMock()
    db.init_pool = AsyncMock()
    db.close_pool = AsyncMock()
    course_activity = MagicMock()
    course_activity.get_count = AsyncMock(return_value=0)
    course_activity.aclose = AsyncMock()

    with patch("learnquest.main.Database", return_value=db), \
            patch("learnquest.main.PostgresProgressStore", return_value=seeded_store), \
            patch("learnquest.main.HttpCourseActivity.from_url", return_value=course_activity):
        yield db, course_activity


@pytest.mark.asyncio
async def test_run_reconcile(patched_infrastructure, settings, test_user_id):
    db, course_activity = patched_infrastructure
    args = build_parser().parse_args(["reconcile", "--user", test_user_id])

    exit_code = await run(args, settings)

    assert exit_code == 0
    db.init_pool.assert_awaited_once()
    db.close_pool.assert_awaited_once()
    course_activity.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_reconcile_failure_exit_code(patched_infrastructure, settings):
    args = build_parser().parse_args(["reconcile", "--user", "ghost"])

    assert await run(args, settings) == 1


@pytest.mark.asyncio
async def test_run_leaderboard_prints_page(patched_infrastructure, settings, test_user_id, capsys):
    args = build_parser().parse_args(["leaderboard"])

    exit_code = await run(args, settings)

    assert exit_code == 0
    assert test_user_id in capsys.readouterr().out


def test_main_wraps_invalid_settings(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "CHATTY")

    with pytest.raises(ConfigurationError):
        main(["init-db"])
