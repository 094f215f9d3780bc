"""Maintenance entry point for the gamification engine (schema, reconcile, leaderboard)"""
import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from learnquest.config import Settings, get_settings
from learnquest.db.connection import Database
from learnquest.db.postgres_store import PostgresProgressStore
from learnquest.exceptions import ConfigurationError, LearnQuestError
from learnquest.gamification.course_activity import HttpCourseActivity
from learnquest.models.gamification import LeaderboardMetric
from learnquest.services.container import ServiceContainer

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=getattr(logging, settings.log_level)
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="learnquest", description=__doc__)
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create the gamification tables")

    reconcile = commands.add_parser(
        "reconcile",
        help="Re-evaluate achievements (catches up after partially successful awards)",
    )
    reconcile.add_argument("--user", action="append", dest="users", help="User ID (repeatable; default: all users)")

    leaderboard = commands.add_parser("leaderboard", help="Print one leaderboard page")
    leaderboard.add_argument(
        "--metric",
        choices=[m.value for m in LeaderboardMetric],
        default=LeaderboardMetric.XP.value,
    )
    leaderboard.add_argument("--page", type=int, default=1)
    leaderboard.add_argument("--page-size", type=int, default=10)

    return parser


async def run(args: argparse.Namespace, settings: Settings) -> int:
    """Run one command; returns the process exit code"""
    db = Database(settings.database_url)
    course_activity = HttpCourseActivity.from_url(
        settings.course_service_url,
        timeout=settings.course_service_timeout,
    )

    try:
        logger.info("Initializing database connection pool...")
        await db.init_pool()
        store = PostgresProgressStore(db)

        if args.command == "init-db":
            await store.create_schema()
            logger.info("Schema ready")
            return 0

        container = ServiceContainer(store=store, course_activity=course_activity, settings=settings)
        service = container.gamification_service

        if args.command == "reconcile":
            report = await service.reconcile(args.users)
            for user_id, error in report.failed.items():
                logger.error(f"Reconcile failed for {user_id}: {error}")
            return 1 if report.failed else 0

        page = await service.rank(args.metric, args.page, args.page_size)
        for entry in page.items:
            stats = entry.display_stats
            print(
                f"{entry.rank:>4}  {stats.display_name or entry.user_id:<24} "
                f"xp={stats.xp} level={stats.level} streak={stats.current_streak} "
                f"achievements={stats.achievement_count}"
            )
        print(f"page {page.page}/{page.total_pages} ({page.total_count} users)")
        return 0

    except LearnQuestError as e:
        logger.error(f"{args.command} failed: {e.message}")
        return 1
    finally:
        await course_activity.aclose()
        logger.info("Closing database connection...")
        await db.close_pool()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = get_settings()
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
    configure_logging(settings)
    return asyncio.run(run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
