"""
Prometheus metrics definitions for the gamification engine.

Metrics are organized by category:
- XP metrics: Awards, granted XP, daily cap hits
- Achievement metrics: Unlocks, evaluation failures, configuration warnings
- Concurrency metrics: Compare-and-swap conflicts

The hosting service exposes these at its /metrics endpoint for Prometheus scraping.
"""

import logging
from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

# =============================================================================
# XP Metrics
# =============================================================================

xp_awards_total = Counter(
    "learnquest_xp_awards_total",
    "Total XP award operations",
    ["activity_type", "outcome"],  # outcome: granted/capped/failed
)

xp_granted_total = Counter(
    "learnquest_xp_granted_total",
    "Total XP granted to users",
    ["activity_type"],
)

xp_award_duration_seconds = Histogram(
    "learnquest_xp_award_duration_seconds",
    "Time to process one top-level XP award, including achievement evaluation",
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

level_ups_total = Counter(
    "learnquest_level_ups_total",
    "Total level-ups",
)

# =============================================================================
# Achievement Metrics
# =============================================================================

achievements_unlocked_total = Counter(
    "learnquest_achievements_unlocked_total",
    "Total achievements unlocked",
    ["category", "rarity"],
)

achievement_evaluation_failures_total = Counter(
    "learnquest_achievement_evaluation_failures_total",
    "Evaluations that failed after XP was already committed",
    ["error_type"],
)

engine_warnings_total = Counter(
    "learnquest_engine_warnings_total",
    "Non-fatal warnings attached to results",
    ["code"],
)

# =============================================================================
# Concurrency Metrics
# =============================================================================

state_update_conflicts_total = Counter(
    "learnquest_state_update_conflicts_total",
    "Compare-and-swap conflicts on user gamification state",
)


def record_award(activity_type: str, granted: int, level_up: bool) -> None:
    """Record the outcome of one applied award"""
    outcome = "granted" if granted > 0 else "capped"
    xp_awards_total.labels(activity_type=activity_type, outcome=outcome).inc()
    if granted > 0:
        xp_granted_total.labels(activity_type=activity_type).inc(granted)
    if level_up:
        level_ups_total.inc()


def record_award_failure(activity_type: str) -> None:
    xp_awards_total.labels(activity_type=activity_type, outcome="failed").inc()


def record_unlock(category: str, rarity: str) -> None:
    achievements_unlocked_total.labels(category=category, rarity=rarity).inc()


def record_warning(code: str) -> None:
    engine_warnings_total.labels(code=code).inc()
