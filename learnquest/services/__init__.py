"""
Service Layer Package

Business logic between callers (controllers, jobs) and the engine's
components.

- GamificationService: XP, achievements, leaderboards, read models
- ServiceContainer: lazy construction of services from injected infrastructure
"""

from learnquest.services.container import ServiceContainer
from learnquest.services.gamification_service import GamificationService, ReconcileReport

__all__ = [
    "ServiceContainer",
    "GamificationService",
    "ReconcileReport",
]
