"""
Service Container - Dependency Injection Container

Holds the infrastructure one engine instance runs on and builds services from
it on first access. Containers are created and passed explicitly; there is no
module-level instance.
"""

from dataclasses import dataclass, field
from typing import Optional
import logging

from learnquest.config import Settings
from learnquest.db.store import ProgressStore
from learnquest.gamification.course_activity import CourseActivity
from learnquest.utils.datetime_helpers import Clock

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """
    Simple dependency injection container for services.

    Services are lazy-loaded on first access via properties.
    Infrastructure dependencies (store, course activity, clock) are injected.
    """

    # Infrastructure dependencies (injected)
    store: ProgressStore
    course_activity: CourseActivity
    settings: Settings
    clock: Optional[Clock] = None

    # Services (lazy-loaded via properties)
    _gamification_service: Optional[object] = field(default=None, init=False, repr=False)

    @property
    def gamification_service(self):
        """Get GamificationService instance (lazy-loaded)"""
        if self._gamification_service is None:
            from learnquest.services.gamification_service import GamificationService
            self._gamification_service = GamificationService(
                self.store,
                self.course_activity,
                self.settings,
                clock=self.clock,
            )
            logger.debug("GamificationService instantiated")
        return self._gamification_service
