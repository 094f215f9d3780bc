"""
Achievement Catalog

Read-only view over achievement definitions: active/seasonal filtering and
chain structure (tiered achievements linked through `chained_from`).
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from learnquest.db.store import ProgressStore
from learnquest.models.gamification import Achievement, EngineWarning, WarningCode

logger = logging.getLogger(__name__)


class AchievementCatalog:
    """Immutable snapshot of achievement definitions, in catalog order"""

    def __init__(self, achievements: Iterable[Achievement]):
        self._achievements = list(achievements)
        self._by_id = {a.id: a for a in self._achievements}
        self._cyclic_ids = self._find_cyclic_ids()

    @classmethod
    async def load(cls, store: ProgressStore, active_only: bool = True) -> "AchievementCatalog":
        if active_only:
            return cls(await store.list_active_achievements())
        return cls(await store.list_achievements())

    def __len__(self) -> int:
        return len(self._achievements)

    def __iter__(self):
        return iter(self._achievements)

    def get(self, achievement_id: str) -> Optional[Achievement]:
        return self._by_id.get(achievement_id)

    def available_at(self, moment: datetime) -> list[Achievement]:
        """Active achievements whose seasonal window (if any) contains moment"""
        return [
            a for a in self._achievements
            if a.is_active and (a.seasonal_window is None or a.seasonal_window.contains(moment))
        ]

    # ==========================================
    # Chains
    # ==========================================

    @property
    def cyclic_ids(self) -> frozenset[str]:
        """Achievements whose chained_from links loop back on themselves"""
        return self._cyclic_ids

    def _find_cyclic_ids(self) -> frozenset[str]:
        cyclic: set[str] = set()
        for start in self._achievements:
            seen: list[str] = []
            current: Optional[str] = start.id
            while current is not None and current in self._by_id:
                if current in seen:
                    cyclic.update(seen[seen.index(current):])
                    break
                seen.append(current)
                current = self._by_id[current].chained_from
        return frozenset(cyclic)

    def successors(self, achievement_id: str) -> list[Achievement]:
        return [a for a in self._achievements if a.chained_from == achievement_id]

    def chains(self) -> list[list[Achievement]]:
        """
        Achievement chains, each ordered from the entry tier upward

        A chain starts at an achievement with no (known) predecessor that at
        least one other achievement is chained from. Branches are walked
        depth-first. Cyclic links are left out.
        """
        result = []
        for root in self._achievements:
            if root.id in self._cyclic_ids:
                continue
            if root.chained_from is not None and root.chained_from in self._by_id:
                continue
            if not self.successors(root.id):
                continue

            chain: list[Achievement] = []
            stack = [root]
            while stack:
                node = stack.pop()
                chain.append(node)
                # Reverse so the first successor in catalog order is walked first
                stack.extend(reversed(self.successors(node.id)))
            result.append(chain)
        return result

    def warnings(self) -> list[EngineWarning]:
        """Configuration problems in the catalog itself"""
        found = []
        for achievement in self._achievements:
            if achievement.id in self._cyclic_ids:
                found.append(EngineWarning(
                    code=WarningCode.CONFIGURATION,
                    message=f"Achievement {achievement.id} is part of a cyclic chain",
                    achievement_id=achievement.id,
                ))
        return found
