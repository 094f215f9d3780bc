"""
Level Curve

Quadratic leveling: reaching level L takes 100 * L^2 total XP.

- Level 1: 0 XP (every user starts here)
- Level 2: 400 XP
- Level 3: 900 XP
- Level 4: 1600 XP

Level 1 is the floor: it covers everything below xp_for_level(2), including
the 0-99 XP range under xp_for_level(1).
"""

from math import isqrt

from learnquest.exceptions import ValidationError
from learnquest.models.gamification import LevelProgress

XP_PER_LEVEL_UNIT = 100


def xp_for_level(level: int) -> int:
    """Total XP at which `level` is reached"""
    if level < 1:
        raise ValidationError("Level must be at least 1", field="level", value=level)
    return XP_PER_LEVEL_UNIT * level * level


def level_for(xp: int) -> int:
    """
    Level for a total XP amount

    floor(sqrt(xp / 100)), never below level 1. Integer square root keeps
    exact thresholds exact (level_for(xp_for_level(n)) == n).
    """
    if xp < 0:
        raise ValidationError("XP cannot be negative", field="xp", value=xp)
    return max(1, isqrt(xp // XP_PER_LEVEL_UNIT))


def level_progress(xp: int) -> LevelProgress:
    """
    Progress from the current level toward the next

    Returns:
        LevelProgress with the current/next thresholds, XP still needed and
        a 0-100 percentage through the current level
    """
    level = level_for(xp)
    current_level_xp = 0 if level == 1 else xp_for_level(level)
    next_level_xp = xp_for_level(level + 1)
    span = next_level_xp - current_level_xp

    return LevelProgress(
        xp=xp,
        level=level,
        current_level_xp=current_level_xp,
        next_level_xp=next_level_xp,
        xp_to_next_level=next_level_xp - xp,
        progress=min(100, (xp - current_level_xp) * 100 // span),
    )
