"""XP, level and streak rules applied when a child finishes a routine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Optional, Tuple

XP_PER_LEVEL = 100


@dataclass(slots=True, frozen=True)
class ProgressState:
    """Progression fields stored on a child record."""

    xp: int = 0
    level: int = 1
    streak: int = 0
    last_active: Optional[date] = None


@dataclass(slots=True, frozen=True)
class ProgressResult:
    """Outcome of a single routine completion."""

    xp_earned: int
    xp: int
    level: int
    streak: int
    leveled_up: bool
    active_on: date

    def as_state(self) -> ProgressState:
        return ProgressState(xp=self.xp, level=self.level, streak=self.streak, last_active=self.active_on)


def level_for_xp(xp: int) -> int:
    """Return the level reached with ``xp`` experience points."""

    return xp // XP_PER_LEVEL + 1


def level_progress(xp: int) -> Tuple[int, int]:
    """Return ``(xp into current level, xp still needed for the next one)``."""

    into_level = xp % XP_PER_LEVEL
    return into_level, XP_PER_LEVEL - into_level


def routine_points(points: Iterable[int]) -> int:
    return sum(points, 0)


def next_streak(state: ProgressState, today: date, *, active_yesterday: bool = False) -> int:
    """Return the streak after a completion on ``today``.

    Re-completing on the same day leaves the streak alone.  A completion the
    day after the last active day, or when ``active_yesterday`` reports any
    completion event yesterday, extends it.  Anything else starts over at 1.
    """

    if state.last_active == today:
        return state.streak
    if state.last_active == today - timedelta(days=1) or active_yesterday:
        return state.streak + 1
    return 1


def apply_completion(
    state: ProgressState,
    points: Iterable[int],
    today: date,
    *,
    active_yesterday: bool = False,
) -> ProgressResult:
    """Compute the progression update for finishing a routine worth ``points``."""

    earned = routine_points(points)
    new_xp = state.xp + earned
    new_level = level_for_xp(new_xp)
    return ProgressResult(
        xp_earned=earned,
        xp=new_xp,
        level=new_level,
        streak=next_streak(state, today, active_yesterday=active_yesterday),
        leveled_up=new_level > state.level,
        active_on=today,
    )


__all__ = [
    "XP_PER_LEVEL",
    "ProgressResult",
    "ProgressState",
    "apply_completion",
    "level_for_xp",
    "level_progress",
    "next_streak",
    "routine_points",
]
