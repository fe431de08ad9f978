"""Domain models used by the Routine Hero package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional, Tuple

from .exceptions import BadRequestError


@dataclass(slots=True, frozen=True)
class TaskSpec:
    """A task as supplied by a parent when composing a routine."""

    name: str
    icon: Optional[str] = None
    duration: Optional[int] = None
    points: Optional[int] = None


@dataclass(slots=True)
class TaskView:
    id: int
    name: str
    icon: str
    duration: int
    points: int
    sort_order: int


@dataclass(slots=True)
class RoutineAggregate:
    """A routine together with its ordered tasks and assigned children."""

    id: int
    family_id: int
    name: str
    type: str
    tasks: List[TaskView] = field(default_factory=list)
    assigned_children: List[int] = field(default_factory=list)

    @property
    def total_points(self) -> int:
        return sum(task.points for task in self.tasks)


@dataclass(slots=True)
class ChildView:
    id: int
    family_id: int
    name: str
    age: int
    avatar: str
    xp: int
    level: int
    streak: int
    last_active: Optional[date]


@dataclass(slots=True)
class CompletionOutcome:
    """Result of recording a routine completion."""

    completion_id: int
    xp_earned: int
    child: ChildView
    leveled_up: bool


@dataclass(slots=True)
class ActivityEntry:
    id: int
    xp_earned: int
    completed_at: datetime
    child_name: str
    avatar: str
    routine_name: str


@dataclass(slots=True)
class FamilyStats:
    total_xp: int = 0
    average_level: int = 0
    longest_streak: int = 0
    routine_count: int = 0
    today_completions: int = 0


@dataclass(slots=True)
class ProgressSnapshot:
    """Per family progress overview used by the parent dashboard."""

    children: Tuple[ChildView, ...]
    stats: FamilyStats
    recent_activity: Tuple[ActivityEntry, ...]


@dataclass(slots=True)
class SessionContext:
    """Who is using the app on this device.

    Built from the signed session cookie for every request and handed to the
    route handlers, so nothing reads ambient per-device state directly.
    """

    family_id: Optional[int] = None
    child_id: Optional[int] = None
    is_parent: bool = False

    def resolve_family(self, family_id: Optional[int]) -> int:
        resolved = family_id if family_id is not None else self.family_id
        if resolved is None:
            raise BadRequestError("familyId required")
        return resolved


__all__ = [
    "ActivityEntry",
    "ChildView",
    "CompletionOutcome",
    "FamilyStats",
    "ProgressSnapshot",
    "RoutineAggregate",
    "SessionContext",
    "TaskSpec",
    "TaskView",
]
