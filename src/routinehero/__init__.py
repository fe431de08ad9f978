"""Routine Hero: routines, XP, levels and streaks for kids."""

from .api import ApiExporter
from .exceptions import (
    BadRequestError,
    ConcurrentUpdateError,
    InvalidReferenceError,
    NotFoundError,
    PinLockedError,
    PinRejectedError,
    RoutineHeroError,
    StoreFailureError,
)
from .models import (
    ActivityEntry,
    ChildView,
    CompletionOutcome,
    FamilyStats,
    ProgressSnapshot,
    RoutineAggregate,
    SessionContext,
    TaskSpec,
    TaskView,
)
from .ops import HealthMonitor, StructuredLogger
from .progression import (
    XP_PER_LEVEL,
    ProgressResult,
    ProgressState,
    apply_completion,
    level_for_xp,
    level_progress,
    next_streak,
)
from .security import PinAttemptLimiter

__all__ = [
    "ActivityEntry",
    "ApiExporter",
    "BadRequestError",
    "ChildView",
    "CompletionOutcome",
    "ConcurrentUpdateError",
    "FamilyStats",
    "HealthMonitor",
    "InvalidReferenceError",
    "NotFoundError",
    "PinAttemptLimiter",
    "PinLockedError",
    "PinRejectedError",
    "ProgressResult",
    "ProgressSnapshot",
    "ProgressState",
    "RoutineAggregate",
    "RoutineHeroError",
    "SessionContext",
    "StoreFailureError",
    "StructuredLogger",
    "TaskSpec",
    "TaskView",
    "XP_PER_LEVEL",
    "apply_completion",
    "level_for_xp",
    "level_progress",
    "next_streak",
]
