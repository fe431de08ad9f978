"""Convert Routine Hero data structures to JSON friendly dictionaries."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from .models import (
    ActivityEntry,
    ChildView,
    CompletionOutcome,
    ProgressSnapshot,
    RoutineAggregate,
    SessionContext,
)
from .progression import level_progress


class ApiExporter:
    """Shape domain objects into the camelCase payloads the client expects."""

    def child(self, child: ChildView) -> Dict[str, Any]:
        into_level, to_next = level_progress(child.xp)
        return {
            "id": child.id,
            "familyId": child.family_id,
            "name": child.name,
            "age": child.age,
            "avatar": child.avatar,
            "xp": child.xp,
            "level": child.level,
            "streak": child.streak,
            "lastActiveDate": child.last_active.isoformat() if child.last_active else None,
            "xpIntoLevel": into_level,
            "xpToNextLevel": to_next,
        }

    def children(self, children: Iterable[ChildView]) -> List[Dict[str, Any]]:
        return [self.child(child) for child in children]

    def family(self, family: Any) -> Dict[str, Any]:
        return {
            "id": family.id,
            "name": family.name,
            "code": family.code,
            "createdAt": family.created_at.isoformat() if family.created_at else None,
        }

    def routine(self, routine: RoutineAggregate) -> Dict[str, Any]:
        return {
            "id": routine.id,
            "familyId": routine.family_id,
            "name": routine.name,
            "type": routine.type,
            "totalPoints": routine.total_points,
            "tasks": [
                {
                    "id": task.id,
                    "name": task.name,
                    "icon": task.icon,
                    "duration": task.duration,
                    "points": task.points,
                    "sortOrder": task.sort_order,
                }
                for task in routine.tasks
            ],
            "assignedChildren": list(routine.assigned_children),
        }

    def completion(self, outcome: CompletionOutcome) -> Dict[str, Any]:
        return {
            "ok": True,
            "completionId": outcome.completion_id,
            "xpEarned": outcome.xp_earned,
            "child": self.child(outcome.child),
            "levelUp": outcome.leveled_up,
        }

    def progress(self, snapshot: ProgressSnapshot) -> Dict[str, Any]:
        stats = snapshot.stats
        return {
            "children": self.children(snapshot.children),
            "stats": {
                "totalXp": stats.total_xp,
                "averageLevel": stats.average_level,
                "longestStreak": stats.longest_streak,
                "routineCount": stats.routine_count,
                "todayCompletions": stats.today_completions,
            },
            "recentActivity": [self._activity(entry) for entry in snapshot.recent_activity],
        }

    def session(self, context: SessionContext, *, family: Optional[Any] = None) -> Dict[str, Any]:
        return {
            "familyId": context.family_id,
            "childId": context.child_id,
            "isParent": context.is_parent,
            "family": self.family(family) if family is not None else None,
        }

    def _activity(self, entry: ActivityEntry) -> Dict[str, Any]:
        return {
            "id": entry.id,
            "xpEarned": entry.xp_earned,
            "completedAt": entry.completed_at.isoformat(),
            "childName": entry.child_name,
            "avatar": entry.avatar,
            "routineName": entry.routine_name,
        }


__all__ = ["ApiExporter"]
