"""Operational utilities for Routine Hero."""

from __future__ import annotations

import json
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional


class HealthMonitor:
    """Aggregate runtime health information for the status endpoint."""

    def __init__(self, probe: Optional[Callable[[], None]] = None) -> None:
        self._probe = probe
        self.database_online = True
        self.last_error: Optional[str] = None
        self.checked_at: Optional[datetime] = None

    def check(self) -> dict:
        if self._probe is not None:
            try:
                self._probe()
            except Exception as exc:  # noqa: BLE001 - any probe failure marks the store down
                self.database_online = False
                self.last_error = str(exc)
            else:
                self.database_online = True
                self.last_error = None
        self.checked_at = datetime.now(timezone.utc)
        return self.status()

    def status(self) -> dict:
        return {
            "database": "ok" if self.database_online else "down",
            "error": self.last_error,
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
        }


class StructuredLogger:
    """Event log for family activity and store trouble.

    Recent entries stay in a bounded in-memory buffer; when ``path`` is set
    every entry is also appended there as one JSON object per line.
    """

    def __init__(self, *, path: Path | None = None, capacity: int = 500) -> None:
        self.path = path
        self._entries: deque[dict] = deque(maxlen=capacity)

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": datetime.now(timezone.utc).isoformat(), "event": event_type, **fields}
        self._entries.append(entry)
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def completion(
        self,
        *,
        child_id: int,
        routine_id: int,
        xp_earned: int,
        streak: int,
        level: int,
        leveled_up: bool,
    ) -> None:
        """Record a finished routine, plus a ``level_up`` entry when one happened."""

        self.log(
            "completion_recorded",
            child_id=child_id,
            routine_id=routine_id,
            xp_earned=xp_earned,
            streak=streak,
        )
        if leveled_up:
            self.log("level_up", child_id=child_id, level=level)

    def store_failure(self, exc: Exception) -> dict:
        return self.log("store_failure", error=str(exc), kind=type(exc).__name__)

    def events(self, event_type: str) -> tuple[dict, ...]:
        return tuple(entry for entry in self._entries if entry["event"] == event_type)

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        entries = list(self._entries)
        return tuple(entries[-limit:]) if limit > 0 else ()

    def clear(self) -> None:
        self._entries.clear()


__all__ = ["HealthMonitor", "StructuredLogger"]
