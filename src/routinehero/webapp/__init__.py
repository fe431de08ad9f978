"""Routine Hero web API package.

Import-compatible with ``uvicorn routinehero.webapp:app`` deployments.
"""
from __future__ import annotations

from . import persistence, store
from .application import app, exporter, health, logger, now_utc, pin_limiter, session_context
from .persistence import (
    Child,
    Completion,
    Family,
    Routine,
    RoutineAssignment,
    RoutineTask,
    configure_engine,
    create_db_and_tables,
    open_session,
)

__all__ = [
    "app",
    "exporter",
    "health",
    "logger",
    "now_utc",
    "pin_limiter",
    "session_context",
    "persistence",
    "store",
    "Child",
    "Completion",
    "Family",
    "Routine",
    "RoutineAssignment",
    "RoutineTask",
    "configure_engine",
    "create_db_and_tables",
    "open_session",
]
