"""Persistence and SQLModel definitions for the Routine Hero web API."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import UniqueConstraint, text
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, create_engine

from .config import (
    DATABASE_URL,
    DEFAULT_CHILD_AGE,
    DEFAULT_CHILD_AVATAR,
    DEFAULT_ROUTINE_TYPE,
    DEFAULT_TASK_DURATION,
    DEFAULT_TASK_ICON,
    DEFAULT_TASK_POINTS,
)


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class Family(SQLModel, table=True):
    __tablename__ = "rh_families"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    code: str = Field(index=True, unique=True)
    pin_hash: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Child(SQLModel, table=True):
    __tablename__ = "rh_children"

    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(index=True)
    name: str
    age: int = DEFAULT_CHILD_AGE
    avatar: str = DEFAULT_CHILD_AVATAR
    xp: int = 0
    level: int = 1
    streak: int = 0
    last_active: Optional[date] = None
    version: int = 0  # bumped by every progression update
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Routine(SQLModel, table=True):
    __tablename__ = "rh_routines"

    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(index=True)
    name: str
    type: str = DEFAULT_ROUTINE_TYPE
    created_at: datetime = Field(default_factory=datetime.utcnow)


class RoutineTask(SQLModel, table=True):
    __tablename__ = "rh_routine_tasks"

    id: Optional[int] = Field(default=None, primary_key=True)
    routine_id: int = Field(index=True)
    name: str
    icon: str = DEFAULT_TASK_ICON
    duration: int = DEFAULT_TASK_DURATION  # minutes, timer display only
    points: int = DEFAULT_TASK_POINTS
    sort_order: int = 0


class RoutineAssignment(SQLModel, table=True):
    __tablename__ = "rh_routine_assignments"
    __table_args__ = (UniqueConstraint("routine_id", "child_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    routine_id: int = Field(index=True)
    child_id: int = Field(index=True)


class Completion(SQLModel, table=True):
    __tablename__ = "rh_completions"

    id: Optional[int] = Field(default=None, primary_key=True)
    child_id: int = Field(index=True)
    routine_id: int = Field(index=True)
    xp_earned: int = 0
    completed_at: datetime = Field(default_factory=datetime.utcnow)
    completed_on: date = Field(index=True)  # calendar day in the app timezone


# ---------------------------------------------------------------------------
# Engine handling
# ---------------------------------------------------------------------------
def _build_engine(url: str) -> Engine:
    connect_args: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=False, connect_args=connect_args)


engine: Engine = _build_engine(DATABASE_URL)


def configure_engine(url: str) -> Engine:
    """Point the module level engine at ``url`` and create the schema there."""

    global engine
    engine.dispose()
    engine = _build_engine(url)
    create_db_and_tables()
    return engine


def open_session() -> Session:
    return Session(engine, expire_on_commit=False)


def create_db_and_tables() -> None:
    SQLModel.metadata.create_all(engine)


def ping_database() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


__all__ = [
    "engine",
    "Family",
    "Child",
    "Routine",
    "RoutineTask",
    "RoutineAssignment",
    "Completion",
    "configure_engine",
    "open_session",
    "create_db_and_tables",
    "ping_database",
]
