"""FastAPI backend for Routine Hero.

Parents compose routines for their children, children run through them with a
timer on the client, and each finished routine is recorded here to award XP,
levels and daily streaks.  All routes speak JSON; the signed session cookie
only remembers which family, child and parent mode this device is using.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.middleware.sessions import SessionMiddleware

from ..api import ApiExporter
from ..exceptions import (
    BadRequestError,
    NotFoundError,
    PinLockedError,
    PinRejectedError,
    RoutineHeroError,
    StoreFailureError,
)
from ..models import SessionContext, TaskSpec
from ..ops import HealthMonitor, StructuredLogger
from ..security import PinAttemptLimiter
from . import store
from .config import (
    LOG_PATH,
    PIN_SALT,
    SESSION_CHILD_KEY,
    SESSION_FAMILY_KEY,
    SESSION_PARENT_KEY,
    SESSION_SECRET,
)
from .persistence import create_db_and_tables, open_session, ping_database


@asynccontextmanager
async def lifespan(_: FastAPI):
    create_db_and_tables()
    yield


# ---------------------------------------------------------------------------
# FastAPI application setup
# ---------------------------------------------------------------------------
app = FastAPI(title="Routine Hero", lifespan=lifespan)
app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET,
    same_site="lax",
    max_age=None,
)

logger = StructuredLogger(path=LOG_PATH)
health = HealthMonitor(probe=ping_database)
pin_limiter = PinAttemptLimiter()
exporter = ApiExporter()

_time_provider: Callable[[], datetime] = store.utcnow


def now_utc() -> datetime:
    """Return the current moment using the configured provider."""

    return _time_provider()


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------
def _status_for(exc: RoutineHeroError) -> int:
    if isinstance(exc, BadRequestError):
        return 400
    if isinstance(exc, PinLockedError):
        return 429
    if isinstance(exc, PinRejectedError):
        return 401
    if isinstance(exc, NotFoundError):
        return 404
    return 500


@app.exception_handler(RoutineHeroError)
async def routine_hero_error_handler(_: Request, exc: RoutineHeroError) -> JSONResponse:
    if isinstance(exc, StoreFailureError):
        logger.store_failure(exc)
    return JSONResponse({"ok": False, "error": str(exc)}, status_code=_status_for(exc))


def _describe_invalid(errors: List[Dict[str, Any]]) -> str:
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = first.get("msg", "Invalid value")
    return f"{location}: {message}" if location else message


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and query values are bad requests, not 422s."""

    return JSONResponse({"ok": False, "error": _describe_invalid(list(exc.errors()))}, status_code=400)


# ---------------------------------------------------------------------------
# Session context
# ---------------------------------------------------------------------------
def session_context(request: Request) -> SessionContext:
    data = request.session
    return SessionContext(
        family_id=data.get(SESSION_FAMILY_KEY),
        child_id=data.get(SESSION_CHILD_KEY),
        is_parent=bool(data.get(SESSION_PARENT_KEY, False)),
    )


def remember(request: Request, context: SessionContext) -> None:
    request.session[SESSION_FAMILY_KEY] = context.family_id
    request.session[SESSION_CHILD_KEY] = context.child_id
    request.session[SESSION_PARENT_KEY] = context.is_parent


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FamilyCreate(ApiModel):
    name: Optional[str] = None
    pin: Optional[str] = None


class FamilyJoin(ApiModel):
    code: Optional[str] = None


class PinCheck(ApiModel):
    family_id: Optional[int] = None
    pin: Optional[str] = None


class ChildSelect(ApiModel):
    child_id: Optional[int] = None


class ChildCreate(ApiModel):
    family_id: Optional[int] = None
    name: Optional[str] = None
    age: Optional[int] = None
    avatar: Optional[str] = None


class ChildUpdate(ApiModel):
    id: Optional[int] = None
    name: Optional[str] = None
    age: Optional[int] = None
    avatar: Optional[str] = None


class TaskIn(ApiModel):
    name: str = Field(min_length=1)
    icon: Optional[str] = None
    duration: Optional[int] = None
    points: Optional[int] = None


class RoutineCreate(ApiModel):
    family_id: Optional[int] = None
    name: Optional[str] = None
    type: Optional[str] = None
    tasks: Optional[List[TaskIn]] = None
    assigned_children: Optional[List[int]] = None


class RoutineUpdate(ApiModel):
    id: Optional[int] = None
    name: Optional[str] = None
    type: Optional[str] = None
    tasks: Optional[List[TaskIn]] = None
    assigned_children: Optional[List[int]] = None


class CompletionCreate(ApiModel):
    child_id: Optional[int] = None
    routine_id: Optional[int] = None


class IdBody(ApiModel):
    id: Optional[int] = None


def _task_specs(tasks: Optional[List[TaskIn]]) -> Optional[List[TaskSpec]]:
    if tasks is None:
        return None
    return [
        TaskSpec(name=task.name, icon=task.icon or None, duration=task.duration, points=task.points)
        for task in tasks
    ]


# ---------------------------------------------------------------------------
# Setup & health
# ---------------------------------------------------------------------------
@app.post("/api/setup")
def setup_tables() -> Dict[str, Any]:
    create_db_and_tables()
    return {"ok": True, "message": "Tables created"}


@app.get("/healthz")
def healthz() -> JSONResponse:
    status = health.check()
    return JSONResponse(status, status_code=200 if health.database_online else 503)


# ---------------------------------------------------------------------------
# Family & session
# ---------------------------------------------------------------------------
@app.post("/api/family")
def family_create(request: Request, body: FamilyCreate) -> Dict[str, Any]:
    with open_session() as session:
        family = store.create_family(session, body.name, body.pin, salt=PIN_SALT, logger=logger)
    remember(request, SessionContext(family_id=family.id, is_parent=True))
    return {"ok": True, "family": exporter.family(family)}


@app.post("/api/family/join")
def family_join(request: Request, body: FamilyJoin) -> Dict[str, Any]:
    with open_session() as session:
        family, children = store.join_family(session, body.code)
    remember(request, SessionContext(family_id=family.id))
    return {"ok": True, "family": exporter.family(family), "children": exporter.children(children)}


@app.post("/api/family/verify-pin")
def family_verify_pin(
    request: Request,
    body: PinCheck,
    context: SessionContext = Depends(session_context),
) -> Dict[str, Any]:
    family_id = body.family_id if body.family_id is not None else context.family_id
    with open_session() as session:
        family = store.verify_pin(session, family_id, body.pin, salt=PIN_SALT, limiter=pin_limiter, logger=logger)
    remember(request, SessionContext(family_id=family.id, child_id=context.child_id, is_parent=True))
    return {"ok": True}


@app.get("/api/session")
def session_show(context: SessionContext = Depends(session_context)) -> Dict[str, Any]:
    family = None
    if context.family_id is not None:
        with open_session() as session:
            try:
                family = store.get_family(session, context.family_id)
            except NotFoundError:
                family = None
    return exporter.session(context, family=family)


@app.post("/api/session/child")
def session_select_child(
    request: Request,
    body: ChildSelect,
    context: SessionContext = Depends(session_context),
) -> Dict[str, Any]:
    if body.child_id is None:
        raise BadRequestError("childId required")
    with open_session() as session:
        child = store.get_child(session, body.child_id)
    if context.family_id is not None and child.family_id != context.family_id:
        raise NotFoundError("Child not found")
    context = SessionContext(family_id=child.family_id, child_id=child.id, is_parent=context.is_parent)
    remember(request, context)
    return {"ok": True, "child": exporter.child(child)}


@app.post("/api/session/clear")
def session_clear(request: Request) -> Dict[str, Any]:
    request.session.clear()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Children
# ---------------------------------------------------------------------------
@app.get("/api/children")
def children_list(
    family_id: Optional[int] = Query(None, alias="familyId"),
    context: SessionContext = Depends(session_context),
) -> Dict[str, Any]:
    resolved = context.resolve_family(family_id)
    with open_session() as session:
        children = store.list_children(session, resolved)
    return {"children": exporter.children(children)}


@app.post("/api/children")
def children_create(body: ChildCreate, context: SessionContext = Depends(session_context)) -> Dict[str, Any]:
    family_id = body.family_id if body.family_id is not None else context.family_id
    with open_session() as session:
        child = store.add_child(session, family_id, body.name, age=body.age, avatar=body.avatar, logger=logger)
    return {"ok": True, "child": exporter.child(child)}


@app.put("/api/children")
def children_update(body: ChildUpdate) -> Dict[str, Any]:
    with open_session() as session:
        child = store.update_child(session, body.id, name=body.name, age=body.age, avatar=body.avatar)
    return {"ok": True, "child": exporter.child(child)}


@app.delete("/api/children")
def children_delete(body: IdBody) -> Dict[str, Any]:
    with open_session() as session:
        store.delete_child(session, body.id)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routines
# ---------------------------------------------------------------------------
@app.get("/api/routines")
def routines_list(
    family_id: Optional[int] = Query(None, alias="familyId"),
    child_id: Optional[int] = Query(None, alias="childId"),
    context: SessionContext = Depends(session_context),
) -> Dict[str, Any]:
    resolved = context.resolve_family(family_id)
    with open_session() as session:
        routines = store.list_routines(session, resolved, child_id=child_id)
    return {"routines": [exporter.routine(routine) for routine in routines]}


@app.post("/api/routines")
def routines_create(body: RoutineCreate, context: SessionContext = Depends(session_context)) -> Dict[str, Any]:
    family_id = body.family_id if body.family_id is not None else context.family_id
    tasks = _task_specs(body.tasks) or []
    with open_session() as session:
        routine_id = store.create_routine(
            session,
            family_id,
            body.name,
            type=body.type,
            tasks=tasks,
            assigned_children=body.assigned_children or [],
            logger=logger,
        )
    return {"ok": True, "routineId": routine_id}


@app.put("/api/routines")
def routines_update(body: RoutineUpdate) -> Dict[str, Any]:
    with open_session() as session:
        routine = store.update_routine(
            session,
            body.id,
            name=body.name,
            type=body.type,
            tasks=_task_specs(body.tasks),
            assigned_children=body.assigned_children,
            logger=logger,
        )
    return {"ok": True, "routine": exporter.routine(routine)}


@app.delete("/api/routines")
def routines_delete(body: IdBody) -> Dict[str, Any]:
    with open_session() as session:
        store.delete_routine(session, body.id, logger=logger)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Completions & progress
# ---------------------------------------------------------------------------
@app.post("/api/completions")
def completions_record(body: CompletionCreate) -> Dict[str, Any]:
    with open_session() as session:
        outcome = store.record_completion(
            session,
            body.child_id,
            body.routine_id,
            moment=now_utc(),
            logger=logger,
        )
    return exporter.completion(outcome)


@app.get("/api/progress")
def progress_show(
    family_id: Optional[int] = Query(None, alias="familyId"),
    context: SessionContext = Depends(session_context),
) -> Dict[str, Any]:
    resolved = context.resolve_family(family_id)
    with open_session() as session:
        snapshot = store.progress_snapshot(session, resolved, moment=now_utc())
    return exporter.progress(snapshot)


__all__ = [
    "app",
    "exporter",
    "health",
    "logger",
    "now_utc",
    "pin_limiter",
    "session_context",
]
