"""Database operations behind the Routine Hero API routes.

Every function takes an open :class:`sqlmodel.Session` and commits its own
work.  SQLAlchemy failures surface as :class:`StoreFailureError`; lookups that
miss raise :class:`NotFoundError`.
"""
from __future__ import annotations

import math
from datetime import date, datetime, timedelta, timezone
from functools import wraps
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, desc, select

from ..exceptions import (
    BadRequestError,
    ConcurrentUpdateError,
    InvalidReferenceError,
    NotFoundError,
    PinLockedError,
    PinRejectedError,
    StoreFailureError,
)
from ..models import (
    ActivityEntry,
    ChildView,
    CompletionOutcome,
    FamilyStats,
    ProgressSnapshot,
    RoutineAggregate,
    TaskSpec,
    TaskView,
)
from ..ops import StructuredLogger
from ..progression import ProgressState, apply_completion
from ..security import (
    PinAttemptLimiter,
    generate_family_code,
    hash_pin,
    is_valid_pin,
    normalize_family_code,
    pin_matches,
)
from .config import (
    APP_TIMEZONE,
    DEFAULT_CHILD_AGE,
    DEFAULT_CHILD_AVATAR,
    DEFAULT_ROUTINE_TYPE,
    DEFAULT_TASK_DURATION,
    DEFAULT_TASK_ICON,
    DEFAULT_TASK_POINTS,
    FAMILY_CODE_ATTEMPTS,
    PROGRESS_UPDATE_ATTEMPTS,
    RECENT_ACTIVITY_DAYS,
    RECENT_ACTIVITY_LIMIT,
)
from .persistence import Child, Completion, Family, Routine, RoutineAssignment, RoutineTask

T = TypeVar("T")

_null_logger = StructuredLogger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calendar_day(moment: datetime) -> date:
    """Return the calendar day of ``moment`` in the configured app timezone."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(APP_TIMEZONE).date()


def naive_utc(moment: datetime) -> datetime:
    """Timestamps are stored as naive UTC."""

    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def store_call(func_: Callable[..., T]) -> Callable[..., T]:
    """Roll back and re-raise SQLAlchemy failures as :class:`StoreFailureError`."""

    @wraps(func_)
    def wrapper(session: Session, *args, **kwargs) -> T:
        try:
            return func_(session, *args, **kwargs)
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreFailureError(str(exc)) from exc

    return wrapper


def _require(value, message: str):
    if value is None or value == "":
        raise BadRequestError(message)
    return value


def _child_view(child: Child) -> ChildView:
    return ChildView(
        id=child.id,
        family_id=child.family_id,
        name=child.name,
        age=child.age,
        avatar=child.avatar,
        xp=child.xp,
        level=child.level,
        streak=child.streak,
        last_active=child.last_active,
    )


# ---------------------------------------------------------------------------
# Families
# ---------------------------------------------------------------------------
@store_call
def create_family(
    session: Session,
    name: Optional[str],
    pin: Optional[str],
    *,
    salt: str,
    code_factory: Callable[[], str] = generate_family_code,
    logger: StructuredLogger = _null_logger,
) -> Family:
    if not name or not is_valid_pin(pin):
        raise BadRequestError("Name and 4-digit PIN required")
    pin_hash = hash_pin(pin, salt)
    for _ in range(FAMILY_CODE_ATTEMPTS):
        family = Family(name=name, code=code_factory(), pin_hash=pin_hash)
        session.add(family)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            continue
        session.refresh(family)
        logger.log("family_created", family_id=family.id, code=family.code)
        return family
    raise StoreFailureError("Could not allocate a unique family code")


@store_call
def get_family(session: Session, family_id: int) -> Family:
    family = session.get(Family, family_id)
    if family is None:
        raise NotFoundError("Family not found")
    return family


@store_call
def join_family(session: Session, code: Optional[str]) -> Tuple[Family, List[ChildView]]:
    code = _require(code, "Family code required")
    family = session.exec(select(Family).where(Family.code == normalize_family_code(code))).first()
    if family is None:
        raise NotFoundError("Family not found")
    return family, list_children(session, family.id)


@store_call
def verify_pin(
    session: Session,
    family_id: Optional[int],
    pin: Optional[str],
    *,
    salt: str,
    limiter: PinAttemptLimiter,
    logger: StructuredLogger = _null_logger,
) -> Family:
    if not family_id or not pin:
        raise BadRequestError("Family ID and PIN required")
    if limiter.is_locked(family_id):
        raise PinLockedError("Too many attempts, try again later")
    family = session.get(Family, family_id)
    if family is None or not pin_matches(pin, family.pin_hash, salt):
        limiter.record(family_id, success=False)
        logger.log("pin_rejected", family_id=family_id)
        raise PinRejectedError("Incorrect PIN")
    limiter.record(family_id, success=True)
    return family


# ---------------------------------------------------------------------------
# Children
# ---------------------------------------------------------------------------
@store_call
def list_children(session: Session, family_id: int, *, order_by_xp: bool = False) -> List[ChildView]:
    query = select(Child).where(Child.family_id == family_id)
    if order_by_xp:
        query = query.order_by(desc(Child.xp), Child.name)
    else:
        query = query.order_by(Child.name)
    return [_child_view(child) for child in session.exec(query).all()]


@store_call
def get_child(session: Session, child_id: int) -> ChildView:
    child = session.get(Child, child_id)
    if child is None:
        raise NotFoundError("Child not found")
    return _child_view(child)


@store_call
def add_child(
    session: Session,
    family_id: Optional[int],
    name: Optional[str],
    *,
    age: Optional[int] = None,
    avatar: Optional[str] = None,
    logger: StructuredLogger = _null_logger,
) -> ChildView:
    if not family_id or not name:
        raise BadRequestError("familyId and name required")
    if session.get(Family, family_id) is None:
        raise NotFoundError("Family not found")
    child = Child(
        family_id=family_id,
        name=name,
        age=age or DEFAULT_CHILD_AGE,
        avatar=avatar or DEFAULT_CHILD_AVATAR,
    )
    session.add(child)
    session.commit()
    session.refresh(child)
    logger.log("child_added", family_id=family_id, child_id=child.id)
    return _child_view(child)


@store_call
def update_child(
    session: Session,
    child_id: Optional[int],
    *,
    name: Optional[str] = None,
    age: Optional[int] = None,
    avatar: Optional[str] = None,
) -> ChildView:
    _require(child_id, "Child id required")
    child = session.get(Child, child_id)
    if child is None:
        raise NotFoundError("Child not found")
    if name is not None:
        child.name = name
    if age is not None:
        child.age = age
    if avatar is not None:
        child.avatar = avatar
    session.add(child)
    session.commit()
    session.refresh(child)
    return _child_view(child)


@store_call
def delete_child(session: Session, child_id: Optional[int]) -> None:
    _require(child_id, "Child id required")
    _purge_children(session, [child_id])
    session.commit()


def _purge_children(session: Session, child_ids: Sequence[int]) -> None:
    if not child_ids:
        return
    session.execute(delete(Completion).where(Completion.child_id.in_(child_ids)))
    session.execute(delete(RoutineAssignment).where(RoutineAssignment.child_id.in_(child_ids)))
    session.execute(delete(Child).where(Child.id.in_(child_ids)))


# ---------------------------------------------------------------------------
# Routines
# ---------------------------------------------------------------------------
def _task_rows(routine_id: int, tasks: Sequence[TaskSpec]) -> List[RoutineTask]:
    return [
        RoutineTask(
            routine_id=routine_id,
            name=task.name,
            icon=task.icon or DEFAULT_TASK_ICON,
            duration=task.duration if task.duration is not None else DEFAULT_TASK_DURATION,
            points=task.points if task.points is not None else DEFAULT_TASK_POINTS,
            sort_order=position,
        )
        for position, task in enumerate(tasks)
    ]


def _assignment_rows(routine_id: int, child_ids: Sequence[int]) -> List[RoutineAssignment]:
    # Duplicates in the request collapse to one assignment.
    return [RoutineAssignment(routine_id=routine_id, child_id=child_id) for child_id in dict.fromkeys(child_ids)]


@store_call
def create_routine(
    session: Session,
    family_id: Optional[int],
    name: Optional[str],
    *,
    type: Optional[str] = None,
    tasks: Sequence[TaskSpec] = (),
    assigned_children: Sequence[int] = (),
    logger: StructuredLogger = _null_logger,
) -> int:
    if not family_id or not name:
        raise BadRequestError("familyId and name required")
    routine = Routine(family_id=family_id, name=name, type=type or DEFAULT_ROUTINE_TYPE)
    session.add(routine)
    session.flush()
    session.add_all(_task_rows(routine.id, tasks))
    session.add_all(_assignment_rows(routine.id, assigned_children))
    session.commit()
    logger.log("routine_saved", routine_id=routine.id, tasks=len(tasks), created=True)
    return routine.id


@store_call
def update_routine(
    session: Session,
    routine_id: Optional[int],
    *,
    name: Optional[str] = None,
    type: Optional[str] = None,
    tasks: Optional[Sequence[TaskSpec]] = None,
    assigned_children: Optional[Sequence[int]] = None,
    logger: StructuredLogger = _null_logger,
) -> RoutineAggregate:
    """Update metadata and fully replace tasks and/or assignments.

    ``None`` leaves a field untouched.  All changes commit together or not at
    all.
    """

    _require(routine_id, "Routine id required")
    routine = session.get(Routine, routine_id)
    if routine is None:
        raise NotFoundError("Routine not found")
    if name is not None:
        routine.name = name
    if type is not None:
        routine.type = type
    session.add(routine)
    if tasks is not None:
        session.execute(delete(RoutineTask).where(RoutineTask.routine_id == routine_id))
        session.add_all(_task_rows(routine_id, tasks))
    if assigned_children is not None:
        session.execute(delete(RoutineAssignment).where(RoutineAssignment.routine_id == routine_id))
        session.add_all(_assignment_rows(routine_id, assigned_children))
    session.commit()
    logger.log(
        "routine_saved",
        routine_id=routine_id,
        tasks=None if tasks is None else len(tasks),
        created=False,
    )
    return _aggregate(session, routine)


@store_call
def delete_routine(
    session: Session,
    routine_id: Optional[int],
    *,
    logger: StructuredLogger = _null_logger,
) -> None:
    _require(routine_id, "Routine id required")
    _purge_routines(session, [routine_id])
    session.commit()
    logger.log("routine_deleted", routine_id=routine_id)


def _purge_routines(session: Session, routine_ids: Sequence[int]) -> None:
    if not routine_ids:
        return
    session.execute(delete(Completion).where(Completion.routine_id.in_(routine_ids)))
    session.execute(delete(RoutineTask).where(RoutineTask.routine_id.in_(routine_ids)))
    session.execute(delete(RoutineAssignment).where(RoutineAssignment.routine_id.in_(routine_ids)))
    session.execute(delete(Routine).where(Routine.id.in_(routine_ids)))


def _aggregate(session: Session, routine: Routine) -> RoutineAggregate:
    tasks = session.exec(
        select(RoutineTask).where(RoutineTask.routine_id == routine.id).order_by(RoutineTask.sort_order)
    ).all()
    assigned = session.exec(
        select(RoutineAssignment.child_id)
        .where(RoutineAssignment.routine_id == routine.id)
        .order_by(RoutineAssignment.id)
    ).all()
    return RoutineAggregate(
        id=routine.id,
        family_id=routine.family_id,
        name=routine.name,
        type=routine.type,
        tasks=[
            TaskView(
                id=task.id,
                name=task.name,
                icon=task.icon,
                duration=task.duration,
                points=task.points,
                sort_order=task.sort_order,
            )
            for task in tasks
        ],
        assigned_children=list(assigned),
    )


@store_call
def get_routine(session: Session, routine_id: int) -> RoutineAggregate:
    routine = session.get(Routine, routine_id)
    if routine is None:
        raise NotFoundError("Routine not found")
    return _aggregate(session, routine)


@store_call
def list_routines(
    session: Session,
    family_id: int,
    *,
    child_id: Optional[int] = None,
) -> List[RoutineAggregate]:
    query = select(Routine).where(Routine.family_id == family_id)
    if child_id is not None:
        query = query.join(RoutineAssignment, RoutineAssignment.routine_id == Routine.id).where(
            RoutineAssignment.child_id == child_id
        )
    routines = session.exec(query.order_by(Routine.name)).all()
    return [_aggregate(session, routine) for routine in routines]


# ---------------------------------------------------------------------------
# Completions
# ---------------------------------------------------------------------------
def _read_child(session: Session, child_id: int) -> Optional[Child]:
    return session.get(Child, child_id, populate_existing=True)


@store_call
def record_completion(
    session: Session,
    child_id: Optional[int],
    routine_id: Optional[int],
    *,
    moment: Optional[datetime] = None,
    logger: StructuredLogger = _null_logger,
) -> CompletionOutcome:
    """Award a finished routine to a child.

    The child row is written with a version check.  When another writer got
    there first the child is read again and the award recomputed.
    """

    if not child_id or not routine_id:
        raise BadRequestError("childId and routineId required")
    moment = moment or utcnow()
    today = calendar_day(moment)
    yesterday = today - timedelta(days=1)

    if session.get(Child, child_id) is None:
        raise NotFoundError("Child not found")
    if session.get(Routine, routine_id) is None:
        raise InvalidReferenceError("Routine not found")
    points = session.exec(select(RoutineTask.points).where(RoutineTask.routine_id == routine_id)).all()

    for _ in range(PROGRESS_UPDATE_ATTEMPTS):
        child = _read_child(session, child_id)
        if child is None:
            raise NotFoundError("Child not found")
        active_yesterday = (
            session.exec(
                select(Completion.id)
                .where(Completion.child_id == child_id)
                .where(Completion.completed_on == yesterday)
                .limit(1)
            ).first()
            is not None
        )
        state = ProgressState(xp=child.xp, level=child.level, streak=child.streak, last_active=child.last_active)
        result = apply_completion(state, points, today, active_yesterday=active_yesterday)
        swapped = session.execute(
            update(Child)
            .where(Child.id == child_id)
            .where(Child.version == child.version)
            .values(
                xp=result.xp,
                level=result.level,
                streak=result.streak,
                last_active=result.active_on,
                version=child.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if swapped.rowcount != 1:
            session.rollback()
            logger.log("completion_retry", child_id=child_id, routine_id=routine_id)
            continue
        completion = Completion(
            child_id=child_id,
            routine_id=routine_id,
            xp_earned=result.xp_earned,
            completed_at=naive_utc(moment),
            completed_on=today,
        )
        session.add(completion)
        session.commit()
        session.refresh(completion)
        updated = _read_child(session, child_id)
        logger.completion(
            child_id=child_id,
            routine_id=routine_id,
            xp_earned=result.xp_earned,
            streak=result.streak,
            level=result.level,
            leveled_up=result.leveled_up,
        )
        return CompletionOutcome(
            completion_id=completion.id,
            xp_earned=result.xp_earned,
            child=_child_view(updated),
            leveled_up=result.leveled_up,
        )
    raise ConcurrentUpdateError("Child progress changed too often, try again")


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------
def summarize(children: Sequence[ChildView]) -> FamilyStats:
    if not children:
        return FamilyStats()
    return FamilyStats(
        total_xp=sum(child.xp for child in children),
        average_level=math.floor(sum(child.level for child in children) / len(children) + 0.5),
        longest_streak=max(child.streak for child in children),
    )


@store_call
def progress_snapshot(
    session: Session,
    family_id: Optional[int],
    *,
    moment: Optional[datetime] = None,
    window_days: int = RECENT_ACTIVITY_DAYS,
    limit: int = RECENT_ACTIVITY_LIMIT,
) -> ProgressSnapshot:
    _require(family_id, "familyId required")
    moment = moment or utcnow()
    today = calendar_day(moment)
    children = list_children(session, family_id, order_by_xp=True)
    stats = summarize(children)
    stats.routine_count = session.exec(
        select(func.count()).select_from(Routine).where(Routine.family_id == family_id)
    ).one()

    cutoff = naive_utc(moment - timedelta(days=window_days))
    rows = session.exec(
        select(Completion, Child, Routine)
        .join(Child, Child.id == Completion.child_id)
        .join(Routine, Routine.id == Completion.routine_id)
        .where(Child.family_id == family_id)
        .where(Completion.completed_at > cutoff)
        .order_by(desc(Completion.completed_at), desc(Completion.id))
        .limit(limit)
    ).all()
    recent = tuple(
        ActivityEntry(
            id=completion.id,
            xp_earned=completion.xp_earned,
            completed_at=completion.completed_at,
            child_name=child.name,
            avatar=child.avatar,
            routine_name=routine.name,
        )
        for completion, child, routine in rows
    )
    stats.today_completions = session.exec(
        select(func.count())
        .select_from(Completion)
        .join(Child, Child.id == Completion.child_id)
        .where(Child.family_id == family_id)
        .where(Completion.completed_on == today)
    ).one()
    return ProgressSnapshot(children=tuple(children), stats=stats, recent_activity=recent)


__all__ = [
    "add_child",
    "calendar_day",
    "create_family",
    "create_routine",
    "delete_child",
    "delete_routine",
    "get_child",
    "get_family",
    "get_routine",
    "join_family",
    "list_children",
    "list_routines",
    "naive_utc",
    "progress_snapshot",
    "record_completion",
    "store_call",
    "summarize",
    "update_child",
    "update_routine",
    "utcnow",
    "verify_pin",
]
