from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from conftest import TODAY, YESTERDAY, load_child, seed_family
from routinehero.exceptions import (
    BadRequestError,
    ConcurrentUpdateError,
    InvalidReferenceError,
    NotFoundError,
    PinLockedError,
    PinRejectedError,
    StoreFailureError,
)
from routinehero.models import TaskSpec
from routinehero.ops import StructuredLogger
from routinehero.security import PinAttemptLimiter
from routinehero.webapp import persistence, store

MOMENT = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)


def completions_for(child_id: int):
    with Session(persistence.engine) as session:
        return session.exec(
            select(persistence.Completion).where(persistence.Completion.child_id == child_id)
        ).all()


def test_record_completion_levels_up_and_extends_streak(db) -> None:
    _, (child_id,), (worth_ten, empty) = seed_family(
        children=[{"name": "Ava", "xp": 95, "level": 1, "streak": 3, "last_active": YESTERDAY}],
        routines=[("Morning", (10,)), ("Bedtime", ())],
    )
    logger = StructuredLogger()

    with persistence.open_session() as session:
        first = store.record_completion(session, child_id, worth_ten, moment=MOMENT, logger=logger)
    assert first.xp_earned == 10
    assert (first.child.xp, first.child.level, first.child.streak) == (105, 2, 4)
    assert first.child.last_active == TODAY
    assert first.leveled_up is True

    with persistence.open_session() as session:
        second = store.record_completion(session, child_id, empty, moment=MOMENT + timedelta(hours=2))
    assert second.xp_earned == 0
    assert (second.child.xp, second.child.level, second.child.streak) == (105, 2, 4)
    assert second.leveled_up is False

    events = completions_for(child_id)
    assert [event.xp_earned for event in events] == [10, 0]
    assert all(event.completed_on == TODAY for event in events)
    assert sum(event.xp_earned for event in events) + 95 == load_child(child_id).xp
    assert [entry["event"] for entry in logger.tail()] == ["completion_recorded", "level_up"]


def test_first_completion_and_gap_reset(db) -> None:
    _, (fresh, lapsed), (routine_id,) = seed_family(
        children=[
            {"name": "Ava"},
            {"name": "Ben", "streak": 9, "last_active": TODAY - timedelta(days=3)},
        ],
    )

    with persistence.open_session() as session:
        assert store.record_completion(session, fresh, routine_id, moment=MOMENT).child.streak == 1
        assert store.record_completion(session, lapsed, routine_id, moment=MOMENT).child.streak == 1


def test_completion_yesterday_counts_even_if_last_active_is_stale(db) -> None:
    _, (child_id,), (routine_id,) = seed_family(
        children=[{"name": "Ava", "streak": 2, "last_active": TODAY - timedelta(days=4)}],
    )
    with Session(persistence.engine) as session:
        session.add(
            persistence.Completion(
                child_id=child_id,
                routine_id=routine_id,
                xp_earned=0,
                completed_at=datetime(2026, 10, 18, 9, 0),
                completed_on=YESTERDAY,
            )
        )
        session.commit()

    with persistence.open_session() as session:
        outcome = store.record_completion(session, child_id, routine_id, moment=MOMENT)

    assert outcome.child.streak == 3


def test_record_completion_errors(db) -> None:
    _, (child_id,), (routine_id,) = seed_family()

    with persistence.open_session() as session:
        with pytest.raises(BadRequestError):
            store.record_completion(session, None, routine_id)
        with pytest.raises(NotFoundError):
            store.record_completion(session, 999, routine_id)
        with pytest.raises(InvalidReferenceError):
            store.record_completion(session, child_id, 999)

    assert completions_for(child_id) == []
    assert load_child(child_id).xp == 0


def test_record_completion_recomputes_after_concurrent_write(db, monkeypatch) -> None:
    _, (child_id,), (routine_id,) = seed_family()
    real_read = store._read_child
    raced = []

    def racing_read(session, cid):
        child = real_read(session, cid)
        if not raced:
            raced.append(cid)
            with Session(persistence.engine) as other:
                row = other.get(persistence.Child, cid)
                row.xp += 50
                row.version += 1
                other.add(row)
                other.commit()
        return child

    monkeypatch.setattr(store, "_read_child", racing_read)

    with persistence.open_session() as session:
        outcome = store.record_completion(session, child_id, routine_id, moment=MOMENT)

    assert outcome.child.xp == 60
    assert load_child(child_id).version == 2
    assert len(completions_for(child_id)) == 1


def test_record_completion_gives_up_when_always_racing(db, monkeypatch) -> None:
    _, (child_id,), (routine_id,) = seed_family()
    real_read = store._read_child

    def always_racing(session, cid):
        child = real_read(session, cid)
        with Session(persistence.engine) as other:
            row = other.get(persistence.Child, cid)
            row.version += 1
            other.add(row)
            other.commit()
        return child

    monkeypatch.setattr(store, "_read_child", always_racing)

    with persistence.open_session() as session:
        with pytest.raises(ConcurrentUpdateError):
            store.record_completion(session, child_id, routine_id, moment=MOMENT)

    assert completions_for(child_id) == []


def test_calendar_day_uses_configured_timezone(monkeypatch) -> None:
    late_evening_utc = datetime(2026, 10, 19, 2, 30, tzinfo=timezone.utc)

    assert store.calendar_day(late_evening_utc) == date(2026, 10, 19)
    monkeypatch.setattr(store, "APP_TIMEZONE", ZoneInfo("America/New_York"))
    assert store.calendar_day(late_evening_utc) == date(2026, 10, 18)


def test_routine_create_and_replace(db) -> None:
    family_id, (ava, ben), _ = seed_family(children=[{"name": "Ava"}, {"name": "Ben"}], routines=[])

    with persistence.open_session() as session:
        routine_id = store.create_routine(
            session,
            family_id,
            "Morning",
            tasks=[TaskSpec(name="Brush teeth", points=5), TaskSpec(name="Get dressed")],
            assigned_children=[ava, ava],
        )
        created = store.get_routine(session, routine_id)
    assert created.type == "morning"
    assert [(task.name, task.points, task.sort_order) for task in created.tasks] == [
        ("Brush teeth", 5, 0),
        ("Get dressed", 10, 1),
    ]
    assert created.tasks[1].icon == "⭐" and created.tasks[1].duration == 5
    assert created.assigned_children == [ava]

    with persistence.open_session() as session:
        replaced = store.update_routine(
            session,
            routine_id,
            tasks=[TaskSpec(name="Make bed", points=0), TaskSpec(name="Breakfast", points=15)],
        )
    assert replaced.name == "Morning"
    assert [task.name for task in replaced.tasks] == ["Make bed", "Breakfast"]
    assert replaced.total_points == 15
    assert replaced.assigned_children == [ava]

    with persistence.open_session() as session:
        reassigned = store.update_routine(session, routine_id, name="Sunrise", assigned_children=[ben])
    assert reassigned.name == "Sunrise"
    assert reassigned.assigned_children == [ben]
    assert [task.name for task in reassigned.tasks] == ["Make bed", "Breakfast"]


def test_routine_replace_is_all_or_nothing(db, monkeypatch) -> None:
    family_id, (ava,), _ = seed_family(routines=[])
    with persistence.open_session() as session:
        routine_id = store.create_routine(
            session, family_id, "Morning", tasks=[TaskSpec(name="Brush teeth")], assigned_children=[ava]
        )

    def broken_rows(*_args):
        raise SQLAlchemyError("disk on fire")

    monkeypatch.setattr(store, "_assignment_rows", broken_rows)

    with persistence.open_session() as session:
        with pytest.raises(StoreFailureError):
            store.update_routine(
                session, routine_id, name="Renamed", tasks=[TaskSpec(name="Other")], assigned_children=[]
            )

    with persistence.open_session() as session:
        routine = store.get_routine(session, routine_id)
    assert routine.name == "Morning"
    assert [task.name for task in routine.tasks] == ["Brush teeth"]
    assert routine.assigned_children == [ava]


def test_routine_lookup_errors(db) -> None:
    with persistence.open_session() as session:
        with pytest.raises(BadRequestError):
            store.create_routine(session, None, "Morning")
        with pytest.raises(NotFoundError):
            store.update_routine(session, 42, name="Nope")
        with pytest.raises(BadRequestError):
            store.delete_routine(session, None)


def test_list_routines_filters_by_child(db) -> None:
    family_id, (ava, ben), (morning, bedtime) = seed_family(
        children=[{"name": "Ava"}, {"name": "Ben"}],
        routines=[("Morning", (10,)), ("Bedtime", (5, 5))],
    )
    with persistence.open_session() as session:
        store.update_routine(session, morning, assigned_children=[ava, ben])
        store.update_routine(session, bedtime, assigned_children=[ben])

        everything = store.list_routines(session, family_id)
        for_ava = store.list_routines(session, family_id, child_id=ava)

    assert [routine.name for routine in everything] == ["Bedtime", "Morning"]
    assert [routine.name for routine in for_ava] == ["Morning"]


def test_delete_routine_removes_dependents(db) -> None:
    family_id, (ava,), (routine_id,) = seed_family()
    with persistence.open_session() as session:
        store.update_routine(session, routine_id, assigned_children=[ava])
        store.record_completion(session, ava, routine_id, moment=MOMENT)
        store.delete_routine(session, routine_id)
        assert store.list_routines(session, family_id) == []
    assert completions_for(ava) == []


def test_family_lifecycle_and_pin(db) -> None:
    codes = iter(["HERO-AAAA", "HERO-AAAA", "HERO-BBBB"])
    limiter = PinAttemptLimiter(max_attempts=2)

    with persistence.open_session() as session:
        first = store.create_family(session, "Smiths", "1234", salt="s", code_factory=lambda: next(codes))
        second = store.create_family(session, "Jones", "9876", salt="s", code_factory=lambda: next(codes))
        assert (first.code, second.code) == ("HERO-AAAA", "HERO-BBBB")
        assert first.pin_hash != "1234"

        family, children = store.join_family(session, " hero-aaaa ")
        assert family.id == first.id and children == []

        with pytest.raises(NotFoundError):
            store.join_family(session, "HERO-ZZZZ")
        with pytest.raises(BadRequestError):
            store.create_family(session, "Smiths", "12", salt="s")

        assert store.verify_pin(session, first.id, "1234", salt="s", limiter=limiter).id == first.id
        with pytest.raises(PinRejectedError):
            store.verify_pin(session, first.id, "0000", salt="s", limiter=limiter)
        with pytest.raises(PinRejectedError):
            store.verify_pin(session, first.id, "0000", salt="s", limiter=limiter)
        with pytest.raises(PinLockedError):
            store.verify_pin(session, first.id, "1234", salt="s", limiter=limiter)


def test_children_crud(db) -> None:
    family_id, _, _ = seed_family(children=[], routines=[])

    with persistence.open_session() as session:
        zoe = store.add_child(session, family_id, "Zoe")
        amy = store.add_child(session, family_id, "Amy", age=8, avatar="🦄")
        assert (zoe.age, zoe.avatar, zoe.level, zoe.streak) == (5, "🧒", 1, 0)
        assert [child.name for child in store.list_children(session, family_id)] == ["Amy", "Zoe"]

        renamed = store.update_child(session, zoe.id, name="Zoey")
        assert (renamed.name, renamed.age) == ("Zoey", 5)

        store.delete_child(session, amy.id)
        assert [child.name for child in store.list_children(session, family_id)] == ["Zoey"]

        with pytest.raises(NotFoundError):
            store.update_child(session, amy.id, name="Ghost")
        with pytest.raises(BadRequestError):
            store.add_child(session, family_id, "")
        with pytest.raises(NotFoundError):
            store.add_child(session, 999, "Orphan")


def test_progress_snapshot(db) -> None:
    family_id, (ava, ben), (morning, bedtime) = seed_family(
        children=[
            {"name": "Ava", "xp": 150, "level": 2, "streak": 1},
            {"name": "Ben", "xp": 320, "level": 4, "streak": 6},
        ],
        routines=[("Morning", (10,)), ("Bedtime", (20,))],
    )
    with Session(persistence.engine) as session:
        session.add(
            persistence.Completion(
                child_id=ben,
                routine_id=bedtime,
                xp_earned=20,
                completed_at=datetime(2026, 10, 10, 8, 0),
                completed_on=date(2026, 10, 10),
            )
        )
        session.commit()

    with persistence.open_session() as session:
        store.record_completion(session, ava, morning, moment=MOMENT - timedelta(days=1))
        store.record_completion(session, ava, bedtime, moment=MOMENT)
        snapshot = store.progress_snapshot(session, family_id, moment=MOMENT)

    assert [child.name for child in snapshot.children] == ["Ben", "Ava"]
    stats = snapshot.stats
    assert stats.total_xp == 320 + 180
    assert stats.average_level == 3
    assert stats.longest_streak == 6
    assert stats.routine_count == 2
    assert stats.today_completions == 1
    assert [(entry.routine_name, entry.child_name) for entry in snapshot.recent_activity] == [
        ("Bedtime", "Ava"),
        ("Morning", "Ava"),
    ]


def test_progress_snapshot_for_empty_family(db) -> None:
    family_id, _, _ = seed_family(children=[], routines=[])

    with persistence.open_session() as session:
        snapshot = store.progress_snapshot(session, family_id, moment=MOMENT)

    assert snapshot.children == ()
    assert (snapshot.stats.total_xp, snapshot.stats.average_level, snapshot.stats.longest_streak) == (0, 0, 0)
    assert snapshot.recent_activity == ()


def test_recent_activity_is_capped_newest_first(db) -> None:
    family_id, (ava,), (routine_id,) = seed_family()
    with Session(persistence.engine) as session:
        session.add_all(
            persistence.Completion(
                child_id=ava,
                routine_id=routine_id,
                xp_earned=minute,
                completed_at=datetime(2026, 10, 19, 8, 0) + timedelta(minutes=minute),
                completed_on=TODAY,
            )
            for minute in range(25)
        )
        session.commit()

    with persistence.open_session() as session:
        snapshot = store.progress_snapshot(session, family_id, moment=MOMENT)

    assert len(snapshot.recent_activity) == 20
    assert [entry.xp_earned for entry in snapshot.recent_activity] == list(range(24, 4, -1))
    assert snapshot.stats.today_completions == 25


def test_completion_near_midnight_uses_app_timezone(db, monkeypatch) -> None:
    monkeypatch.setattr(store, "APP_TIMEZONE", ZoneInfo("America/New_York"))
    family_id, (child_id,), (routine_id,) = seed_family(
        children=[{"name": "Ava", "streak": 2, "last_active": date(2026, 10, 17)}],
    )
    evening_in_new_york = datetime(2026, 10, 19, 2, 30, tzinfo=timezone.utc)
    after_midnight = datetime(2026, 10, 19, 4, 30, tzinfo=timezone.utc)

    with persistence.open_session() as session:
        evening = store.record_completion(session, child_id, routine_id, moment=evening_in_new_york)
        assert (evening.child.streak, evening.child.last_active) == (3, date(2026, 10, 18))

        morning = store.record_completion(session, child_id, routine_id, moment=after_midnight)
        assert (morning.child.streak, morning.child.last_active) == (4, date(2026, 10, 19))

        snapshot = store.progress_snapshot(session, family_id, moment=after_midnight)

    assert [event.completed_on for event in completions_for(child_id)] == [date(2026, 10, 18), date(2026, 10, 19)]
    assert snapshot.stats.today_completions == 1
