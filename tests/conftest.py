from datetime import date, datetime, timezone
from typing import Iterator, List, Optional, Sequence, Tuple

import pytest
from sqlmodel import Session

from routinehero.webapp import application, persistence


@pytest.fixture
def db(tmp_path):
    engine = persistence.configure_engine(f"sqlite:///{tmp_path / 'routinehero.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def frozen_now(monkeypatch):
    moment = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(application, "_time_provider", lambda: moment)
    return moment


@pytest.fixture
def client(db, frozen_now) -> Iterator:
    from fastapi.testclient import TestClient

    application.pin_limiter.reset()
    application.logger.clear()
    with TestClient(application.app) as test_client:
        yield test_client


def seed_family(
    *,
    children: Sequence[dict] = ({"name": "Ava"},),
    routines: Sequence[Tuple[str, Sequence[int]]] = (("Morning", (10,)),),
    code: str = "HERO-TEST",
) -> Tuple[int, List[int], List[int]]:
    """Insert a family with children and routines; return their ids."""

    with Session(persistence.engine) as session:
        family = persistence.Family(name="Testers", code=code, pin_hash="x")
        session.add(family)
        session.commit()
        session.refresh(family)
        child_rows = [persistence.Child(family_id=family.id, **fields) for fields in children]
        session.add_all(child_rows)
        routine_rows = [persistence.Routine(family_id=family.id, name=name) for name, _ in routines]
        session.add_all(routine_rows)
        session.commit()
        for routine, (_, points) in zip(routine_rows, routines):
            session.add_all(
                persistence.RoutineTask(routine_id=routine.id, name=f"Task {index}", points=value, sort_order=index)
                for index, value in enumerate(points)
            )
        session.commit()
        return family.id, [child.id for child in child_rows], [routine.id for routine in routine_rows]


def load_child(child_id: int) -> Optional[persistence.Child]:
    with Session(persistence.engine) as session:
        return session.get(persistence.Child, child_id)


YESTERDAY = date(2026, 10, 18)
TODAY = date(2026, 10, 19)
