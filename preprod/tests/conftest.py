from __future__ import annotations

import itertools
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from preprod.db import seed_departments
from preprod.models import Base, Department
from preprod.task_service import TaskServiceClient

# Three departments, all gating at 80, so the sequence is easy to reason about.
TEST_DEPARTMENTS = [
    {"number": 1, "slug": "story", "name": "Story Department", "threshold": 80},
    {"number": 2, "slug": "character", "name": "Character Department", "threshold": 80},
    {"number": 3, "slug": "visual", "name": "Visual Department", "threshold": 80},
]


# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def departments(session: Session) -> dict[int, Department]:
    seed_departments(session, TEST_DEPARTMENTS)
    session.commit()
    return {d.number: d for d in session.query(Department).all()}


# ---------------------------------------------------------------------------
# Fixtures: external clients
# ---------------------------------------------------------------------------


@pytest.fixture()
def task_client():
    """Task service stand-in that hands out task-1, task-2, ..."""
    counter = itertools.count(1)
    client = MagicMock(spec=TaskServiceClient)

    async def submit(task):
        return {"task_id": f"task-{next(counter)}", "status": "queued"}

    client.submit_evaluation = AsyncMock(side_effect=submit)
    client.get_task_status = AsyncMock()
    client.cancel_task = AsyncMock(return_value=None)
    client.check_health = AsyncMock(return_value={"status": "healthy"})
    return client
