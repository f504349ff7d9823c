from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import create_engine, inspect as sa_inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from preprod.config import get_settings
from preprod.models import Base, Department

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None

# Columns added after the first release: (table, column, DDL type/default)
_LATE_COLUMNS: list[tuple[str, str, str]] = [
    ("stage_records", "consistency_score", "INTEGER"),
    ("stage_records", "recommendation", "VARCHAR(30)"),
    ("stage_records", "submitted_at", "DATETIME"),
    ("departments", "weight", "FLOAT"),
]


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = get_settings().database_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _migrate_existing_db(_engine)
        with _SessionLocal() as session:
            seed_departments(session)
            session.commit()


def _migrate_existing_db(engine: Engine) -> None:
    """Add columns that may be missing in older databases."""
    inspector = sa_inspect(engine)
    for table, column, ddl in _LATE_COLUMNS:
        if not inspector.has_table(table):
            continue
        columns = {col["name"] for col in inspector.get_columns(table)}
        if column not in columns:
            with engine.begin() as conn:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            log.info("Migrated %s: added column %s", table, column)


def seed_departments(session: Session, departments: list[dict[str, Any]] | None = None) -> int:
    """Insert the configured departments if the table is empty. Returns rows added."""
    if session.execute(select(Department.id).limit(1)).first() is not None:
        return 0
    if departments is None:
        departments = get_settings().load_departments()
    for spec in departments:
        session.add(Department(
            number=int(spec["number"]),
            slug=str(spec["slug"]),
            name=str(spec.get("name") or spec["slug"].title()),
            description=str(spec.get("description", "")),
            threshold=spec.get("threshold"),
            weight=spec.get("weight"),
            gather_check=bool(spec.get("gather_check", True)),
            is_active=bool(spec.get("is_active", True)),
        ))
    session.flush()
    return len(departments)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (scheduler, MCP server, scripts)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
