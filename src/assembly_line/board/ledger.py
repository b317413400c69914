"""Monotonic identifier ledger backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from sqlalchemy import Column, DateTime, event
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import NullPool
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from assembly_line.board.contracts import utc_now

logger = logging.getLogger(__name__)


class IdCounter(SQLModel, table=True):
    __tablename__ = "id_counters"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    value: int = Field(default=0, nullable=False)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class IdLedger:
    """Single-writer counter: every allocation is a compare-and-swap update.

    Concurrent allocators racing on the same counter retry until one of them
    commits, so two callers never receive the same value.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(self.engine, tables=[IdCounter.__table__])

    def current(self, name: str) -> int:
        with Session(self.engine) as session:
            row = session.exec(select(IdCounter).where(IdCounter.name == name)).one_or_none()
            return row.value if row is not None else 0

    def allocate(self, name: str, *, floor: int = 0) -> int:
        """Return ``max(counter, floor) + 1`` and persist it as the new counter."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.exec(select(IdCounter).where(IdCounter.name == name)).one_or_none()
                if row is None:
                    candidate = floor + 1
                    session.add(IdCounter(name=name, value=candidate, updated_at=now))
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        continue
                    logger.debug("Ledger %s initialised at %d", name, candidate)
                    return candidate

                observed = row.value
                candidate = max(observed, floor) + 1
                result = session.exec(
                    sa_update(IdCounter)
                    .where(
                        col(IdCounter.name) == name,
                        col(IdCounter.value) == observed,
                    )
                    .values(value=candidate, updated_at=now),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                logger.debug("Ledger %s advanced %d -> %d", name, observed, candidate)
                return candidate


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()
