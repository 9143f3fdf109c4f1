"""Shared SQLite database handle for orchestration repositories."""

from __future__ import annotations

import sqlite3
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlmodel import Session

from overseer.storage.alembic_runner import upgrade_head
from overseer.storage.common import build_sqlite_engine, connect_sqlite_with_policy


class Database:
    """Owns the SQLAlchemy engine shared by the job, task and sub-agent stores."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.engine: Engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

        # Keep low-level connection for tests and ad-hoc debugging queries.
        self._connection: sqlite3.Connection = connect_sqlite_with_policy(
            db_path=db_path,
            busy_timeout_ms=busy_timeout_ms,
        )

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def session(self) -> Session:
        return Session(self.engine)

    def close(self) -> None:
        """Close underlying DB resources."""

        self._connection.close()
        self.engine.dispose()
