"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from overseer.scheduling.tenant import TenantContext
from overseer.storage.database import Database


class FakeClock:
    """Manually advanced UTC clock injected into stores, runner and engine."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 8, 0, tzinfo=UTC))


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "overseer.db"


@pytest.fixture()
def database(db_path: Path) -> Iterator[Database]:
    database = Database(db_path)
    database.init_schema()
    try:
        yield database
    finally:
        database.close()


@pytest.fixture()
def tenant() -> TenantContext:
    return TenantContext(owner_user_id=1)


@pytest.fixture()
def system_tenant() -> TenantContext:
    return TenantContext.system()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer OVERSEER_* variables out of the tests."""

    for name in list(os.environ):
        if name.startswith("OVERSEER_"):
            monkeypatch.delenv(name, raising=False)
