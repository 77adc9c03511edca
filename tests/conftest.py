from __future__ import annotations

import datetime as dt
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from memkeep.config import CONFIG_ENV_OVERRIDES, MemkeepConfig
from memkeep.store import MemoryStore


class FakeClock:
    def __init__(self, start: dt.datetime | None = None) -> None:
        self.current = start or dt.datetime(2025, 6, 1, 12, 0, tzinfo=dt.UTC)

    def __call__(self) -> dt.datetime:
        return self.current

    def advance(self, **kwargs: float) -> dt.datetime:
        self.current += dt.timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MEMKEEP_CONFIG", str(tmp_path / "config.json"))
    for env_var in CONFIG_ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.delenv("MEMKEEP_DB", raising=False)
    monkeypatch.delenv("MEMKEEP_PROJECT", raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "mem.sqlite"


@pytest.fixture
def store(db_path: Path, clock: FakeClock) -> Iterator[MemoryStore]:
    store = MemoryStore(db_path, config=MemkeepConfig(), clock=clock)
    store.create_org("acme", "free")
    store.create_project("proj", "acme")
    try:
        yield store
    finally:
        store.close()


SetColumns = Callable[..., None]


@pytest.fixture
def set_columns(store: MemoryStore) -> SetColumns:
    """Write raw column values, bypassing the store API."""

    def _set(project_id: str, key: str, **columns: object) -> None:
        assignments = ", ".join(f"{name} = ?" for name in columns)
        with store.transaction():
            store.conn.execute(
                f"UPDATE memories SET {assignments} WHERE project_id = ? AND key = ?",
                (*columns.values(), project_id, key),
            )

    return _set
