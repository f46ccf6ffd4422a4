from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy.engine import Engine  # noqa: TC002

from converge.adapters.memory import InMemoryCloud, InMemoryStateStore
from converge.adapters.sqlalchemy import SqlAlchemyStateStore, create_state_engine

if TYPE_CHECKING:
    from collections.abc import Iterator

_CONVERGE_ENV = (
    "CONVERGE_DATA_DIR",
    "CONVERGE_STATE_URI",
    "CONVERGE_PARALLELISM",
    "CONVERGE_DEFAULT_TOKEN",
)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _CONVERGE_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def sqlite_engine() -> Iterator[Engine]:
    engine = create_state_engine("sqlite+pysqlite:///:memory:")
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def sqlite_store(sqlite_engine: Engine) -> SqlAlchemyStateStore:
    return SqlAlchemyStateStore(sqlite_engine)


@pytest.fixture
def memory_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def cloud() -> InMemoryCloud:
    return InMemoryCloud()
