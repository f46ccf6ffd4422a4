"""Port for persisting state records."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from contextlib import AbstractContextManager
    from datetime import datetime

    from converge.domain.model import StateRecord


@dataclass(frozen=True, slots=True)
class RunLock:
    """Token proving that the holder owns the state for the current run."""

    token: str
    owner: str
    acquired_at: datetime


@runtime_checkable
class StateStore(Protocol):
    """Persistence contract for state records.

    Every ``save``/``remove`` is durable on return, so an interrupted run
    leaves exactly the records of the actions that completed. ``save`` with a
    ``deposed`` record writes both records atomically.
    """

    def load(self) -> dict[str, StateRecord]: ...

    def save(
        self, state_id: str, record: StateRecord, *, deposed: StateRecord | None = None
    ) -> None: ...

    def remove(self, state_id: str) -> None: ...

    def lock(self, owner: str) -> AbstractContextManager[RunLock]: ...

    def current_lock(self) -> RunLock | None: ...

    def force_unlock(self, token: str) -> None: ...
