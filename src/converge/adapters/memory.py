"""In-process provider and state store.

Used by tests and for local experiments: the ``memory`` provider keeps
objects in an ``InMemoryCloud`` and supports fault injection, the
``InMemoryStateStore`` keeps records in a dict.
"""

from __future__ import annotations

import copy
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING

from converge.domain.errors import NotFoundError, StateLockError
from converge.domain.model import ResourceSchema
from converge.domain.ports import RunLock

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping

    from converge.domain.errors import ProviderError
    from converge.domain.model import ProviderSettings, StateRecord
    from converge.domain.ports import AdapterFactory

    type OutputsHook = Callable[[str, str, Mapping[str, object]], dict[str, object]]

log = getLogger(__name__)


@dataclass(slots=True, kw_only=True)
class _Fault:
    operation: str
    resource_type: str | None
    error: ProviderError
    remaining: int | None


@dataclass(slots=True, kw_only=True)
class CallRecord:
    operation: str
    resource_type: str
    external_id: str | None
    attributes: dict[str, object] | None = None


@dataclass(slots=True)
class InMemoryCloud:
    """Objects of every resource type, keyed by external id."""

    objects: dict[str, dict[str, dict[str, object]]] = field(
        default_factory=lambda: defaultdict(dict)
    )
    calls: list[CallRecord] = field(default_factory=list["CallRecord"])
    outputs_hook: OutputsHook | None = None
    _counters: dict[str, int] = field(default_factory=dict["str", "int"], repr=False)
    _faults: list[_Fault] = field(default_factory=list["_Fault"], repr=False)

    def fail(
        self,
        operation: str,
        error: ProviderError,
        *,
        resource_type: str | None = None,
        times: int | None = 1,
    ) -> None:
        """Make the next ``times`` matching calls raise ``error`` (``None``: always)."""

        self._faults.append(
            _Fault(operation=operation, resource_type=resource_type, error=error, remaining=times)
        )

    def clear_faults(self) -> None:
        self._faults.clear()

    def get(self, resource_type: str, external_id: str) -> dict[str, object] | None:
        return self.objects[resource_type].get(external_id)

    def ids(self, resource_type: str) -> list[str]:
        return sorted(self.objects[resource_type])

    def delete_outside(self, resource_type: str, external_id: str) -> None:
        """Remove an object as if someone deleted it behind converge's back."""

        self.objects[resource_type].pop(external_id, None)

    def calls_for(self, operation: str | None = None) -> list[CallRecord]:
        return [call for call in self.calls if operation is None or call.operation == operation]

    def next_id(self, resource_type: str) -> str:
        self._counters[resource_type] = self._counters.get(resource_type, 0) + 1
        return f"{resource_type}-{self._counters[resource_type]}"

    def check_fault(self, operation: str, resource_type: str) -> None:
        for fault in self._faults:
            if fault.operation != operation:
                continue
            if fault.resource_type is not None and fault.resource_type != resource_type:
                continue
            if fault.remaining is not None:
                fault.remaining -= 1
                if fault.remaining <= 0:
                    self._faults.remove(fault)
            log.debug("Injected failure for %s %s: %r", operation, resource_type, fault.error)
            raise fault.error

    def outputs_for(
        self, resource_type: str, external_id: str, attributes: Mapping[str, object]
    ) -> dict[str, object]:
        if self.outputs_hook is not None:
            return {"id": external_id, **self.outputs_hook(resource_type, external_id, attributes)}
        return {"id": external_id}


@dataclass(slots=True)
class InMemoryResourceAdapter:
    resource_type: str
    cloud: InMemoryCloud
    settings: ProviderSettings | None = None

    @property
    def schema(self) -> ResourceSchema:
        if self.settings is None:
            return ResourceSchema()
        return self.settings.schema_for(self.resource_type)

    async def create(self, attributes: Mapping[str, object]) -> tuple[str, dict[str, object]]:
        self._record("create", None, attributes)
        self.cloud.check_fault("create", self.resource_type)
        external_id = self.cloud.next_id(self.resource_type)
        outputs = self.cloud.outputs_for(self.resource_type, external_id, attributes)
        self.cloud.objects[self.resource_type][external_id] = {
            "attributes": copy.deepcopy(dict(attributes)),
            "outputs": outputs,
        }
        return external_id, dict(outputs)

    async def read(self, external_id: str) -> dict[str, object]:
        self._record("read", external_id)
        self.cloud.check_fault("read", self.resource_type)
        stored = self._require(external_id)
        return dict(stored["outputs"])  # pyright: ignore[reportArgumentType]

    async def update(
        self, external_id: str, attributes: Mapping[str, object]
    ) -> dict[str, object]:
        self._record("update", external_id, attributes)
        self.cloud.check_fault("update", self.resource_type)
        stored = self._require(external_id)
        outputs = self.cloud.outputs_for(self.resource_type, external_id, attributes)
        stored["attributes"] = copy.deepcopy(dict(attributes))
        stored["outputs"] = outputs
        return dict(outputs)

    async def destroy(self, external_id: str) -> None:
        self._record("destroy", external_id)
        self.cloud.check_fault("destroy", self.resource_type)
        self.cloud.objects[self.resource_type].pop(external_id, None)

    def _require(self, external_id: str) -> dict[str, object]:
        stored = self.cloud.get(self.resource_type, external_id)
        if stored is None:
            raise NotFoundError(f"{self.resource_type} {external_id} does not exist")
        return stored

    def _record(
        self,
        operation: str,
        external_id: str | None,
        attributes: Mapping[str, object] | None = None,
    ) -> None:
        self.cloud.calls.append(
            CallRecord(
                operation=operation,
                resource_type=self.resource_type,
                external_id=external_id,
                attributes=dict(attributes) if attributes is not None else None,
            )
        )


def memory_provider(
    settings: ProviderSettings | None = None, *, cloud: InMemoryCloud | None = None
) -> AdapterFactory:
    """Adapter factory serving every resource type from one in-memory cloud."""

    target = cloud if cloud is not None else InMemoryCloud()

    def factory(resource_type: str) -> InMemoryResourceAdapter:
        return InMemoryResourceAdapter(resource_type=resource_type, cloud=target, settings=settings)

    return factory


@dataclass(slots=True)
class InMemoryStateStore:
    """Dict-backed state store with the same lock semantics as the SQL store."""

    records: dict[str, StateRecord] = field(default_factory=dict["str", "StateRecord"])
    held_lock: RunLock | None = None
    writes: list[tuple[str, str]] = field(default_factory=list[tuple[str, str]])

    def load(self) -> dict[str, StateRecord]:
        return {state_id: copy.deepcopy(record) for state_id, record in self.records.items()}

    def save(
        self, state_id: str, record: StateRecord, *, deposed: StateRecord | None = None
    ) -> None:
        self.records[state_id] = copy.deepcopy(record)
        self.writes.append(("save", state_id))
        if deposed is not None:
            self.records[deposed.state_id] = copy.deepcopy(deposed)
            self.writes.append(("save", deposed.state_id))

    def remove(self, state_id: str) -> None:
        self.records.pop(state_id, None)
        self.writes.append(("remove", state_id))

    @contextmanager
    def lock(self, owner: str) -> Iterator[RunLock]:
        if self.held_lock is not None:
            raise StateLockError(
                f"State is locked by {self.held_lock.owner} (lock token {self.held_lock.token})",
                token=self.held_lock.token,
                owner=self.held_lock.owner,
            )
        run_lock = RunLock(token=uuid.uuid4().hex, owner=owner, acquired_at=datetime.now(UTC))
        self.held_lock = run_lock
        try:
            yield run_lock
        finally:
            if self.held_lock is run_lock:
                self.held_lock = None

    def current_lock(self) -> RunLock | None:
        return self.held_lock

    def force_unlock(self, token: str) -> None:
        if self.held_lock is None or self.held_lock.token != token:
            raise StateLockError(f"No lock with token {token} is held", token=token)
        self.held_lock = None
