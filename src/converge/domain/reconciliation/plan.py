"""Plan types shared by the planner, the executor and the CLI.

A plan has two views of the same decision:

- one ``ResourceChange`` per resource instance (what happens to it), and
- an ordered tuple of executable ``Action``s (how it is carried out), each with
  an explicit list of action keys it waits for. A replacement contributes a
  create and a destroy action; their relative order follows the resource's
  lifecycle policy.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from converge.domain.errors import PlanningError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from converge.domain.model import ResourceAddress, StateRecord


class ChangeKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NOOP = "no-op"


class Operation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"


@dataclass(frozen=True, slots=True, kw_only=True)
class ResourceChange:
    """Planned change for one resource instance (or one deposed object).

    ``config`` holds the declared attributes with references still unresolved;
    the executor resolves them against committed producers right before the
    provider call. ``planned`` is the plan-time rendering of the same values,
    with ``UNKNOWN`` where a producer has not been applied yet.
    """

    address: ResourceAddress
    kind: ChangeKind
    provider: str
    config: Mapping[str, object] | None = None
    planned: Mapping[str, object] | None = None
    prior: StateRecord | None = None
    dependencies: tuple[ResourceAddress, ...] = ()
    changed_attributes: tuple[str, ...] = ()
    replace_attributes: tuple[str, ...] = ()
    ignore_changes: frozenset[str] = frozenset()
    create_before_destroy: bool = False
    deposed: bool = False
    reason: str | None = None

    @property
    def state_id(self) -> str:
        if self.deposed and self.prior is not None:
            return self.prior.state_id
        return str(self.address)

    def require_prior(self) -> StateRecord:
        if self.prior is None:
            raise PlanningError(
                f"{self.address}: a {self.kind} change needs a recorded object",
                address=self.address,
            )
        return self.prior


@dataclass(frozen=True, slots=True, kw_only=True)
class Action:
    """One executable step of a plan."""

    key: str
    address: ResourceAddress
    operation: Operation
    change: ChangeKind
    depends_on: tuple[str, ...] = ()

    def __str__(self) -> str:
        return self.key


def action_key(operation: Operation, change: ResourceChange) -> str:
    if change.deposed and change.prior is not None:
        return f"{operation}:{change.prior.state_id}"
    return f"{operation}:{change.address}"


@dataclass(slots=True)
class Plan:
    """Aggregate plan for one run."""

    changes: list[ResourceChange] = field(default_factory=list["ResourceChange"])
    actions: tuple[Action, ...] = ()
    destroy: bool = False
    _changes_by_key: dict[str, ResourceChange] = field(
        default_factory=dict["str", "ResourceChange"], repr=False
    )

    @property
    def has_changes(self) -> bool:
        return bool(self.actions)

    def add_change(self, change: ResourceChange) -> None:
        self.changes.append(change)

    def bind(self, action: Action, change: ResourceChange) -> None:
        self._changes_by_key[action.key] = change

    def change_for_action(self, action: Action) -> ResourceChange:
        return self._changes_by_key[action.key]

    def change_for(self, address: ResourceAddress) -> ResourceChange | None:
        for change in self.changes:
            if change.address == address and not change.deposed:
                return change
        return None

    def action(self, key: str) -> Action | None:
        for action in self.actions:
            if action.key == key:
                return action
        return None

    def index_of(self, key: str) -> int:
        for index, action in enumerate(self.actions):
            if action.key == key:
                return index
        raise KeyError(key)

    def summary(self) -> dict[ChangeKind, int]:
        counts = Counter(change.kind for change in self.changes)
        return {kind: counts.get(kind, 0) for kind in ChangeKind}
