"""Pure planning: declared graph + stored records -> ordered plan.

The planner never talks to providers and never writes state. It decides one
``ResourceChange`` per instance and record, then derives executable actions
and their dependencies:

- create/update of a consumer waits for the create/update of its producers;
- the old object of a resource is destroyed only after the old objects that
  depended on it are gone, and after the consumers that stop using it (or
  switch to its replacement) have been applied;
- a replacement destroys first unless ``create_before_destroy`` is set, in
  which case the new object is created first. The flag spreads to replaced
  producers of such a resource, otherwise the ordering would be circular.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field, replace
from functools import partial
from logging import getLogger
from typing import TYPE_CHECKING, Final

from converge.domain.errors import PlanningError
from converge.domain.model import ResourceSchema, lookup_path

from .plan import Action, ChangeKind, Operation, Plan, ResourceChange, action_key
from .resolve import UNKNOWN, contains_unknown, resolve_attributes

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from converge.domain.model import (
        AttributePath,
        Reference,
        ResourceAddress,
        ResourceInstance,
        StateRecord,
    )

    from .graph import ResourceGraph

    type SchemaLookup = Callable[[str, str], ResourceSchema]

log = getLogger(__name__)

_MISSING: Final = object()
# an in-place update keeps the object, so its id output cannot change
_STABLE_OUTPUTS: Final = frozenset({"id"})
_OPERATION_ORDER: Final[dict[Operation, int]] = {
    Operation.DESTROY: 0,
    Operation.CREATE: 1,
    Operation.UPDATE: 2,
}


def _default_schema(_provider: str, _resource_type: str) -> ResourceSchema:
    return ResourceSchema()


@dataclass(slots=True)
class Planner:
    """Diff declared configuration against stored state."""

    schema_for: SchemaLookup = field(default=_default_schema)

    def __call__(
        self,
        graph: ResourceGraph,
        records: Mapping[str, StateRecord],
        *,
        destroy: bool = False,
    ) -> Plan:
        current = {record.address: record for record in records.values() if not record.deposed}
        deposed = sorted(
            (record for record in records.values() if record.deposed),
            key=lambda record: (record.address.sort_key, record.external_id),
        )

        changes: dict[ResourceAddress, ResourceChange] = {}
        if destroy:
            self._check_destroy_allowed(graph, current)
        else:
            for instance in graph.instances:
                address = instance.address
                changes[address] = self._diff(instance, current.get(address), graph, changes)
            _propagate_create_before_destroy(graph, changes)

        for address in sorted(current, key=lambda item: item.sort_key):
            if address in changes:
                continue
            record = current[address]
            changes[address] = ResourceChange(
                address=address,
                kind=ChangeKind.DESTROY,
                provider=record.provider,
                prior=record,
                dependencies=record.dependencies,
                reason="destroy requested" if destroy else "no longer declared",
            )

        plan = Plan(destroy=destroy)
        for change in changes.values():
            plan.add_change(change)
        for record in deposed:
            plan.add_change(
                ResourceChange(
                    address=record.address,
                    kind=ChangeKind.DESTROY,
                    provider=record.provider,
                    prior=record,
                    dependencies=record.dependencies,
                    deposed=True,
                    reason="deposed object left by an interrupted replacement",
                )
            )

        _build_actions(plan, graph, changes)
        log.debug("Planned %d change(s), %d action(s)", len(plan.changes), len(plan.actions))
        return plan

    def _check_destroy_allowed(
        self, graph: ResourceGraph, current: Mapping[ResourceAddress, StateRecord]
    ) -> None:
        for instance in graph.instances:
            if instance.lifecycle.prevent_destroy and instance.address in current:
                raise PlanningError(
                    f"{instance.address} has lifecycle.prevent_destroy set and cannot be destroyed",
                    address=instance.address,
                )

    def _diff(
        self,
        instance: ResourceInstance,
        record: StateRecord | None,
        graph: ResourceGraph,
        changes: Mapping[ResourceAddress, ResourceChange],
    ) -> ResourceChange:
        address = instance.address

        def lookup(reference: Reference) -> object:
            return _planned_reference(reference, graph, changes)

        planned = resolve_attributes(instance.attributes, lookup)
        change = partial(
            ResourceChange,
            address=address,
            provider=instance.provider,
            config=instance.attributes,
            planned=planned,
            prior=record,
            dependencies=tuple(sorted(graph.producers_of(address), key=lambda item: item.sort_key)),
            ignore_changes=instance.lifecycle.ignore_changes,
            create_before_destroy=instance.lifecycle.create_before_destroy,
        )

        if record is None:
            return change(kind=ChangeKind.CREATE)

        if record.provider != instance.provider:
            self._check_replace_allowed(instance, reason="its provider changed")
            return change(
                kind=ChangeKind.REPLACE,
                reason=f"provider changed from {record.provider} to {instance.provider}",
            )

        changed = tuple(
            sorted(
                name
                for name in set(planned) | set(record.attributes)
                if name not in instance.lifecycle.ignore_changes
                and _differs(planned.get(name, _MISSING), record.attributes.get(name, _MISSING))
            )
        )
        if not changed:
            return change(kind=ChangeKind.NOOP)

        schema = self.schema_for(instance.provider, instance.resource_type)
        immutable = [name for name in changed if name in schema.immutable]
        if immutable:
            raise PlanningError(
                f"{address}: attribute(s) {', '.join(immutable)} cannot change after creation",
                address=address,
            )
        forcing = tuple(name for name in changed if name in schema.force_new)
        if forcing:
            self._check_replace_allowed(instance, reason=f"{', '.join(forcing)} changed")
            return change(
                kind=ChangeKind.REPLACE,
                changed_attributes=changed,
                replace_attributes=forcing,
            )
        return change(kind=ChangeKind.UPDATE, changed_attributes=changed)

    def _check_replace_allowed(self, instance: ResourceInstance, *, reason: str) -> None:
        if instance.lifecycle.prevent_destroy:
            raise PlanningError(
                f"{instance.address} must be replaced because {reason}, "
                "but lifecycle.prevent_destroy is set",
                address=instance.address,
            )


def _differs(planned: object, applied: object) -> bool:
    return contains_unknown(planned) or planned != applied


def _planned_reference(
    reference: Reference,
    graph: ResourceGraph,
    changes: Mapping[ResourceAddress, ResourceChange],
) -> object:
    if reference.target in graph:
        return _planned_value(reference.target, reference.path, changes)
    instances = sorted(
        (address for address in graph.addresses if address.block == reference.target),
        key=lambda item: item.sort_key,
    )
    return {
        str(address.key): _planned_value(address, reference.path, changes)
        for address in instances
    }


def _planned_value(
    address: ResourceAddress,
    path: AttributePath,
    changes: Mapping[ResourceAddress, ResourceChange],
) -> object:
    change = changes[address]
    head = str(path[0])
    if change.kind is not ChangeKind.NOOP and change.planned is not None:
        if head in change.planned:
            return _walk(change.planned[head], path[1:], owner=address)
        if change.kind is not ChangeKind.UPDATE or head not in _STABLE_OUTPUTS:
            # computed outputs are only known once the provider answers
            return UNKNOWN
    if change.prior is None:
        return UNKNOWN
    return _walk(change.prior.value_of(head), path[1:], owner=address)


def _walk(value: object, path: AttributePath, *, owner: ResourceAddress) -> object:
    current = value
    for element in path:
        if current is UNKNOWN:
            return UNKNOWN
        current = lookup_path(current, (element,), owner=owner)
    return current


def _propagate_create_before_destroy(
    graph: ResourceGraph, changes: dict[ResourceAddress, ResourceChange]
) -> None:
    pending = [
        address
        for address, change in changes.items()
        if change.kind is ChangeKind.REPLACE and change.create_before_destroy
    ]
    while pending:
        address = pending.pop()
        for producer in graph.producers_of(address):
            change = changes[producer]
            if change.kind is ChangeKind.REPLACE and not change.create_before_destroy:
                log.debug("%s inherits create_before_destroy from %s", producer, address)
                changes[producer] = replace(change, create_before_destroy=True)
                pending.append(producer)


def _build_actions(
    plan: Plan, graph: ResourceGraph, changes: Mapping[ResourceAddress, ResourceChange]
) -> None:
    apply_keys: dict[ResourceAddress, str] = {}
    destroy_keys: dict[ResourceAddress, str] = {}
    for address, change in changes.items():
        if change.kind in (ChangeKind.CREATE, ChangeKind.REPLACE):
            apply_keys[address] = action_key(Operation.CREATE, change)
        elif change.kind is ChangeKind.UPDATE:
            apply_keys[address] = action_key(Operation.UPDATE, change)
        if change.kind in (ChangeKind.REPLACE, ChangeKind.DESTROY):
            destroy_keys[address] = action_key(Operation.DESTROY, change)

    actions: list[tuple[Action, ResourceChange]] = []
    for address, change in changes.items():
        if address in apply_keys:
            depends_on = {
                apply_keys[producer]
                for producer in graph.producers_of(address)
                if producer in apply_keys
            }
            if change.kind is ChangeKind.REPLACE and not change.create_before_destroy:
                depends_on.add(destroy_keys[address])
            operation = Operation.UPDATE if change.kind is ChangeKind.UPDATE else Operation.CREATE
            actions.append((_action(operation, change, depends_on), change))
        if address in destroy_keys:
            depends_on = _destroy_dependencies(
                address, change, graph, changes, apply_keys, destroy_keys
            )
            actions.append((_action(Operation.DESTROY, change, depends_on), change))

    for change in plan.changes:
        if change.deposed:
            actions.append((_action(Operation.DESTROY, change, set()), change))

    ordered = _order_actions(actions)
    plan.actions = tuple(action for action, _ in ordered)
    for action, change in ordered:
        plan.bind(action, change)


def _destroy_dependencies(
    address: ResourceAddress,
    change: ResourceChange,
    graph: ResourceGraph,
    changes: Mapping[ResourceAddress, ResourceChange],
    apply_keys: Mapping[ResourceAddress, str],
    destroy_keys: Mapping[ResourceAddress, str],
) -> set[str]:
    depends_on: set[str] = set()
    replaced_early = change.kind is ChangeKind.REPLACE and change.create_before_destroy
    if replaced_early:
        depends_on.add(apply_keys[address])

    for other, other_change in changes.items():
        if other == address:
            continue
        used_old = other_change.prior is not None and address in other_change.prior.dependencies
        uses_new = address in graph.producers_of(other)
        if not (used_old or uses_new):
            continue
        if used_old and other in destroy_keys:
            depends_on.add(destroy_keys[other])
        elif other in apply_keys and (change.kind is ChangeKind.DESTROY or replaced_early):
            depends_on.add(apply_keys[other])
    return depends_on


def _action(operation: Operation, change: ResourceChange, depends_on: set[str]) -> Action:
    return Action(
        key=action_key(operation, change),
        address=change.address,
        operation=operation,
        change=change.kind,
        depends_on=tuple(sorted(depends_on)),
    )


def _order_actions(
    actions: list[tuple[Action, ResourceChange]],
) -> list[tuple[Action, ResourceChange]]:
    by_key = {action.key: (action, change) for action, change in actions}
    remaining = {action.key: len(action.depends_on) for action, _ in actions}
    waiting: dict[str, list[str]] = {key: [] for key in by_key}
    for action, _ in actions:
        for dependency in action.depends_on:
            waiting[dependency].append(action.key)

    def priority(key: str) -> tuple[tuple[str, str, str], int, str]:
        action = by_key[key][0]
        return (action.address.sort_key, _OPERATION_ORDER[action.operation], key)

    ready = [(priority(key), key) for key, count in remaining.items() if not count]
    heapq.heapify(ready)
    ordered: list[tuple[Action, ResourceChange]] = []
    while ready:
        _, key = heapq.heappop(ready)
        ordered.append(by_key[key])
        for dependent in waiting[key]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (priority(dependent), dependent))

    if len(ordered) != len(actions):
        stuck = sorted(key for key, count in remaining.items() if count)
        raise PlanningError(f"Cannot order actions, circular dependencies between: {stuck}")
    return ordered
