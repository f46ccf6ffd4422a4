"""Resource graph built from a declaration.

Nodes are resource instances (``for_each`` blocks are expanded into one node
per key). An edge ``producer -> consumer`` means the producer must be
created/updated before the consumer, because the consumer references one of
its attributes or lists it in ``depends_on``.

The graph is validated once it is built: references must point at declared
instances and must not form a cycle.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from converge.domain.errors import (
    ConfigurationError,
    CycleError,
    InvalidAttributeError,
    UnresolvedReferenceError,
)
from converge.domain.model import (
    EachReference,
    Reference,
    ResourceAddress,
    ResourceInstance,
    Template,
    is_literal,
    iter_references,
    lookup_path,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from converge.domain.model import Declaration, ResourceBlock

type InstanceKeys = dict[str | None, object]


@dataclass(slots=True)
class ResourceGraph:
    """Directed acyclic graph of resource instances."""

    _nodes: dict[ResourceAddress, ResourceInstance] = field(
        default_factory=dict["ResourceAddress", "ResourceInstance"], repr=False
    )
    _producers: dict[ResourceAddress, set[ResourceAddress]] = field(
        default_factory=dict["ResourceAddress", set["ResourceAddress"]], repr=False
    )
    _consumers: dict[ResourceAddress, set[ResourceAddress]] = field(
        default_factory=dict["ResourceAddress", set["ResourceAddress"]], repr=False
    )

    def __contains__(self, address: object) -> bool:
        return address in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def instances(self) -> tuple[ResourceInstance, ...]:
        return tuple(self._nodes[address] for address in self.topological_order())

    @property
    def addresses(self) -> frozenset[ResourceAddress]:
        return frozenset(self._nodes)

    def add(self, instance: ResourceInstance) -> None:
        if instance.address in self._nodes:
            raise ConfigurationError(f"Duplicate resource instance: {instance.address}")
        self._nodes[instance.address] = instance
        self._producers[instance.address] = set()
        self._consumers[instance.address] = set()

    def add_edge(self, producer: ResourceAddress, consumer: ResourceAddress) -> None:
        self._assert_node_exists(producer, role="producer")
        self._assert_node_exists(consumer, role="consumer")
        self._producers[consumer].add(producer)
        self._consumers[producer].add(consumer)

    def node_for(self, address: ResourceAddress) -> ResourceInstance | None:
        return self._nodes.get(address)

    def producers_of(self, address: ResourceAddress) -> frozenset[ResourceAddress]:
        return frozenset(self._producers.get(address, ()))

    def consumers_of(self, address: ResourceAddress) -> frozenset[ResourceAddress]:
        return frozenset(self._consumers.get(address, ()))

    def topological_order(self) -> tuple[ResourceAddress, ...]:
        """Producers before consumers; independent nodes ordered by address."""

        remaining = {address: len(producers) for address, producers in self._producers.items()}
        ready = [(address.sort_key, address) for address, count in remaining.items() if not count]
        heapq.heapify(ready)
        ordered: list[ResourceAddress] = []
        while ready:
            _, address = heapq.heappop(ready)
            ordered.append(address)
            for consumer in self._consumers[address]:
                remaining[consumer] -= 1
                if remaining[consumer] == 0:
                    heapq.heappush(ready, (consumer.sort_key, consumer))
        if len(ordered) != len(self._nodes):
            raise CycleError(self._find_cycle())
        return tuple(ordered)

    def validate_invariants(self) -> None:
        for consumer, producers in self._producers.items():
            for producer in producers:
                self._assert_node_exists(producer, role="producer")
                if consumer not in self._consumers[producer]:
                    raise ValueError(f"Edge index mismatch for {producer} -> {consumer}")
        cycle = self._find_cycle()
        if cycle:
            raise CycleError(cycle)

    def _find_cycle(self) -> list[ResourceAddress]:
        visiting: list[ResourceAddress] = []
        on_path: set[ResourceAddress] = set()
        done: set[ResourceAddress] = set()

        def visit(address: ResourceAddress) -> list[ResourceAddress]:
            visiting.append(address)
            on_path.add(address)
            for producer in sorted(self._producers[address], key=lambda item: item.sort_key):
                if producer in on_path:
                    start = visiting.index(producer)
                    return [*visiting[start:], producer]
                if producer not in done:
                    cycle = visit(producer)
                    if cycle:
                        return cycle
            visiting.pop()
            on_path.discard(address)
            done.add(address)
            return []

        for address in sorted(self._nodes, key=lambda item: item.sort_key):
            if address not in done:
                cycle = visit(address)
                if cycle:
                    # reported in reference direction: consumer -> producer
                    return cycle
        return []

    def _assert_node_exists(self, address: ResourceAddress, *, role: str) -> None:
        if address not in self._nodes:
            raise ValueError(f"Resource instance does not exist for {role}: {address}")


def build_graph(declaration: Declaration) -> ResourceGraph:
    """Expand ``declaration`` into a validated ``ResourceGraph``."""

    keys_by_block = {
        address: _instance_keys(block, declaration) for address, block in declaration.blocks.items()
    }

    graph = ResourceGraph()
    ordered_blocks = sorted(declaration.blocks.values(), key=lambda block: block.address.sort_key)
    instances_by_block: dict[ResourceAddress, list[ResourceInstance]] = {}
    for block in ordered_blocks:
        instances = instances_by_block.setdefault(block.address, [])
        for key, each_value in keys_by_block[block.address].items():
            address = block.address if key is None else block.address.instance(key)
            attributes = {
                name: _substitute_each(value, block, key, each_value)
                for name, value in block.attributes.items()
            }
            instance = ResourceInstance(
                address=address,
                provider=block.provider,
                attributes=attributes,
                lifecycle=block.lifecycle,
                depends_on=block.depends_on,
            )
            graph.add(instance)
            instances.append(instance)

    for block in ordered_blocks:
        for_each_targets: set[ResourceAddress] = set()
        if isinstance(block.for_each, Reference):
            for_each_targets = _targets(block.for_each.target, keys_by_block, block.address)
        for instance in instances_by_block[block.address]:
            address = instance.address
            producers = set(for_each_targets)
            for reference in iter_references(instance.attributes):
                producers |= _targets(reference.target, keys_by_block, address)
            for dependency in instance.depends_on:
                producers |= _targets(dependency, keys_by_block, address)
            for producer in producers:
                graph.add_edge(producer, address)

    graph.validate_invariants()
    return graph


def _instance_keys(block: ResourceBlock, declaration: Declaration) -> InstanceKeys:
    if block.for_each is None:
        return {None: None}

    source: object = block.for_each
    if isinstance(source, Reference):
        source = _resolve_for_each_reference(block, source, declaration)

    keys: InstanceKeys = {}
    if isinstance(source, dict):
        for key, value in source.items():
            if not is_literal(value):
                raise ConfigurationError(
                    f"{block.address}: for_each values must be known before planning"
                )
            keys[str(key)] = value
    elif isinstance(source, list):
        for item in source:
            if not isinstance(item, str | int) or isinstance(item, bool):
                raise InvalidAttributeError(
                    f"{block.address}: for_each lists may only contain strings, got {item!r}"
                )
            key = str(item)
            if key in keys:
                raise InvalidAttributeError(f"{block.address}: duplicate for_each key {key!r}")
            keys[key] = item
    else:
        raise InvalidAttributeError(
            f"{block.address}: for_each must be a list or mapping, got {type(source).__name__}"
        )
    return keys


def _resolve_for_each_reference(
    block: ResourceBlock, reference: Reference, declaration: Declaration
) -> object:
    target = declaration.block_for(reference.target)
    if target is None:
        raise UnresolvedReferenceError(
            f"{block.address}: for_each references undeclared resource {reference.target}"
        )
    if target.for_each is not None:
        raise ConfigurationError(
            f"{block.address}: for_each cannot be derived from for_each resource {target.address}"
        )
    head, *rest = reference.path
    if head not in target.attributes:
        raise ConfigurationError(
            f"{block.address}: for_each must be known before planning, "
            f"but {reference} is computed by the provider"
        )
    value = lookup_path(target.attributes[str(head)], tuple(rest), owner=target.address)
    if not is_literal(value):
        raise ConfigurationError(
            f"{block.address}: for_each must be known before planning, "
            f"but {reference} depends on other resources"
        )
    return value


def _substitute_each(
    value: object, block: ResourceBlock, key: str | None, each_value: object
) -> object:
    if isinstance(value, EachReference):
        return _each_value(value, block, key, each_value)
    if isinstance(value, Template):
        parts: list[object] = []
        for part in value.parts:
            if isinstance(part, EachReference):
                parts.append(_stringify(_each_value(part, block, key, each_value)))
            else:
                parts.append(part)
        return _collapse_template(parts)
    if isinstance(value, dict):
        return {
            name: _substitute_each(item, block, key, each_value) for name, item in value.items()
        }
    if isinstance(value, list):
        return [_substitute_each(item, block, key, each_value) for item in value]
    return value


def _each_value(
    reference: EachReference, block: ResourceBlock, key: str | None, each_value: object
) -> object:
    if block.for_each is None or key is None:
        raise InvalidAttributeError(f"{block.address}: {reference} used outside a for_each block")
    if reference.field == "key":
        return key
    return lookup_path(each_value, reference.path, owner=block.address.instance(key))


def _stringify(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _collapse_template(parts: Iterable[object]) -> object:
    merged: list[object] = []
    for part in parts:
        if isinstance(part, str) and merged and isinstance(merged[-1], str):
            merged[-1] = f"{merged[-1]}{part}"
        else:
            merged.append(part)
    if len(merged) == 1 and isinstance(merged[0], str):
        return merged[0]
    return Template(parts=tuple(merged))  # type: ignore[arg-type]


def _targets(
    target: ResourceAddress,
    keys_by_block: dict[ResourceAddress, InstanceKeys],
    consumer: ResourceAddress,
) -> set[ResourceAddress]:
    keys = keys_by_block.get(target.block)
    if keys is None:
        raise UnresolvedReferenceError(f"{consumer} references undeclared resource {target}")
    is_for_each = None not in keys
    if target.key is not None:
        if not is_for_each:
            raise UnresolvedReferenceError(
                f"{consumer} references {target}, but {target.block} does not use for_each"
            )
        if target.key not in keys:
            raise UnresolvedReferenceError(
                f"{consumer} references unknown for_each key {target.key!r} of {target.block}"
            )
        return {target}
    if is_for_each:
        return {target.instance(str(key)) for key in keys}
    return {target}
