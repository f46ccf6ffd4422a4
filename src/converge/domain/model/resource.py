"""Declared resources and provider settings."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from converge.domain.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .address import ResourceAddress
    from .expressions import Reference


@dataclass(frozen=True, slots=True, kw_only=True)
class Lifecycle:
    """Per-resource lifecycle policy."""

    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True, kw_only=True)
class ResourceSchema:
    """Attribute policy a provider declares for one resource type.

    ``force_new`` attributes can only change by replacing the resource.
    ``immutable`` attributes cannot change at all once the resource exists.
    Every other attribute is updated in place.
    """

    force_new: frozenset[str] = frozenset()
    immutable: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True, kw_only=True)
class ProviderSettings:
    """Global settings for one provider alias (region, endpoint, ...)."""

    alias: str
    kind: str = "memory"
    region: str | None = None
    endpoint: str | None = None
    timeout_seconds: float = 30.0
    rate_limit_per_second: float | None = None
    token_env: str | None = None
    schemas: Mapping[str, ResourceSchema] = field(default_factory=dict["str", "ResourceSchema"])

    def schema_for(self, resource_type: str) -> ResourceSchema:
        return self.schemas.get(resource_type, ResourceSchema())


type ForEachValue = list[object] | dict[str, object] | Reference


@dataclass(slots=True, kw_only=True)
class ResourceBlock:
    """One ``[resource.<type>.<name>]`` declaration before ``for_each`` expansion."""

    address: ResourceAddress
    provider: str
    attributes: dict[str, object] = field(default_factory=dict["str", "object"])
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    depends_on: tuple[ResourceAddress, ...] = ()
    for_each: ForEachValue | None = None

    @property
    def resource_type(self) -> str:
        return self.address.resource_type


@dataclass(slots=True, kw_only=True)
class ResourceInstance:
    """One concrete resource node, produced by expanding a ``ResourceBlock``.

    ``attributes`` still contains ``Reference`` and ``Template`` values; they are
    resolved by the planner (for diffing) and by the executor (for provider
    calls) once their producers are known.
    """

    address: ResourceAddress
    provider: str
    attributes: dict[str, object]
    lifecycle: Lifecycle
    depends_on: tuple[ResourceAddress, ...] = ()

    @property
    def resource_type(self) -> str:
        return self.address.resource_type


@dataclass(slots=True, kw_only=True)
class Declaration:
    """Everything read from a configuration file."""

    providers: dict[str, ProviderSettings] = field(
        default_factory=dict["str", "ProviderSettings"]
    )
    blocks: dict[ResourceAddress, ResourceBlock] = field(
        default_factory=dict["ResourceAddress", "ResourceBlock"]
    )

    def add_block(self, block: ResourceBlock) -> None:
        if block.address in self.blocks:
            raise ConfigurationError(f"Duplicate resource declaration: {block.address}")
        self.blocks[block.address] = block

    def block_for(self, address: ResourceAddress) -> ResourceBlock | None:
        return self.blocks.get(address.block)
