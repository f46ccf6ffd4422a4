"""Provider adapter contract and the registry that dispatches to adapters.

Adapters are looked up by (provider alias, resource type). An adapter only
has to satisfy the ``ResourceAdapter`` protocol; there is no base class.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from converge.domain.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from converge.domain.model import ResourceSchema

log = getLogger(__name__)


@runtime_checkable
class ResourceAdapter(Protocol):
    """Create/read/update/destroy for one resource type.

    ``read`` and ``update`` raise ``NotFoundError`` when the object is gone.
    ``destroy`` must treat an already missing object as success.
    """

    @property
    def schema(self) -> ResourceSchema: ...

    async def create(self, attributes: Mapping[str, object]) -> tuple[str, dict[str, object]]: ...

    async def read(self, external_id: str) -> dict[str, object]: ...

    async def update(
        self, external_id: str, attributes: Mapping[str, object]
    ) -> dict[str, object]: ...

    async def destroy(self, external_id: str) -> None: ...


type AdapterFactory = Callable[[str], ResourceAdapter]


@dataclass(slots=True)
class ProviderRegistry:
    """Resolve adapters by provider alias and resource type tag."""

    _adapters: dict[tuple[str, str], ResourceAdapter] = field(
        default_factory=dict[tuple[str, str], "ResourceAdapter"], repr=False
    )
    _factories: dict[str, AdapterFactory] = field(
        default_factory=dict[str, "AdapterFactory"], repr=False
    )

    def register(self, alias: str, resource_type: str, adapter: ResourceAdapter) -> None:
        self._adapters[(alias, resource_type)] = adapter

    def register_provider(self, alias: str, factory: AdapterFactory) -> None:
        """Register a fallback that builds adapters for any type under ``alias``."""

        self._factories[alias] = factory

    def adapter_for(self, alias: str, resource_type: str) -> ResourceAdapter:
        key = (alias, resource_type)
        adapter = self._adapters.get(key)
        if adapter is not None:
            return adapter
        factory = self._factories.get(alias)
        if factory is None:
            raise ConfigurationError(
                f"No adapter for resource type {resource_type!r} under provider {alias!r}"
            )
        log.debug("Building adapter for %s via provider %s", resource_type, alias)
        adapter = factory(resource_type)
        self._adapters[key] = adapter
        return adapter

    def schema_for(self, alias: str, resource_type: str) -> ResourceSchema:
        return self.adapter_for(alias, resource_type).schema
