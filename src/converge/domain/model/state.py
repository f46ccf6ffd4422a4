"""Persisted snapshot of a resource after its last successful apply."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from converge.domain.errors import UnresolvedReferenceError

if TYPE_CHECKING:
    from .address import ResourceAddress
    from .expressions import AttributePath


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True, kw_only=True)
class StateRecord:
    """Real-world attributes of one resource as of the last successful apply.

    ``attributes`` holds the resolved values that were sent to the provider,
    ``outputs`` the values the provider computed. A record is *deposed* while
    it describes the old half of a create-before-destroy replacement that has
    not been destroyed yet; deposed records live next to the record of the
    replacement under their own state id.
    """

    address: ResourceAddress
    provider: str
    external_id: str
    attributes: dict[str, object] = field(default_factory=dict["str", "object"])
    outputs: dict[str, object] = field(default_factory=dict["str", "object"])
    dependencies: tuple[ResourceAddress, ...] = ()
    create_before_destroy: bool = False
    deposed: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def resource_type(self) -> str:
        return self.address.resource_type

    @property
    def state_id(self) -> str:
        deposed_id = self.external_id if self.deposed else None
        return state_id_for(self.address, deposed_external_id=deposed_id)

    def value_of(self, attribute: str) -> object:
        """Return an output, falling back to the applied attribute of that name."""

        if attribute in self.outputs:
            return self.outputs[attribute]
        if attribute in self.attributes:
            return self.attributes[attribute]
        raise UnresolvedReferenceError(f"{self.address} has no attribute {attribute!r}")

    def lookup(self, path: AttributePath) -> object:
        head, *rest = path
        return lookup_path(self.value_of(str(head)), tuple(rest), owner=self.address)

    def as_deposed(self) -> StateRecord:
        return replace(self, deposed=True)


def state_id_for(address: ResourceAddress, *, deposed_external_id: str | None = None) -> str:
    if deposed_external_id is None:
        return str(address)
    return f"{address} (deposed {deposed_external_id})"


def lookup_path(value: object, path: AttributePath, *, owner: object) -> object:
    """Walk ``path`` through nested mappings and lists."""

    current = value
    for element in path:
        if isinstance(current, dict) and not isinstance(element, int):
            if element not in current:
                raise UnresolvedReferenceError(f"{owner} has no attribute path element {element!r}")
            current = current[element]
        elif isinstance(current, list) and isinstance(element, int):
            if element >= len(current):
                raise UnresolvedReferenceError(f"{owner}: index {element} out of range")
            current = current[element]
        else:
            raise UnresolvedReferenceError(
                f"{owner}: cannot select {element!r} from {type(current).__name__}"
            )
    return current
