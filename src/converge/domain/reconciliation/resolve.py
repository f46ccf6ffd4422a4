"""Resolution of references inside attribute values."""

from __future__ import annotations

from typing import TYPE_CHECKING, Final, final

from converge.domain.errors import InvalidAttributeError
from converge.domain.model import EachReference, Reference, Template

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping


@final
class _Unknown:
    """Placeholder for a value that is only known after apply."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self) -> str:
        return "UNKNOWN"


UNKNOWN: Final = _Unknown()

type ReferenceLookup = Callable[[Reference], object]


def resolve_value(value: object, lookup: ReferenceLookup) -> object:
    """Replace every reference in ``value`` using ``lookup``.

    ``lookup`` returns ``UNKNOWN`` for values that cannot be known yet; a
    template with any unknown part is unknown as a whole.
    """

    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, EachReference):
        raise InvalidAttributeError(f"{value} used outside a for_each block")
    if isinstance(value, Template):
        rendered: list[str] = []
        for part in value.parts:
            if isinstance(part, str):
                rendered.append(part)
                continue
            resolved = resolve_value(part, lookup)
            if resolved is UNKNOWN:
                return UNKNOWN
            rendered.append(_render(resolved))
        return "".join(rendered)
    if isinstance(value, dict):
        return {name: resolve_value(item, lookup) for name, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, lookup) for item in value]
    return value


def resolve_attributes(
    attributes: Mapping[str, object], lookup: ReferenceLookup
) -> dict[str, object]:
    return {name: resolve_value(value, lookup) for name, value in attributes.items()}


def contains_unknown(value: object) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    return False


def _render(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)
