"""Logical resource addresses.

An address identifies one declared resource instance: ``type.name`` for plain
resources and ``type.name["key"]`` for instances generated by ``for_each``.
Addresses never depend on list positions, so adding or removing one
``for_each`` key leaves the addresses of its siblings untouched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from converge.domain.errors import InvalidAttributeError

_IDENTIFIER: Final[str] = r"[A-Za-z_][A-Za-z0-9_-]*"
_ADDRESS_RE: Final[re.Pattern[str]] = re.compile(
    rf'^(?P<type>{_IDENTIFIER})\.(?P<name>{_IDENTIFIER})(?:\["(?P<key>[^"]*)"\])?$'
)
IDENTIFIER_RE: Final[re.Pattern[str]] = re.compile(rf"^{_IDENTIFIER}$")


@dataclass(frozen=True, slots=True)
class ResourceAddress:
    resource_type: str
    name: str
    key: str | None = None

    def __str__(self) -> str:
        base = f"{self.resource_type}.{self.name}"
        if self.key is None:
            return base
        return f'{base}["{self.key}"]'

    @classmethod
    def parse(cls, text: str) -> ResourceAddress:
        match = _ADDRESS_RE.match(text.strip())
        if match is None:
            raise InvalidAttributeError(f"Invalid resource address: {text!r}")
        return cls(match["type"], match["name"], match["key"])

    @property
    def block(self) -> ResourceAddress:
        """Address of the declaration block this instance was expanded from."""

        if self.key is None:
            return self
        return ResourceAddress(self.resource_type, self.name)

    @property
    def is_instance(self) -> bool:
        return self.key is not None

    @property
    def sort_key(self) -> tuple[str, str, str]:
        return (self.resource_type, self.name, self.key or "")

    def instance(self, key: str) -> ResourceAddress:
        return ResourceAddress(self.resource_type, self.name, key)
