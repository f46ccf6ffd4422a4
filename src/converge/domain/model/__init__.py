"""Public domain model surface."""

from __future__ import annotations

from converge.domain.model.address import ResourceAddress
from converge.domain.model.expressions import (
    AttributePath,
    EachReference,
    Reference,
    Template,
    is_literal,
    iter_expressions,
    iter_references,
    parse_string,
    parse_value,
)
from converge.domain.model.resource import (
    Declaration,
    Lifecycle,
    ProviderSettings,
    ResourceBlock,
    ResourceInstance,
    ResourceSchema,
)
from converge.domain.model.state import StateRecord, lookup_path, state_id_for

__all__ = [
    "AttributePath",
    "Declaration",
    "EachReference",
    "Lifecycle",
    "ProviderSettings",
    "Reference",
    "ResourceAddress",
    "ResourceBlock",
    "ResourceInstance",
    "ResourceSchema",
    "StateRecord",
    "Template",
    "is_literal",
    "iter_expressions",
    "iter_references",
    "lookup_path",
    "parse_string",
    "parse_value",
    "state_id_for",
]
