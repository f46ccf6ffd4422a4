"""Declaration file adapter (TOML/JSON -> domain declaration)."""

from __future__ import annotations

from .loader import load_declaration, parse_declaration
from .translator import DEFAULT_PROVIDER_ALIAS, default_provider_for, to_declaration

__all__ = [
    "DEFAULT_PROVIDER_ALIAS",
    "default_provider_for",
    "load_declaration",
    "parse_declaration",
    "to_declaration",
]
