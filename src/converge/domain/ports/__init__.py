"""Ports implemented by adapters (state backends and resource providers)."""

from __future__ import annotations

from .providers import AdapterFactory, ProviderRegistry, ResourceAdapter
from .state import RunLock, StateStore

__all__ = [
    "AdapterFactory",
    "ProviderRegistry",
    "ResourceAdapter",
    "RunLock",
    "StateStore",
]
