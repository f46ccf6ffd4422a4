"""REST provider adapter."""

from __future__ import annotations

from .client import HttpResourceAdapter, http_provider, resilience_config_for
from .schema import ErrorResponse, ResourcePayload

__all__ = [
    "ErrorResponse",
    "HttpResourceAdapter",
    "ResourcePayload",
    "http_provider",
    "resilience_config_for",
]
