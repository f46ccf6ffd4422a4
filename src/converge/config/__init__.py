"""Application configuration helpers."""

from __future__ import annotations

from converge.common.logging import configure_logging

from .env import env_int, require_env_vars
from .errors import ConfigurationError, MissingConfigurationError
from .executor import DEFAULT_PARALLELISM, ExecutorConfig, RetryPolicy, get_executor_config
from .http_resilience import RateLimit, ResilienceConfig
from .storage import StateConfig, StorageConfig, get_state_config, get_storage_config

__all__ = [
    "DEFAULT_PARALLELISM",
    "ConfigurationError",
    "ExecutorConfig",
    "MissingConfigurationError",
    "RateLimit",
    "ResilienceConfig",
    "RetryPolicy",
    "StateConfig",
    "StorageConfig",
    "configure_logging",
    "env_int",
    "get_executor_config",
    "get_state_config",
    "get_storage_config",
    "require_env_vars",
]
