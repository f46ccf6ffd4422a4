"""Error taxonomy for the reconciliation core.

Errors fall into four families that fail at different points of a run:

- ``ConfigurationError``: the declaration itself is broken; raised before any
  provider is contacted.
- ``PlanningError``: declaration and state cannot be reconciled; raised before
  execution starts.
- ``ExecutionError``: one action failed while talking to a provider.
- ``StateStoreError``: the state backend is locked or corrupt; fatal.

Provider adapters raise ``ProviderError`` subclasses. The executor turns them
into ``ExecutionError``s after applying the retry policy.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ConvergeError(Exception):
    """Base class for all errors raised by converge."""


class ConfigurationError(ConvergeError):
    """Raised when the declared configuration is invalid."""


class CycleError(ConfigurationError):
    """Raised when resource references form a cycle."""

    def __init__(self, cycle: Sequence[object]) -> None:
        self.cycle = tuple(cycle)
        path = " -> ".join(str(node) for node in self.cycle)
        super().__init__(f"Reference cycle detected: {path}")


class UnresolvedReferenceError(ConfigurationError):
    """Raised when a reference points at something that does not exist."""


class InvalidAttributeError(ConfigurationError):
    """Raised when an attribute value or expression cannot be interpreted."""


class PlanningError(ConvergeError):
    """Raised when declared configuration and state cannot be reconciled."""

    def __init__(self, message: str, *, address: object | None = None) -> None:
        super().__init__(message)
        self.address = address


class StateStoreError(ConvergeError):
    """Raised when the state backend cannot be used safely."""


class StateLockError(StateStoreError):
    """Raised when the run lock is held by another run."""

    def __init__(self, message: str, *, token: str | None = None, owner: str | None = None) -> None:
        super().__init__(message)
        self.token = token
        self.owner = owner


class StateCorruptError(StateStoreError):
    """Raised when a persisted state record cannot be decoded."""


class ExecutionError(ConvergeError):
    """Raised when an action could not be applied."""

    transient = False

    def __init__(
        self,
        message: str,
        *,
        address: object | None = None,
        action: str | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.address = address
        self.action = action
        self.attempts = attempts


class TransientExecutionError(ExecutionError):
    """An action kept failing with retryable errors until the retry budget ran out."""

    transient = True


class TerminalExecutionError(ExecutionError):
    """An action failed with an error that retrying cannot fix."""


class ProviderError(ConvergeError):
    """Typed failure returned by a provider adapter."""

    transient = False

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class NotFoundError(ProviderError):
    """The external object does not exist (any more)."""


class RateLimitedError(ProviderError):
    """The provider throttled the request."""

    transient = True


class ProviderTimeoutError(ProviderError):
    """The provider did not answer in time."""

    transient = True


class PermissionDeniedError(ProviderError):
    """The credentials in use are not allowed to perform the call."""


class InvalidRequestError(ProviderError):
    """The provider rejected the attributes sent to it."""


class UnknownProviderError(ProviderError):
    """Any provider failure that does not fit a more specific category."""
