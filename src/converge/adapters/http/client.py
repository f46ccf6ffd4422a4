"""Generic REST adapter: one collection per resource type.

``POST {endpoint}/{type}`` creates an object and returns it with its ``id``;
``GET``, ``PUT`` and ``DELETE`` on ``{endpoint}/{type}/{id}`` read, update and
delete it. The provider's ``region`` travels as a query parameter.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from logging import getLogger
from typing import TYPE_CHECKING, Final

import httpx
from pydantic import ValidationError

from converge.adapters.http_resilience import ResilientClient, build_limiter
from converge.config import RateLimit, ResilienceConfig, require_env_vars
from converge.domain.errors import (
    ConfigurationError,
    InvalidRequestError,
    NotFoundError,
    PermissionDeniedError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    UnknownProviderError,
)

from .schema import ErrorResponse, ResourcePayload

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from aiolimiter import AsyncLimiter

    from converge.domain.model import ProviderSettings, ResourceSchema
    from converge.domain.ports import AdapterFactory

log = getLogger(__name__)

_INVALID_STATUSES: Final[frozenset[int]] = frozenset({400, 409, 422})
_PERMISSION_STATUSES: Final[frozenset[int]] = frozenset({401, 403})


def resilience_config_for(settings: ProviderSettings) -> ResilienceConfig:
    """Translate provider settings into client configuration."""

    if not settings.endpoint:
        raise ConfigurationError(f"Provider {settings.alias!r} of type http needs an endpoint")
    ratelimit = None
    if settings.rate_limit_per_second:
        max_calls = max(1, round(settings.rate_limit_per_second))
        ratelimit = RateLimit(
            max_calls=max_calls, per_seconds=max_calls / settings.rate_limit_per_second
        )
    headers = {"Accept": "application/json"}
    token = _token_for(settings)
    if token is not None:
        headers["Authorization"] = f"Bearer {token}"
    return ResilienceConfig(
        name=settings.alias,
        base_url=settings.endpoint.rstrip("/"),
        timeout_seconds=settings.timeout_seconds,
        ratelimit=ratelimit,
        default_headers=headers,
    )


def _token_for(settings: ProviderSettings) -> str | None:
    if settings.token_env:
        return require_env_vars([settings.token_env])[settings.token_env]
    fallback = f"CONVERGE_{settings.alias.upper().replace('-', '_')}_TOKEN"
    value = os.getenv(fallback)
    return value.strip() if value and value.strip() else None


def _default_client_factory(
    config: ResilienceConfig, limiter: AsyncLimiter | None
) -> ResilientClient:
    return ResilientClient(config, limiter=limiter)


@dataclass(slots=True)
class HttpResourceAdapter:
    resource_type: str
    settings: ProviderSettings
    resilience: ResilienceConfig
    limiter: AsyncLimiter | None = None
    client_factory: Callable[[ResilienceConfig, AsyncLimiter | None], ResilientClient] = field(
        default=_default_client_factory
    )

    @property
    def schema(self) -> ResourceSchema:
        return self.settings.schema_for(self.resource_type)

    async def create(self, attributes: Mapping[str, object]) -> tuple[str, dict[str, object]]:
        payload = await self._request(
            "POST", f"/{self.resource_type}", json=dict(attributes), operation="create"
        )
        return payload.id, payload.outputs()

    async def read(self, external_id: str) -> dict[str, object]:
        payload = await self._request("GET", self._object_path(external_id), operation="read")
        return payload.outputs()

    async def update(
        self, external_id: str, attributes: Mapping[str, object]
    ) -> dict[str, object]:
        payload = await self._request(
            "PUT", self._object_path(external_id), json=dict(attributes), operation="update"
        )
        return payload.outputs()

    async def destroy(self, external_id: str) -> None:
        try:
            await self._send("DELETE", self._object_path(external_id), operation="destroy")
        except NotFoundError:
            log.debug("%s/%s was already deleted", self.resource_type, external_id)

    def _object_path(self, external_id: str) -> str:
        return f"/{self.resource_type}/{external_id}"

    def _params(self) -> dict[str, str]:
        return {"region": self.settings.region} if self.settings.region else {}

    async def _request(
        self, method: str, path: str, *, operation: str, json: object = None
    ) -> ResourcePayload:
        response = await self._send(method, path, operation=operation, json=json)
        try:
            return ResourcePayload.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise UnknownProviderError(
                f"{operation} {self.resource_type}: unexpected response payload: {exc}"
            ) from exc

    async def _send(
        self, method: str, path: str, *, operation: str, json: object = None
    ) -> httpx.Response:
        async with self.client_factory(self.resilience, self.limiter) as client:
            try:
                if json is None:
                    response = await client.request(method, path, params=self._params())
                else:
                    response = await client.request(
                        method, path, params=self._params(), json=json
                    )
            except httpx.TimeoutException as exc:
                raise ProviderTimeoutError(
                    f"{operation} {self.resource_type} timed out: {exc}"
                ) from exc
            except httpx.HTTPError as exc:
                raise UnknownProviderError(
                    f"{operation} {self.resource_type} failed: {exc}"
                ) from exc

        _raise_for_status(response, operation=f"{operation} {self.resource_type}")
        return response


def _raise_for_status(response: httpx.Response, *, operation: str) -> None:
    status = response.status_code
    if status < 400:  # noqa: PLR2004
        return
    detail = _error_detail(response)
    message = f"{operation}: HTTP {status}" + (f" ({detail})" if detail else "")
    error: ProviderError
    if status == 404:  # noqa: PLR2004
        error = NotFoundError(message)
    elif status == 429:  # noqa: PLR2004
        error = RateLimitedError(message, retry_after=_retry_after(response))
    elif status in _PERMISSION_STATUSES:
        error = PermissionDeniedError(message)
    elif status in _INVALID_STATUSES:
        error = InvalidRequestError(message)
    else:
        error = UnknownProviderError(message)
    log.debug("Provider answered %s", message)
    raise error


def _error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or None
    if not isinstance(payload, dict):
        return None
    try:
        return ErrorResponse.model_validate(payload).describe()
    except ValidationError:
        return None


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return max(0.0, (moment - datetime.now(UTC)).total_seconds())


def http_provider(settings: ProviderSettings) -> AdapterFactory:
    """Adapter factory for every resource type under one http provider alias."""

    resilience = resilience_config_for(settings)
    limiter = build_limiter(resilience)

    def factory(resource_type: str) -> HttpResourceAdapter:
        return HttpResourceAdapter(
            resource_type=resource_type,
            settings=settings,
            resilience=resilience,
            limiter=limiter,
        )

    return factory
