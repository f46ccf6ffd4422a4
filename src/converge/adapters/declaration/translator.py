"""Translate validated declaration payloads into domain declarations."""

from __future__ import annotations

from logging import getLogger
from typing import TYPE_CHECKING, Final

from converge.domain.errors import ConfigurationError, InvalidAttributeError
from converge.domain.model import (
    Declaration,
    Lifecycle,
    ProviderSettings,
    Reference,
    ResourceAddress,
    ResourceBlock,
    ResourceSchema,
    parse_string,
    parse_value,
)
from converge.domain.model.address import IDENTIFIER_RE

if TYPE_CHECKING:
    from converge.domain.model.resource import ForEachValue

    from .schema import DeclarationFileModel, ProviderModel, ResourceModel

log = getLogger(__name__)

DEFAULT_PROVIDER_ALIAS: Final[str] = "default"
_JSON_SCALARS: Final = (str, int, float, bool, type(None))


def to_declaration(payload: DeclarationFileModel) -> Declaration:
    providers = {
        alias: _provider_settings(alias, model) for alias, model in payload.provider.items()
    }
    if not providers:
        providers[DEFAULT_PROVIDER_ALIAS] = ProviderSettings(alias=DEFAULT_PROVIDER_ALIAS)

    declaration = Declaration(providers=providers)
    for resource_type, blocks in payload.resource.items():
        for name, model in blocks.items():
            declaration.add_block(_resource_block(resource_type, name, model, providers))
    log.debug(
        "Declaration has %d provider(s) and %d resource block(s)",
        len(declaration.providers),
        len(declaration.blocks),
    )
    return declaration


def _provider_settings(alias: str, model: ProviderModel) -> ProviderSettings:
    _require_identifier(alias, what="provider alias")
    return ProviderSettings(
        alias=alias,
        kind=model.kind,
        region=model.region,
        endpoint=model.endpoint,
        timeout_seconds=model.timeout_seconds,
        rate_limit_per_second=model.rate_limit,
        token_env=model.token_env,
        schemas={
            resource_type: ResourceSchema(
                force_new=frozenset(policy.force_new), immutable=frozenset(policy.immutable)
            )
            for resource_type, policy in model.schemas.items()
        },
    )


def _resource_block(
    resource_type: str,
    name: str,
    model: ResourceModel,
    providers: dict[str, ProviderSettings],
) -> ResourceBlock:
    _require_identifier(resource_type, what="resource type")
    _require_identifier(name, what="resource name")
    address = ResourceAddress(resource_type, name)

    provider = model.provider or default_provider_for(resource_type, providers)
    if provider not in providers:
        raise ConfigurationError(f"{address} uses undeclared provider {provider!r}")

    return ResourceBlock(
        address=address,
        provider=provider,
        attributes={
            key: parse_value(_require_json(address, key, value))
            for key, value in model.attributes().items()
        },
        lifecycle=Lifecycle(
            create_before_destroy=model.lifecycle.create_before_destroy,
            prevent_destroy=model.lifecycle.prevent_destroy,
            ignore_changes=frozenset(model.lifecycle.ignore_changes),
        ),
        depends_on=tuple(ResourceAddress.parse(item) for item in model.depends_on),
        for_each=_for_each(address, model.for_each),
    )


def default_provider_for(resource_type: str, providers: dict[str, ProviderSettings]) -> str:
    """Pick the provider of a resource that does not name one.

    The type prefix before the first ``_`` wins when such an alias exists
    (``aws_bucket`` -> ``aws``); otherwise a single declared provider is used.
    """

    prefix = resource_type.split("_", 1)[0]
    if prefix in providers:
        return prefix
    if len(providers) == 1:
        return next(iter(providers))
    raise ConfigurationError(
        f"Cannot choose a provider for resource type {resource_type!r}; "
        f"set provider to one of {', '.join(sorted(providers))}"
    )


def _for_each(address: ResourceAddress, raw: object) -> ForEachValue | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        parsed = parse_string(raw)
        if not isinstance(parsed, Reference):
            raise InvalidAttributeError(
                f"{address}: for_each must be a list, a mapping or a single reference"
            )
        return parsed
    if isinstance(raw, list):
        return list(raw)
    if isinstance(raw, dict):
        return {
            str(key): parse_value(_require_json(address, f"for_each.{key}", value))
            for key, value in raw.items()
        }
    raise InvalidAttributeError(f"{address}: unsupported for_each value {raw!r}")


def _require_json(address: ResourceAddress, name: str, value: object) -> object:
    """Reject values that cannot be recorded in state, such as TOML dates."""

    if isinstance(value, dict):
        for key, item in value.items():
            _require_json(address, f"{name}.{key}", item)
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _require_json(address, f"{name}[{index}]", item)
    elif not isinstance(value, _JSON_SCALARS):
        raise InvalidAttributeError(
            f"{address}: {name} has unsupported {type(value).__name__} value {value!r}; "
            "write dates and times as strings"
        )
    return value


def _require_identifier(value: str, *, what: str) -> None:
    if IDENTIFIER_RE.match(value) is None:
        raise ConfigurationError(f"Invalid {what}: {value!r}")
