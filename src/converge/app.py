"""Application orchestration entry points."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from logging import getLogger
from typing import TYPE_CHECKING

from converge.adapters.declaration import load_declaration
from converge.adapters.http import http_provider
from converge.adapters.memory import InMemoryCloud, memory_provider
from converge.adapters.sqlalchemy import SqlAlchemyStateStore
from converge.config import get_executor_config, get_state_config
from converge.domain.errors import ConfigurationError, UnresolvedReferenceError
from converge.domain.model import ResourceAddress
from converge.domain.ports import ProviderRegistry
from converge.domain.reconciliation import ReconciliationEngine

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from converge.domain.model import Declaration, StateRecord
    from converge.domain.ports import StateStore
    from converge.domain.reconciliation import RunReport

EngineHook = Callable[[ReconciliationEngine], None]

log = getLogger(__name__)


def build_provider_registry(
    declaration: Declaration, *, cloud: InMemoryCloud | None = None
) -> ProviderRegistry:
    """Register one adapter factory per declared provider alias."""

    registry = ProviderRegistry()
    shared_cloud = cloud if cloud is not None else InMemoryCloud()
    for alias, settings in declaration.providers.items():
        if settings.kind == "memory":
            registry.register_provider(alias, memory_provider(settings, cloud=shared_cloud))
        elif settings.kind == "http":
            registry.register_provider(alias, http_provider(settings))
        else:
            raise ConfigurationError(f"Provider {alias!r} has unknown type {settings.kind!r}")
        log.debug("Registered %s provider %s", settings.kind, alias)
    return registry


def open_state_store(state_uri: str | None = None) -> SqlAlchemyStateStore:
    uri = state_uri or get_state_config().uri
    log.debug("Opening state store at %s", uri)
    return SqlAlchemyStateStore.from_uri(uri)


def plan_changes(
    config_path: str | Path,
    *,
    state_uri: str | None = None,
    destroy: bool = False,
    refresh: bool = True,
    store: StateStore | None = None,
    providers: ProviderRegistry | None = None,
    engine_hook: EngineHook | None = None,
) -> RunReport:
    """Compute the plan for ``config_path`` against the current state."""

    declaration = load_declaration(config_path)
    with _engine_for(declaration, state_uri, store, providers, None, engine_hook) as engine:
        report = engine.plan(declaration, destroy=destroy, refresh=refresh)
    log.info("Plan ready: %d action(s)", len(report.plan.actions))
    return report


def apply_changes(
    config_path: str | Path,
    *,
    state_uri: str | None = None,
    parallelism: int | None = None,
    refresh: bool = True,
    store: StateStore | None = None,
    providers: ProviderRegistry | None = None,
    engine_hook: EngineHook | None = None,
) -> RunReport:
    """Plan and apply ``config_path``."""

    declaration = load_declaration(config_path)
    with _engine_for(declaration, state_uri, store, providers, parallelism, engine_hook) as engine:
        return engine.apply(declaration, refresh=refresh)


def destroy_all(
    config_path: str | Path,
    *,
    state_uri: str | None = None,
    parallelism: int | None = None,
    refresh: bool = True,
    store: StateStore | None = None,
    providers: ProviderRegistry | None = None,
    engine_hook: EngineHook | None = None,
) -> RunReport:
    """Destroy every resource recorded in state."""

    declaration = load_declaration(config_path)
    with _engine_for(declaration, state_uri, store, providers, parallelism, engine_hook) as engine:
        return engine.destroy(declaration, refresh=refresh)


def list_state(
    *, state_uri: str | None = None, store: StateStore | None = None
) -> list[StateRecord]:
    with _store_for(state_uri, store) as effective:
        records = effective.load()
    return sorted(
        records.values(), key=lambda record: (record.address.sort_key, record.deposed)
    )


def read_outputs(
    address: str | None = None,
    *,
    state_uri: str | None = None,
    store: StateStore | None = None,
) -> dict[str, dict[str, object]]:
    """Return outputs by address, optionally for a single address."""

    records = [
        record for record in list_state(state_uri=state_uri, store=store) if not record.deposed
    ]
    if address is None:
        return {str(record.address): dict(record.outputs) for record in records}

    wanted = ResourceAddress.parse(address)
    matching = {
        str(record.address): dict(record.outputs)
        for record in records
        if record.address == wanted or (wanted.key is None and record.address.block == wanted)
    }
    if not matching:
        raise UnresolvedReferenceError(f"No state recorded for {wanted}")
    return matching


def force_unlock(
    token: str, *, state_uri: str | None = None, store: StateStore | None = None
) -> None:
    with _store_for(state_uri, store) as effective:
        effective.force_unlock(token)
    log.warning("Removed state lock %s", token)


@contextmanager
def _engine_for(
    declaration: Declaration,
    state_uri: str | None,
    store: StateStore | None,
    providers: ProviderRegistry | None,
    parallelism: int | None,
    engine_hook: EngineHook | None,
) -> Iterator[ReconciliationEngine]:
    with _store_for(state_uri, store) as effective:
        engine = ReconciliationEngine(
            effective,
            providers if providers is not None else build_provider_registry(declaration),
            get_executor_config(parallelism=parallelism),
        )
        if engine_hook is not None:
            engine_hook(engine)
        yield engine


@contextmanager
def _store_for(state_uri: str | None, store: StateStore | None) -> Iterator[StateStore]:
    if store is not None:
        yield store
        return
    opened = open_state_store(state_uri)
    try:
        yield opened
    finally:
        opened.dispose()
