"""Orchestrate one reconciliation run."""

from __future__ import annotations

import asyncio
import os
import socket
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING

from converge.config import ExecutorConfig

from .executor import Executor
from .graph import build_graph
from .planner import Planner

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from converge.domain.model import Declaration, StateRecord
    from converge.domain.ports import ProviderRegistry, StateStore

    from .executor import ApplyResult, RefreshResult
    from .graph import ResourceGraph
    from .plan import Plan

log = getLogger(__name__)


def default_owner() -> str:
    user = os.environ.get("USER") or os.environ.get("USERNAME") or "converge"
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


@dataclass(slots=True, kw_only=True)
class RunReport:
    """What a run planned and, for apply runs, how execution went."""

    plan: Plan
    refresh: RefreshResult | None = None
    result: ApplyResult | None = None

    @property
    def succeeded(self) -> bool:
        return self.result is None or self.result.succeeded


@dataclass(slots=True)
class ReconciliationEngine:
    """Run graph building, refresh, planning and execution for a declaration.

    Everything after graph building happens while holding the state lock, so
    two runs never plan against the same state concurrently.
    """

    store: StateStore
    providers: ProviderRegistry
    config: ExecutorConfig = field(default_factory=ExecutorConfig)
    owner: str = field(default_factory=default_owner)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)
    planner: Planner = field(init=False)
    executor: Executor = field(init=False)

    def __post_init__(self) -> None:
        self.planner = Planner(schema_for=self.providers.schema_for)
        self.executor = Executor(self.store, self.providers, self.config, sleep=self.sleep)

    def plan(
        self, declaration: Declaration, *, destroy: bool = False, refresh: bool = True
    ) -> RunReport:
        """Compute a plan without touching providers' objects or state."""

        return self._run(declaration, destroy=destroy, refresh=refresh, execute=False)

    def apply(self, declaration: Declaration, *, refresh: bool = True) -> RunReport:
        return self._run(declaration, destroy=False, refresh=refresh, execute=True)

    def destroy(self, declaration: Declaration, *, refresh: bool = True) -> RunReport:
        return self._run(declaration, destroy=True, refresh=refresh, execute=True)

    def cancel(self) -> None:
        self.executor.cancel()

    def _run(
        self, declaration: Declaration, *, destroy: bool, refresh: bool, execute: bool
    ) -> RunReport:
        graph = build_graph(declaration)
        log.info("Declaration contains %d resource instance(s)", len(graph))
        with self.store.lock(self.owner):
            records = self.store.load()
            log.info("Loaded %d state record(s)", len(records))
            return asyncio.run(
                self._reconcile(
                    graph, records, destroy=destroy, refresh=refresh, execute=execute
                )
            )

    async def _reconcile(
        self,
        graph: ResourceGraph,
        records: dict[str, StateRecord],
        *,
        destroy: bool,
        refresh: bool,
        execute: bool,
    ) -> RunReport:
        refreshed: RefreshResult | None = None
        if refresh and records:
            refreshed = await self.executor.refresh_async(records)
            records = refreshed.records
            if refreshed.drifted:
                log.warning(
                    "Refresh found %d missing and %d changed object(s)",
                    len(refreshed.missing),
                    len(refreshed.changed),
                )
            if execute:
                self.executor.commit_refresh(refreshed)

        plan = self.planner(graph, records, destroy=destroy)
        report = RunReport(plan=plan, refresh=refreshed)
        if not execute:
            return report
        if not plan.has_changes:
            log.info("No changes, infrastructure matches the declaration")
            return report
        report.result = await self.executor.execute(plan, records=records)
        return report
