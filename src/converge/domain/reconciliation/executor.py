"""Apply a plan through provider adapters.

Every action moves through ``pending -> in_flight -> succeeded | failed``; an
action whose dependency did not succeed becomes ``skipped`` and one that was
never started because the run was cancelled becomes ``cancelled``.

Independent actions run concurrently on the event loop, bounded by
``ExecutorConfig.parallelism``. A consumer starts only after each producer's
provider call returned *and* its state record was saved. The executor is the
only component that writes to the state store.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from logging import getLogger
from typing import TYPE_CHECKING, Final

from converge.config import ExecutorConfig
from converge.domain.errors import (
    ConfigurationError,
    ConvergeError,
    ExecutionError,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
    TerminalExecutionError,
    TransientExecutionError,
    UnresolvedReferenceError,
)
from converge.domain.model import StateRecord

from .plan import ChangeKind, Operation
from .resolve import resolve_attributes

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from converge.domain.model import Reference, ResourceAddress
    from converge.domain.ports import ProviderRegistry, ResourceAdapter, StateStore

    from .plan import Action, Plan, ResourceChange

log = getLogger(__name__)


class ActionStatus(StrEnum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


_BLOCKING: Final[frozenset[ActionStatus]] = frozenset(
    {ActionStatus.FAILED, ActionStatus.SKIPPED, ActionStatus.CANCELLED}
)


@dataclass(slots=True, kw_only=True)
class ActionOutcome:
    action: Action
    status: ActionStatus = ActionStatus.PENDING
    attempts: int = 0
    error: ConvergeError | None = None
    reason: str | None = None


@dataclass(slots=True)
class ApplyResult:
    """Per-action outcomes of one run."""

    outcomes: dict[str, ActionOutcome] = field(default_factory=dict["str", "ActionOutcome"])
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return all(outcome.status is ActionStatus.SUCCEEDED for outcome in self.outcomes.values())

    @property
    def failed(self) -> tuple[ActionOutcome, ...]:
        return self.with_status(ActionStatus.FAILED)

    @property
    def skipped(self) -> tuple[ActionOutcome, ...]:
        return self.with_status(ActionStatus.SKIPPED)

    def with_status(self, status: ActionStatus) -> tuple[ActionOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes.values() if outcome.status is status)

    def status_of(self, key: str) -> ActionStatus:
        return self.outcomes[key].status

    def summary(self) -> dict[ActionStatus, int]:
        counts = Counter(outcome.status for outcome in self.outcomes.values())
        return {status: counts.get(status, 0) for status in ActionStatus}


@dataclass(slots=True, kw_only=True)
class RefreshResult:
    """Records after reading them back from their providers."""

    records: dict[str, StateRecord]
    missing: tuple[str, ...] = ()
    changed: tuple[str, ...] = ()

    @property
    def drifted(self) -> bool:
        return bool(self.missing or self.changed)


@dataclass(slots=True)
class Executor:
    store: StateStore
    providers: ProviderRegistry
    config: ExecutorConfig = field(default_factory=ExecutorConfig)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)
    _cancelled: bool = field(default=False, init=False, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop scheduling new actions; in-flight actions still finish."""

        if not self._cancelled:
            log.warning("Cancellation requested, waiting for in-flight actions to finish")
        self._cancelled = True

    def __call__(self, plan: Plan, *, records: Mapping[str, StateRecord]) -> ApplyResult:
        return asyncio.run(self.execute(plan, records=records))

    async def execute(self, plan: Plan, *, records: Mapping[str, StateRecord]) -> ApplyResult:
        live = {record.address: record for record in records.values() if not record.deposed}
        result = ApplyResult(
            outcomes={action.key: ActionOutcome(action=action) for action in plan.actions}
        )
        running: dict[asyncio.Task[None], str] = {}
        pending = list(plan.actions)

        try:
            while pending or running:
                pending = self._schedule(plan, pending, result, running, live)
                if not running:
                    if pending:
                        stuck = ", ".join(action.key for action in pending)
                        raise RuntimeError(f"Actions can never start: {stuck}")
                    break
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)
                    task.result()
        except BaseException:
            self._cancelled = True
            if running:
                await asyncio.gather(*running, return_exceptions=True)
            raise

        result.cancelled = self._cancelled
        counts = result.summary()
        log.info(
            "Apply finished: %d succeeded, %d failed, %d skipped, %d cancelled",
            counts[ActionStatus.SUCCEEDED],
            counts[ActionStatus.FAILED],
            counts[ActionStatus.SKIPPED],
            counts[ActionStatus.CANCELLED],
        )
        return result

    def _schedule(
        self,
        plan: Plan,
        pending: list[Action],
        result: ApplyResult,
        running: dict[asyncio.Task[None], str],
        live: dict[ResourceAddress, StateRecord],
    ) -> list[Action]:
        still_pending: list[Action] = []
        for action in pending:
            outcome = result.outcomes[action.key]
            if self._cancelled:
                outcome.status = ActionStatus.CANCELLED
                outcome.reason = "run cancelled"
                continue
            blocked = [key for key in action.depends_on if result.status_of(key) in _BLOCKING]
            if blocked:
                outcome.status = ActionStatus.SKIPPED
                outcome.reason = f"{blocked[0]} {result.status_of(blocked[0])}"
                log.warning("Skipping %s: %s", action, outcome.reason)
                continue
            ready = all(
                result.status_of(key) is ActionStatus.SUCCEEDED for key in action.depends_on
            )
            if ready and len(running) < self.config.parallelism:
                outcome.status = ActionStatus.IN_FLIGHT
                change = plan.change_for_action(action)
                task = asyncio.create_task(self._run(action, change, outcome, live))
                running[task] = action.key
                continue
            still_pending.append(action)
        return still_pending

    async def _run(
        self,
        action: Action,
        change: ResourceChange,
        outcome: ActionOutcome,
        live: dict[ResourceAddress, StateRecord],
    ) -> None:
        log.info("%s: started", action)
        try:
            adapter = self.providers.adapter_for(change.provider, change.address.resource_type)
            if action.operation is Operation.CREATE:
                await self._create(adapter, change, outcome, live)
            elif action.operation is Operation.UPDATE:
                await self._update(adapter, action, change, outcome, live)
            else:
                await self._destroy(adapter, change, outcome, live)
        except ProviderError as exc:
            error_cls = TransientExecutionError if exc.transient else TerminalExecutionError
            outcome.error = error_cls(
                f"{action}: {exc}",
                address=change.address,
                action=action.key,
                attempts=outcome.attempts,
            )
            outcome.error.__cause__ = exc
        except ExecutionError as exc:
            exc.attempts = outcome.attempts
            outcome.error = exc
        except ConfigurationError as exc:
            outcome.error = TerminalExecutionError(
                f"{action}: {exc}", address=change.address, action=action.key
            )
            outcome.error.__cause__ = exc
        else:
            outcome.status = ActionStatus.SUCCEEDED
            log.info("%s: succeeded after %d attempt(s)", action, outcome.attempts)
            return
        outcome.status = ActionStatus.FAILED
        log.error("%s: failed: %s", action, outcome.error)

    async def _create(
        self,
        adapter: ResourceAdapter,
        change: ResourceChange,
        outcome: ActionOutcome,
        live: dict[ResourceAddress, StateRecord],
    ) -> None:
        attributes = self._resolve(change, live)
        external_id, outputs = await self._provider_call(
            lambda: adapter.create(attributes), outcome=outcome
        )
        record = StateRecord(
            address=change.address,
            provider=change.provider,
            external_id=external_id,
            attributes=attributes,
            outputs=outputs,
            dependencies=change.dependencies,
            create_before_destroy=change.create_before_destroy,
        )
        deposed = None
        if change.kind is ChangeKind.REPLACE and change.create_before_destroy:
            deposed = change.require_prior().as_deposed()
        self.store.save(record.state_id, record, deposed=deposed)
        live[change.address] = record

    async def _update(
        self,
        adapter: ResourceAdapter,
        action: Action,
        change: ResourceChange,
        outcome: ActionOutcome,
        live: dict[ResourceAddress, StateRecord],
    ) -> None:
        prior = live.get(change.address) or change.require_prior()
        attributes = self._resolve(change, live)
        for name in change.ignore_changes:
            if name in prior.attributes:
                attributes[name] = prior.attributes[name]
        if attributes == prior.attributes:
            log.info("%s: resolved attributes match state, nothing to send", action)
            return

        try:
            outputs = await self._provider_call(
                lambda: adapter.update(prior.external_id, attributes), outcome=outcome
            )
        except NotFoundError as exc:
            log.warning("%s: %s was deleted outside converge", action, change.address)
            self.store.remove(prior.state_id)
            live.pop(change.address, None)
            raise TerminalExecutionError(
                f"{change.address} no longer exists; it will be recreated by the next run",
                address=change.address,
                action=action.key,
            ) from exc

        record = replace(
            prior,
            attributes=attributes,
            outputs=outputs,
            dependencies=change.dependencies,
            create_before_destroy=change.create_before_destroy,
            updated_at=datetime.now(UTC),
        )
        self.store.save(record.state_id, record)
        live[change.address] = record

    async def _destroy(
        self,
        adapter: ResourceAdapter,
        change: ResourceChange,
        outcome: ActionOutcome,
        live: dict[ResourceAddress, StateRecord],
    ) -> None:
        prior = change.require_prior()
        try:
            await self._provider_call(lambda: adapter.destroy(prior.external_id), outcome=outcome)
        except NotFoundError:
            log.info("%s (%s) was already gone", change.address, prior.external_id)

        if change.deposed or (change.kind is ChangeKind.REPLACE and change.create_before_destroy):
            self.store.remove(prior.as_deposed().state_id)
            return
        self.store.remove(prior.state_id)
        current = live.get(change.address)
        if current is not None and current.external_id == prior.external_id:
            live.pop(change.address)

    def _resolve(
        self, change: ResourceChange, live: Mapping[ResourceAddress, StateRecord]
    ) -> dict[str, object]:
        def lookup(reference: Reference) -> object:
            if reference.target in change.dependencies:
                return _committed(reference.target, live).lookup(reference.path)
            instances = sorted(
                (
                    dependency
                    for dependency in change.dependencies
                    if dependency.block == reference.target and dependency.key is not None
                ),
                key=lambda item: item.sort_key,
            )
            return {
                str(address.key): _committed(address, live).lookup(reference.path)
                for address in instances
            }

        return resolve_attributes(change.config or {}, lookup)

    async def _provider_call[T](
        self,
        call: Callable[[], Awaitable[T]],
        *,
        outcome: ActionOutcome | None = None,
        label: str | None = None,
    ) -> T:
        attempt = 0
        retry = self.config.retry
        name = label or (str(outcome.action) if outcome is not None else "provider call")
        while True:
            attempt += 1
            if outcome is not None:
                outcome.attempts = attempt
            try:
                return await self._with_timeout(call())
            except ProviderError as exc:
                if not exc.transient or attempt >= retry.total:
                    raise
                delay = retry.delay(attempt, retry_after=exc.retry_after)
                log.warning(
                    "%s: %s (attempt %d/%d), retrying in %.1fs",
                    name,
                    exc,
                    attempt,
                    retry.total,
                    delay,
                )
                await self.sleep(delay)

    async def _with_timeout[T](self, call: Awaitable[T]) -> T:
        timeout = self.config.call_timeout_seconds
        if timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout)
        except TimeoutError as exc:
            raise ProviderTimeoutError(f"no response within {timeout:.1f}s") from exc

    def refresh(self, records: Mapping[str, StateRecord]) -> RefreshResult:
        return asyncio.run(self.refresh_async(records))

    async def refresh_async(self, records: Mapping[str, StateRecord]) -> RefreshResult:
        """Read every live record back from its provider to detect drift."""

        refreshed = dict(records)
        missing: list[str] = []
        changed: list[str] = []
        semaphore = asyncio.Semaphore(self.config.parallelism)

        async def read_one(state_id: str, record: StateRecord) -> None:
            async with semaphore:
                adapter = self.providers.adapter_for(record.provider, record.resource_type)
                try:
                    outputs = await self._provider_call(
                        lambda: adapter.read(record.external_id), label=f"read:{state_id}"
                    )
                except NotFoundError:
                    log.warning("%s was deleted outside converge", state_id)
                    refreshed.pop(state_id, None)
                    missing.append(state_id)
                    return
            if outputs != record.outputs:
                log.info("%s: outputs changed outside converge", state_id)
                refreshed[state_id] = replace(record, outputs=outputs)
                changed.append(state_id)

        await asyncio.gather(
            *(
                read_one(state_id, record)
                for state_id, record in records.items()
                if not record.deposed
            )
        )
        return RefreshResult(
            records=refreshed, missing=tuple(sorted(missing)), changed=tuple(sorted(changed))
        )

    def commit_refresh(self, refresh: RefreshResult) -> None:
        """Persist what a refresh found out."""

        for state_id in refresh.missing:
            self.store.remove(state_id)
        for state_id in refresh.changed:
            self.store.save(state_id, refresh.records[state_id])


def _committed(
    address: ResourceAddress, live: Mapping[ResourceAddress, StateRecord]
) -> StateRecord:
    record = live.get(address)
    if record is None:
        raise UnresolvedReferenceError(f"{address} has not been applied")
    return record
