from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from converge.adapters.memory import InMemoryStateStore
from converge.config import ExecutorConfig
from converge.domain.errors import (
    InvalidRequestError,
    PermissionDeniedError,
    ProviderTimeoutError,
    RateLimitedError,
    TerminalExecutionError,
    TransientExecutionError,
)
from converge.domain.model import ResourceAddress, ResourceSchema
from converge.domain.ports import ProviderRegistry
from converge.domain.reconciliation import ActionStatus, Executor, Planner
from tests.helpers.resources import NO_WAIT_RETRY, declare, graph_of, make_harness, make_record

if TYPE_CHECKING:
    from collections.abc import Mapping


@dataclass(slots=True)
class _SlowAdapter:
    """Adapter whose calls take a while, to observe concurrency."""

    delay: float = 0.01
    in_flight: int = 0
    peak: int = 0
    created: list[str] = field(default_factory=list)

    @property
    def schema(self) -> ResourceSchema:
        return ResourceSchema()

    async def create(self, attributes: Mapping[str, object]) -> tuple[str, dict[str, object]]:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        external_id = f"slow-{len(self.created) + 1}"
        self.created.append(external_id)
        return external_id, {"id": external_id}

    async def read(self, external_id: str) -> dict[str, object]:
        return {"id": external_id}

    async def update(
        self, external_id: str, attributes: Mapping[str, object]
    ) -> dict[str, object]:
        return {"id": external_id}

    async def destroy(self, external_id: str) -> None:
        return None


def _slow_executor(adapter: _SlowAdapter, config: ExecutorConfig) -> Executor:
    registry = ProviderRegistry()
    registry.register("default", "slow", adapter)
    return Executor(InMemoryStateStore(), registry, config)


def test_failed_producer_skips_consumers_but_not_independent_branches() -> None:
    harness = make_harness()
    harness.cloud.fail("create", InvalidRequestError("bad name"), resource_type="bucket")
    declaration = declare(
        {
            "bucket": {"a": {"name": "a"}},
            "cdn": {"b": {"origin": "${bucket.a.id}"}},
            "dns_record": {"c": {"target": "${cdn.b.hostname}"}},
            "disk": {"d": {"size": 1}},
        }
    )

    report = harness.engine.apply(declaration)

    result = report.result
    assert result is not None
    assert not report.succeeded
    assert result.status_of("create:bucket.a") is ActionStatus.FAILED
    assert result.status_of("create:cdn.b") is ActionStatus.SKIPPED
    assert result.outcomes["create:cdn.b"].reason == "create:bucket.a failed"
    assert result.status_of("create:dns_record.c") is ActionStatus.SKIPPED
    assert result.outcomes["create:dns_record.c"].reason == "create:cdn.b skipped"
    assert result.status_of("create:disk.d") is ActionStatus.SUCCEEDED
    assert set(harness.store.load()) == {"disk.d"}

    error = result.outcomes["create:bucket.a"].error
    assert isinstance(error, TerminalExecutionError)
    assert isinstance(error.__cause__, InvalidRequestError)
    assert error.attempts == 1


def test_transient_errors_are_retried_until_success() -> None:
    waits: list[float] = []

    async def record_sleep(seconds: float) -> None:
        waits.append(seconds)

    harness = make_harness(sleep=record_sleep)
    harness.cloud.fail("create", RateLimitedError("slow down", retry_after=0.0), times=2)

    report = harness.engine.apply(declare({"bucket": {"site": {}}}))

    assert report.succeeded
    assert report.result is not None
    assert report.result.outcomes["create:bucket.site"].attempts == 3
    assert waits == [0.0, 0.0]
    assert len(harness.cloud.calls_for("create")) == 3


def test_transient_errors_fail_once_the_retry_budget_is_spent() -> None:
    waits: list[float] = []

    async def record_sleep(seconds: float) -> None:
        waits.append(seconds)

    harness = make_harness(sleep=record_sleep)
    harness.cloud.fail("create", RateLimitedError("slow down"), times=None)

    report = harness.engine.apply(declare({"bucket": {"site": {}}}))

    assert report.result is not None
    outcome = report.result.outcomes["create:bucket.site"]
    assert outcome.status is ActionStatus.FAILED
    assert isinstance(outcome.error, TransientExecutionError)
    assert outcome.error.attempts == NO_WAIT_RETRY.total
    assert len(waits) == NO_WAIT_RETRY.total - 1
    assert harness.store.load() == {}


def test_terminal_errors_are_not_retried() -> None:
    harness = make_harness()
    harness.cloud.fail("create", PermissionDeniedError("denied"))

    report = harness.engine.apply(declare({"bucket": {"site": {}}}))

    assert report.result is not None
    outcome = report.result.outcomes["create:bucket.site"]
    assert outcome.status is ActionStatus.FAILED
    assert outcome.attempts == 1
    assert len(harness.cloud.calls_for("create")) == 1


def test_consumer_receives_the_producers_committed_outputs() -> None:
    harness = make_harness()
    declaration = declare(
        {
            "bucket": {"a": {"name": "a"}},
            "cdn": {"b": {"origin": "https://${bucket.a.id}/"}},
        }
    )

    report = harness.engine.apply(declaration)

    assert report.succeeded
    creates = harness.cloud.calls_for("create")
    assert [call.resource_type for call in creates] == ["bucket", "cdn"]
    assert creates[1].attributes == {"origin": "https://bucket-1/"}
    record = harness.store.load()["cdn.b"]
    assert record.attributes == {"origin": "https://bucket-1/"}
    assert record.dependencies == (ResourceAddress("bucket", "a"),)


def test_whole_block_reference_resolves_to_a_mapping_by_key() -> None:
    harness = make_harness()
    declaration = declare(
        {
            "bucket": {"logs": {"for_each": ["a", "b"]}},
            "policy": {"all": {"buckets": "${bucket.logs.id}"}},
        }
    )

    report = harness.engine.apply(declaration)

    assert report.succeeded
    buckets = harness.store.load()["policy.all"].attributes["buckets"]
    assert isinstance(buckets, dict)
    assert sorted(buckets) == ["a", "b"]
    assert sorted(buckets.values()) == ["bucket-1", "bucket-2"]


def test_cancel_lets_in_flight_actions_finish_and_stops_the_rest() -> None:
    harness = make_harness(parallelism=1)

    def cancel_on_first_create(
        _resource_type: str, _external_id: str, _attributes: Mapping[str, object]
    ) -> dict[str, object]:
        harness.engine.cancel()
        return {}

    harness.cloud.outputs_hook = cancel_on_first_create
    declaration = declare({"bucket": {"a": {}, "b": {}, "c": {}}})

    report = harness.engine.apply(declaration)

    result = report.result
    assert result is not None
    assert result.cancelled
    assert result.status_of("create:bucket.a") is ActionStatus.SUCCEEDED
    assert result.status_of("create:bucket.b") is ActionStatus.CANCELLED
    assert result.status_of("create:bucket.c") is ActionStatus.CANCELLED
    assert set(harness.store.load()) == {"bucket.a"}


def test_update_of_vanished_object_drops_the_record() -> None:
    store = InMemoryStateStore()
    store.save("disk.data", make_record("disk.data", attributes={"size": 10}))
    harness = make_harness(store=store)
    declaration = declare({"disk": {"data": {"size": 20}}})

    report = harness.engine.apply(declaration, refresh=False)

    assert report.result is not None
    outcome = report.result.outcomes["update:disk.data"]
    assert outcome.status is ActionStatus.FAILED
    assert "no longer exists" in str(outcome.error)
    assert store.load() == {}

    second = harness.engine.apply(declaration, refresh=False)

    assert second.succeeded
    assert [action.key for action in second.plan.actions] == ["create:disk.data"]


def test_destroy_of_missing_object_counts_as_success() -> None:
    store = InMemoryStateStore()
    store.save("bucket.old", make_record("bucket.old"))
    harness = make_harness(store=store)

    report = harness.engine.apply(declare({}), refresh=False)

    assert report.succeeded
    assert report.result is not None
    assert report.result.status_of("destroy:bucket.old") is ActionStatus.SUCCEEDED
    assert store.load() == {}


def test_create_before_destroy_keeps_a_deposed_record_until_the_old_object_is_gone() -> None:
    declaration = declare(
        {"bucket": {"site": {"region": "eu", "lifecycle": {"create_before_destroy": True}}}},
        providers={"default": {"schemas": {"bucket": {"force_new": ["region"]}}}},
    )
    store = InMemoryStateStore()
    store.save("bucket.site", make_record("bucket.site", attributes={"region": "us"}))
    store.writes.clear()
    harness = make_harness(store=store, declaration=declaration)
    harness.cloud.objects["bucket"]["bucket-site"] = {
        "attributes": {"region": "us"},
        "outputs": {"id": "bucket-site"},
    }

    report = harness.engine.apply(declaration)

    assert report.succeeded
    assert store.writes == [
        ("save", "bucket.site"),
        ("save", "bucket.site (deposed bucket-site)"),
        ("remove", "bucket.site (deposed bucket-site)"),
    ]
    assert store.load()["bucket.site"].external_id == "bucket-1"
    assert harness.cloud.ids("bucket") == ["bucket-1"]


def test_interrupted_replacement_is_finished_by_the_next_run() -> None:
    declaration = declare(
        {"bucket": {"site": {"region": "eu", "lifecycle": {"create_before_destroy": True}}}},
        providers={"default": {"schemas": {"bucket": {"force_new": ["region"]}}}},
    )
    store = InMemoryStateStore()
    store.save("bucket.site", make_record("bucket.site", attributes={"region": "us"}))
    harness = make_harness(store=store, declaration=declaration)
    harness.cloud.objects["bucket"]["bucket-site"] = {
        "attributes": {"region": "us"},
        "outputs": {"id": "bucket-site"},
    }
    harness.cloud.fail("destroy", PermissionDeniedError("denied"))

    first = harness.engine.apply(declaration)

    assert not first.succeeded
    assert set(store.load()) == {"bucket.site", "bucket.site (deposed bucket-site)"}

    second = harness.engine.apply(declaration)

    assert second.succeeded
    assert [action.key for action in second.plan.actions] == [
        "destroy:bucket.site (deposed bucket-site)"
    ]
    assert set(store.load()) == {"bucket.site"}
    assert harness.cloud.ids("bucket") == ["bucket-1"]


def test_parallelism_bounds_concurrent_provider_calls() -> None:
    adapter = _SlowAdapter()
    executor = _slow_executor(adapter, ExecutorConfig(parallelism=2, retry=NO_WAIT_RETRY))
    graph = graph_of({"slow": {name: {} for name in ("a", "b", "c", "d", "e")}})
    plan = Planner()(graph, {})

    result = executor(plan, records={})

    assert result.succeeded
    assert adapter.peak == 2
    assert len(adapter.created) == 5


def test_provider_call_timeout_is_transient() -> None:
    adapter = _SlowAdapter(delay=1.0)
    executor = _slow_executor(
        adapter,
        ExecutorConfig(parallelism=1, retry=NO_WAIT_RETRY, call_timeout_seconds=0.01),
    )
    plan = Planner()(graph_of({"slow": {"a": {}}}), {})

    result = executor(plan, records={})

    outcome = result.outcomes["create:slow.a"]
    assert outcome.status is ActionStatus.FAILED
    assert isinstance(outcome.error, TransientExecutionError)
    assert isinstance(outcome.error.__cause__, ProviderTimeoutError)
    assert outcome.attempts == NO_WAIT_RETRY.total
