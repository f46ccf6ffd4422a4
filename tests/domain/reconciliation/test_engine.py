from __future__ import annotations

import pytest

from converge.adapters.memory import InMemoryStateStore
from converge.adapters.sqlalchemy import SqlAlchemyStateStore
from converge.domain.errors import CycleError, StateLockError
from converge.domain.model import ResourceAddress
from converge.domain.reconciliation import ChangeKind
from tests.helpers.resources import declare, make_harness, make_record

_SITE = {
    "storage_bucket": {"site": {"name": "example-site", "versioning": True}},
    "cdn_distribution": {
        "site": {
            "origin": "${storage_bucket.site.id}",
            "aliases": ["www.example.test"],
        }
    },
    "dns_record": {
        "www": {"target": "${cdn_distribution.site.id}", "type": "CNAME"},
    },
}


def test_first_apply_of_a_single_resource_creates_one_record() -> None:
    harness = make_harness()
    declaration = declare({"storage_bucket": {"site": {"name": "example-site"}}})

    report = harness.engine.apply(declaration)

    assert report.succeeded
    assert [action.key for action in report.plan.actions] == ["create:storage_bucket.site"]
    records = harness.store.load()
    assert list(records) == ["storage_bucket.site"]
    assert records["storage_bucket.site"].address == ResourceAddress("storage_bucket", "site")


def test_second_plan_after_apply_is_empty() -> None:
    harness = make_harness()
    declaration = declare(_SITE)

    first = harness.engine.apply(declaration)
    second = harness.engine.plan(declaration)

    assert first.succeeded
    assert len(first.plan.actions) == 3
    assert not second.plan.has_changes
    assert second.plan.summary()[ChangeKind.NOOP] == 3


def test_apply_without_changes_does_not_execute() -> None:
    harness = make_harness()
    declaration = declare(_SITE)
    harness.engine.apply(declaration)
    calls_before = len(harness.cloud.calls_for("create"))

    report = harness.engine.apply(declaration)

    assert report.result is None
    assert report.succeeded
    assert len(harness.cloud.calls_for("create")) == calls_before


def test_plan_writes_nothing() -> None:
    store = InMemoryStateStore()
    harness = make_harness(store=store)

    report = harness.engine.plan(declare(_SITE))

    assert len(report.plan.actions) == 3
    assert report.result is None
    assert store.writes == []
    assert harness.cloud.calls == []


def test_removed_resource_is_destroyed_on_next_apply() -> None:
    harness = make_harness()
    harness.engine.apply(declare(_SITE))
    trimmed = {name: blocks for name, blocks in _SITE.items() if name != "dns_record"}

    report = harness.engine.apply(declare(trimmed))

    assert report.succeeded
    assert [action.key for action in report.plan.actions] == ["destroy:dns_record.www"]
    assert "dns_record.www" not in harness.store.load()
    assert harness.cloud.ids("dns_record") == []


def test_destroy_removes_everything_in_reverse_dependency_order() -> None:
    harness = make_harness()
    declaration = declare(_SITE)
    harness.engine.apply(declaration)

    report = harness.engine.destroy(declaration)

    assert report.succeeded
    assert [action.key for action in report.plan.actions] == [
        "destroy:dns_record.www",
        "destroy:cdn_distribution.site",
        "destroy:storage_bucket.site",
    ]
    assert harness.store.load() == {}


def test_refresh_recreates_objects_deleted_outside_converge() -> None:
    harness = make_harness()
    declaration = declare({"storage_bucket": {"site": {"name": "example-site"}}})
    harness.engine.apply(declaration)
    harness.cloud.delete_outside("storage_bucket", "storage_bucket-1")

    report = harness.engine.apply(declaration)

    assert report.refresh is not None
    assert report.refresh.missing == ("storage_bucket.site",)
    assert [action.key for action in report.plan.actions] == ["create:storage_bucket.site"]
    assert harness.store.load()["storage_bucket.site"].external_id == "storage_bucket-2"


def test_plan_reports_drift_without_persisting_it() -> None:
    store = InMemoryStateStore()
    store.save("storage_bucket.site", make_record("storage_bucket.site"))
    harness = make_harness(store=store)

    report = harness.engine.plan(declare({"storage_bucket": {"site": {}}}))

    assert report.refresh is not None
    assert report.refresh.missing == ("storage_bucket.site",)
    assert [action.key for action in report.plan.actions] == ["create:storage_bucket.site"]
    assert "storage_bucket.site" in store.load()


def test_locked_state_rejects_a_second_run() -> None:
    store = InMemoryStateStore()
    harness = make_harness(store=store)

    with store.lock("someone-else") as held, pytest.raises(StateLockError) as excinfo:
        harness.engine.apply(declare(_SITE))

    assert excinfo.value.token == held.token
    assert excinfo.value.owner == "someone-else"
    assert harness.cloud.calls == []
    assert store.load() == {}


def test_lock_is_released_after_a_run() -> None:
    store = InMemoryStateStore()
    harness = make_harness(store=store)

    harness.engine.apply(declare(_SITE))

    assert store.current_lock() is None


def test_invalid_declaration_fails_before_taking_the_lock() -> None:
    store = InMemoryStateStore()
    harness = make_harness(store=store)
    declaration = declare(
        {"a": {"x": {"value": "${b.y.id}"}}, "b": {"y": {"value": "${a.x.id}"}}}
    )

    with store.lock("someone-else"), pytest.raises(CycleError):
        harness.engine.apply(declaration)


def test_full_run_against_sqlite_state(sqlite_store: SqlAlchemyStateStore) -> None:
    harness = make_harness(store=sqlite_store)
    declaration = declare(_SITE)

    first = harness.engine.apply(declaration)
    second = harness.engine.plan(declaration)

    assert first.succeeded
    assert not second.plan.has_changes
    record = sqlite_store.load()["cdn_distribution.site"]
    assert record.attributes == {
        "origin": "storage_bucket-1",
        "aliases": ["www.example.test"],
    }
    assert record.dependencies == (ResourceAddress("storage_bucket", "site"),)


def test_consumer_follows_outputs_changed_by_an_update() -> None:
    harness = make_harness()
    harness.cloud.outputs_hook = lambda resource_type, _external_id, attributes: (
        {"arn": f"arn-{attributes['size']}"} if resource_type == "disk" else {}
    )
    resources: dict[str, dict[str, dict[str, object]]] = {
        "disk": {"a": {"size": 1}},
        "cdn": {"b": {"origin": "${disk.a.arn}"}},
    }
    harness.engine.apply(declare(resources))
    resources["disk"]["a"]["size"] = 2

    second = harness.engine.apply(declare(resources))
    third = harness.engine.plan(declare(resources))

    assert second.succeeded
    assert [action.key for action in second.plan.actions] == ["update:disk.a", "update:cdn.b"]
    assert harness.store.load()["cdn.b"].attributes == {"origin": "arn-2"}
    assert not third.plan.has_changes
