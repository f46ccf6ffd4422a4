from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from converge.domain.errors import PlanningError
from converge.domain.model import ResourceAddress, ResourceSchema
from converge.domain.reconciliation import UNKNOWN, ChangeKind, Operation, Planner, ResourceChange
from tests.helpers.resources import graph_of, make_record, records_by_id

if TYPE_CHECKING:
    from converge.domain.reconciliation import Plan

_SCHEMAS = {
    "bucket": ResourceSchema(force_new=frozenset({"region"}), immutable=frozenset({"name"})),
    "cdn": ResourceSchema(force_new=frozenset({"origin"})),
}


def _schema_for(_provider: str, resource_type: str) -> ResourceSchema:
    return _SCHEMAS.get(resource_type, ResourceSchema())


def _planner() -> Planner:
    return Planner(schema_for=_schema_for)


def _keys(plan: Plan) -> list[str]:
    return [action.key for action in plan.actions]


def test_single_resource_on_empty_state_plans_one_create() -> None:
    graph = graph_of({"bucket": {"site": {"name": "site", "region": "eu"}}})

    plan = _planner()(graph, {})

    assert _keys(plan) == ["create:bucket.site"]
    change = plan.change_for(ResourceAddress("bucket", "site"))
    assert change is not None
    assert change.kind is ChangeKind.CREATE
    assert change.planned == {"name": "site", "region": "eu"}


def test_consumer_of_existing_producer_plans_only_the_consumer() -> None:
    graph = graph_of(
        {
            "bucket": {"a": {"name": "a"}},
            "cdn": {"b": {"origin": "${bucket.a.id}"}},
        }
    )
    records = records_by_id(make_record("bucket.a", attributes={"name": "a"}))

    plan = _planner()(graph, records)

    assert _keys(plan) == ["create:cdn.b"]
    assert plan.actions[0].depends_on == ()
    change = plan.change_for(ResourceAddress("cdn", "b"))
    assert change is not None
    assert change.planned == {"origin": "bucket-a"}


def test_reference_to_pending_producer_is_unknown_until_apply() -> None:
    graph = graph_of(
        {
            "bucket": {"a": {"name": "a"}},
            "cdn": {"b": {"origin": "https://${bucket.a.id}/"}},
        }
    )

    plan = _planner()(graph, {})

    change = plan.change_for(ResourceAddress("cdn", "b"))
    assert change is not None
    assert change.planned is not None
    assert change.planned["origin"] is UNKNOWN
    create_b = plan.action("create:cdn.b")
    assert create_b is not None
    assert create_b.depends_on == ("create:bucket.a",)
    assert plan.index_of("create:bucket.a") < plan.index_of("create:cdn.b")


def test_removed_resource_plans_one_destroy() -> None:
    graph = graph_of({"bucket": {"kept": {"name": "kept"}}})
    records = records_by_id(
        make_record("bucket.kept", attributes={"name": "kept"}),
        make_record("bucket.gone", attributes={"name": "gone"}),
    )

    plan = _planner()(graph, records)

    assert _keys(plan) == ["destroy:bucket.gone"]
    change = plan.change_for(ResourceAddress("bucket", "gone"))
    assert change is not None
    assert change.kind is ChangeKind.DESTROY
    assert change.reason == "no longer declared"


def test_matching_state_plans_nothing() -> None:
    graph = graph_of({"bucket": {"site": {"name": "site", "tags": {"env": "prod"}}}})
    records = records_by_id(
        make_record("bucket.site", attributes={"name": "site", "tags": {"env": "prod"}})
    )

    plan = _planner()(graph, records)

    assert not plan.has_changes
    assert plan.summary()[ChangeKind.NOOP] == 1


def test_changed_attribute_plans_in_place_update() -> None:
    graph = graph_of({"disk": {"data": {"size": 20}}})
    records = records_by_id(make_record("disk.data", attributes={"size": 10}))

    plan = _planner()(graph, records)

    assert _keys(plan) == ["update:disk.data"]
    change = plan.change_for(ResourceAddress("disk", "data"))
    assert change is not None
    assert change.kind is ChangeKind.UPDATE
    assert change.changed_attributes == ("size",)


def test_force_new_attribute_replaces_destroying_first() -> None:
    graph = graph_of({"bucket": {"site": {"region": "eu"}}})
    records = records_by_id(make_record("bucket.site", attributes={"region": "us"}))

    plan = _planner()(graph, records)

    change = plan.change_for(ResourceAddress("bucket", "site"))
    assert change is not None
    assert change.kind is ChangeKind.REPLACE
    assert change.replace_attributes == ("region",)
    assert _keys(plan) == ["destroy:bucket.site", "create:bucket.site"]
    create = plan.action("create:bucket.site")
    assert create is not None
    assert create.depends_on == ("destroy:bucket.site",)


def test_create_before_destroy_creates_the_replacement_first() -> None:
    graph = graph_of(
        {
            "bucket": {
                "site": {"region": "eu", "lifecycle": {"create_before_destroy": True}},
            }
        }
    )
    records = records_by_id(make_record("bucket.site", attributes={"region": "us"}))

    plan = _planner()(graph, records)

    assert _keys(plan) == ["create:bucket.site", "destroy:bucket.site"]
    destroy = plan.action("destroy:bucket.site")
    assert destroy is not None
    assert destroy.depends_on == ("create:bucket.site",)


def test_create_before_destroy_spreads_to_replaced_producers() -> None:
    graph = graph_of(
        {
            "bucket": {"a": {"region": "eu"}},
            "cdn": {
                "b": {
                    "origin": "${bucket.a.id}",
                    "lifecycle": {"create_before_destroy": True},
                }
            },
        }
    )
    records = records_by_id(
        make_record("bucket.a", attributes={"region": "us"}),
        make_record("cdn.b", attributes={"origin": "bucket-a"}, dependencies=("bucket.a",)),
    )

    plan = _planner()(graph, records)

    producer = plan.change_for(ResourceAddress("bucket", "a"))
    assert producer is not None
    assert producer.kind is ChangeKind.REPLACE
    assert producer.create_before_destroy
    order = _keys(plan)
    assert order.index("create:bucket.a") < order.index("create:cdn.b")
    assert order.index("create:cdn.b") < order.index("destroy:cdn.b")
    assert order.index("destroy:cdn.b") < order.index("destroy:bucket.a")


def test_immutable_attribute_change_is_a_planning_error() -> None:
    graph = graph_of({"bucket": {"site": {"name": "renamed"}}})
    records = records_by_id(make_record("bucket.site", attributes={"name": "site"}))

    with pytest.raises(PlanningError, match="cannot change after creation") as excinfo:
        _planner()(graph, records)

    assert excinfo.value.address == ResourceAddress("bucket", "site")


def test_prevent_destroy_blocks_replacement() -> None:
    graph = graph_of(
        {"bucket": {"site": {"region": "eu", "lifecycle": {"prevent_destroy": True}}}}
    )
    records = records_by_id(make_record("bucket.site", attributes={"region": "us"}))

    with pytest.raises(PlanningError, match="prevent_destroy"):
        _planner()(graph, records)


def test_prevent_destroy_blocks_destroy_mode() -> None:
    graph = graph_of({"bucket": {"site": {"lifecycle": {"prevent_destroy": True}}}})
    records = records_by_id(make_record("bucket.site"))

    with pytest.raises(PlanningError, match="cannot be destroyed"):
        _planner()(graph, records, destroy=True)


def test_ignore_changes_hides_drifted_attributes() -> None:
    graph = graph_of(
        {
            "bucket": {
                "site": {
                    "tags": {"owner": "ops"},
                    "lifecycle": {"ignore_changes": ["tags"]},
                }
            }
        }
    )
    records = records_by_id(make_record("bucket.site", attributes={"tags": {"owner": "dev"}}))

    plan = _planner()(graph, records)

    assert not plan.has_changes


def test_provider_change_forces_replacement() -> None:
    graph = graph_of({"bucket": {"site": {}}})
    records = records_by_id(make_record("bucket.site", provider="legacy"))

    plan = _planner()(graph, records)

    change = plan.change_for(ResourceAddress("bucket", "site"))
    assert change is not None
    assert change.kind is ChangeKind.REPLACE
    assert change.reason == "provider changed from legacy to default"


def test_destroy_mode_tears_down_consumers_before_producers() -> None:
    graph = graph_of(
        {
            "bucket": {"a": {}},
            "cdn": {"b": {"origin": "${bucket.a.id}"}},
        }
    )
    records = records_by_id(
        make_record("bucket.a"),
        make_record("cdn.b", attributes={"origin": "bucket-a"}, dependencies=("bucket.a",)),
    )

    plan = _planner()(graph, records, destroy=True)

    assert plan.destroy
    assert _keys(plan) == ["destroy:cdn.b", "destroy:bucket.a"]
    assert all(action.operation is Operation.DESTROY for action in plan.actions)
    destroy_a = plan.action("destroy:bucket.a")
    assert destroy_a is not None
    assert destroy_a.depends_on == ("destroy:cdn.b",)


def test_consumer_moving_off_removed_producer_is_applied_first() -> None:
    graph = graph_of({"cdn": {"b": {"origin": "static.example.test"}}})
    records = records_by_id(
        make_record("bucket.a"),
        make_record("cdn.b", attributes={"origin": "bucket-a"}, dependencies=("bucket.a",)),
    )

    plan = _planner()(graph, records)

    assert _keys(plan) == ["update:cdn.b", "destroy:bucket.a"]
    destroy_a = plan.action("destroy:bucket.a")
    assert destroy_a is not None
    assert destroy_a.depends_on == ("update:cdn.b",)


def test_deposed_record_is_destroyed_on_its_own() -> None:
    graph = graph_of({"bucket": {"site": {"region": "eu"}}})
    records = records_by_id(
        make_record("bucket.site", external_id="bucket-new", attributes={"region": "eu"}),
        make_record(
            "bucket.site", external_id="bucket-old", attributes={"region": "us"}, deposed=True
        ),
    )

    plan = _planner()(graph, records)

    assert _keys(plan) == ["destroy:bucket.site (deposed bucket-old)"]
    change = plan.change_for_action(plan.actions[0])
    assert change.deposed
    assert change.state_id == "bucket.site (deposed bucket-old)"


def test_for_each_sibling_removal_only_touches_that_instance() -> None:
    graph = graph_of({"bucket": {"logs": {"for_each": ["a", "c"], "name": "${each.key}"}}})
    records = records_by_id(
        make_record('bucket.logs["a"]', external_id="logs-a", attributes={"name": "a"}),
        make_record('bucket.logs["b"]', external_id="logs-b", attributes={"name": "b"}),
        make_record('bucket.logs["c"]', external_id="logs-c", attributes={"name": "c"}),
    )

    plan = _planner()(graph, records)

    assert _keys(plan) == ['destroy:bucket.logs["b"]']


def test_computed_output_of_updated_producer_is_unknown() -> None:
    graph = graph_of(
        {
            "disk": {"a": {"size": 2}},
            "cdn": {"b": {"origin": "${disk.a.arn}", "backend": "${disk.a.id}"}},
        }
    )
    records = records_by_id(
        make_record("disk.a", attributes={"size": 1}, outputs={"id": "disk-a", "arn": "arn-1"}),
        make_record(
            "cdn.b",
            attributes={"origin": "arn-1", "backend": "disk-a"},
            dependencies=("disk.a",),
        ),
    )

    plan = Planner()(graph, records)

    assert _keys(plan) == ["update:disk.a", "update:cdn.b"]
    change = plan.change_for(ResourceAddress("cdn", "b"))
    assert change is not None
    assert change.kind is ChangeKind.UPDATE
    assert change.changed_attributes == ("origin",)
    assert change.planned == {"origin": UNKNOWN, "backend": "disk-a"}
    update_b = plan.action("update:cdn.b")
    assert update_b is not None
    assert update_b.depends_on == ("update:disk.a",)


def test_id_of_updated_producer_stays_known() -> None:
    graph = graph_of(
        {
            "disk": {"a": {"size": 2}},
            "cdn": {"b": {"backend": "${disk.a.id}"}},
        }
    )
    records = records_by_id(
        make_record("disk.a", attributes={"size": 1}),
        make_record("cdn.b", attributes={"backend": "disk-a"}, dependencies=("disk.a",)),
    )

    plan = Planner()(graph, records)

    assert _keys(plan) == ["update:disk.a"]


def test_change_without_a_recorded_object_cannot_supply_one() -> None:
    change = ResourceChange(
        address=ResourceAddress("disk", "a"), kind=ChangeKind.UPDATE, provider="default"
    )

    with pytest.raises(PlanningError, match="needs a recorded object"):
        change.require_prior()
