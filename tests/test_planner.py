"""
Planner behaviour: classification, ordering and protection rules.
"""
import asyncio

import pytest

from infraplan.engine import (
    ActionType,
    DestroyPrevented,
    Lifecycle,
    PlanStep,
    Planner,
    StepPhase,
    Unit,
    Unknown,
    build_graph,
    create_plan,
    create_plan_sync,
    ref,
    run_apply,
)
from infraplan.providers import InMemoryProvider
from infraplan.state import InMemoryStateStore, StateRecord

from topology import GATEWAY, INSTANCE, SUBNET, VPC, build_topology


def _apply_then_plan(first_units, second_units, provider=None):
    """Apply first_units, then plan second_units against the resulting state."""
    provider = provider or InMemoryProvider()
    store = InMemoryStateStore()

    async def go():
        report = await run_apply(first_units, provider, store)
        assert report.exit_code == 0
        return await create_plan(second_units, store)

    return asyncio.run(go())


def _create(unit_id):
    return PlanStep(unit_id, StepPhase.CREATE)


def _destroy(unit_id):
    return PlanStep(unit_id, StepPhase.DESTROY)


def test_fresh_plan_creates_everything_in_ready_sets():
    plan = create_plan_sync(build_topology(), InMemoryStateStore())

    assert plan.actions_of(ActionType.CREATE) == sorted([VPC, SUBNET, GATEWAY, INSTANCE])
    assert plan.unit_ready_sets() == [[VPC], [GATEWAY, SUBNET], [INSTANCE]]
    assert plan.get(INSTANCE).predecessors == [SUBNET]
    assert isinstance(plan.get(SUBNET).planned_inputs["vpc_id"], Unknown)


def test_plan_is_deterministic():
    first = create_plan_sync(build_topology(), InMemoryStateStore())
    second = create_plan_sync(list(reversed(build_topology())), InMemoryStateStore())

    assert first.unit_ready_sets() == second.unit_ready_sets()


def test_replanning_applied_state_is_all_noop():
    plan = _apply_then_plan(build_topology(), build_topology())

    assert not plan.has_changes
    assert plan.actions_of(ActionType.NOOP) == sorted([VPC, SUBNET, GATEWAY, INSTANCE])
    assert plan.summary()["noop"] == 4


def test_removed_unit_is_destroyed_and_rest_unchanged():
    plan = _apply_then_plan(build_topology(), build_topology(include_gateway=False))

    assert plan.actions_of(ActionType.DESTROY) == [GATEWAY]
    assert plan.actions_of(ActionType.NOOP) == sorted([VPC, SUBNET, INSTANCE])
    assert plan.get(GATEWAY).unit is None
    assert plan.get(GATEWAY).prior.outputs["id"].startswith("internet-gateway-")


def test_in_place_update_uses_known_outputs():
    plan = _apply_then_plan(build_topology(), build_topology(ami="ami-456"))

    action = plan.get(INSTANCE)
    assert action.action is ActionType.UPDATE
    assert sorted(action.changes) == ["ami"]
    assert action.changes["ami"].before == "ami-123"
    assert action.changes["ami"].after == "ami-456"
    # the subnet is unchanged, so its id is known when planning
    assert action.planned_inputs["subnet_id"] == action.prior.inputs["subnet_id"]
    assert plan.actions_of(ActionType.NOOP) == sorted([VPC, SUBNET, GATEWAY])


def _vpc_and_subnet(vpc_cidr):
    return [
        Unit(VPC, {"cidr_block": vpc_cidr}),
        Unit(SUBNET, {"vpc_id": ref(VPC, "id"), "vpc_cidr": ref(VPC, "cidr_block")}),
    ]


def test_update_defers_outputs_of_changed_attributes():
    plan = _apply_then_plan(_vpc_and_subnet("10.0.0.0/16"), _vpc_and_subnet("10.1.0.0/16"))

    assert plan.get(VPC).action is ActionType.UPDATE
    subnet = plan.get(SUBNET)
    assert subnet.action is ActionType.UPDATE
    assert sorted(subnet.changes) == ["vpc_cidr"]
    assert isinstance(subnet.changes["vpc_cidr"].after, Unknown)
    # the id is not among the changed attributes, so it stays known
    assert subnet.planned_inputs["vpc_id"] == subnet.prior.inputs["vpc_id"]


def test_force_new_change_replaces_and_dependents_update():
    plan = _apply_then_plan(build_topology(), build_topology(subnet_cidr="10.0.2.0/24"))

    subnet = plan.get(SUBNET)
    assert subnet.action is ActionType.REPLACE
    assert subnet.changes["cidr_block"].forces_replacement

    instance = plan.get(INSTANCE)
    assert instance.action is ActionType.UPDATE
    assert isinstance(instance.changes["subnet_id"].after, Unknown)
    assert not instance.changes["subnet_id"].after_known

    # the old subnet stays until the instance has moved to the new one
    assert plan.step_position(_create(SUBNET)) < plan.step_position(_create(INSTANCE))
    assert plan.step_position(_create(INSTANCE)) < plan.step_position(_destroy(SUBNET))


def test_replace_without_dependents_destroys_first():
    plan = _apply_then_plan(
        build_topology(include_gateway=False),
        build_topology(include_gateway=False, ami="ami-456",
                       instance_lifecycle=Lifecycle(force_new={"ami"})),
    )

    assert plan.get(INSTANCE).action is ActionType.REPLACE
    assert plan.step_position(_destroy(INSTANCE)) < plan.step_position(_create(INSTANCE))


def test_create_before_destroy_orders_create_first():
    plan = _apply_then_plan(
        build_topology(include_gateway=False),
        build_topology(
            include_gateway=False,
            ami="ami-456",
            instance_lifecycle=Lifecycle(force_new={"ami"}, create_before_destroy=True),
        ),
    )

    assert plan.get(INSTANCE).create_before_destroy
    assert plan.step_position(_create(INSTANCE)) < plan.step_position(_destroy(INSTANCE))


def test_ignored_attribute_changes_are_noop():
    plan = _apply_then_plan(
        build_topology(),
        build_topology(ami="ami-456", instance_lifecycle=Lifecycle(ignore_changes={"ami"})),
    )

    assert plan.get(INSTANCE).action is ActionType.NOOP


def test_removed_chain_destroys_dependents_first():
    plan = _apply_then_plan(build_topology(include_gateway=False), [])

    assert plan.actions_of(ActionType.DESTROY) == sorted([VPC, SUBNET, INSTANCE])
    assert plan.step_position(_destroy(INSTANCE)) < plan.step_position(_destroy(SUBNET))
    assert plan.step_position(_destroy(SUBNET)) < plan.step_position(_destroy(VPC))


def test_destroy_waits_for_dependent_moving_off_it():
    # the instance moves from subnet a to a new subnet b; a is then removed
    second = [
        Unit(VPC, {"cidr_block": "10.0.0.0/16"}),
        Unit("aws_subnet.b", {"vpc_id": ref(VPC, "id"), "cidr_block": "10.0.3.0/24"}),
        Unit(INSTANCE, {"subnet_id": ref("aws_subnet.b", "id"), "ami": "ami-123", "tags": {"Name": "web"}}),
    ]
    plan = _apply_then_plan(build_topology(include_gateway=False), second)

    assert plan.get(SUBNET).action is ActionType.DESTROY
    assert plan.get(INSTANCE).action is ActionType.UPDATE
    assert plan.step_position(_create(INSTANCE)) < plan.step_position(_destroy(SUBNET))


def test_prevent_destroy_blocks_removal():
    record = StateRecord(unit_id="aws_db_instance.main", outputs={"id": "db-1"}, prevent_destroy=True)
    store = InMemoryStateStore({"aws_db_instance.main": record})

    with pytest.raises(DestroyPrevented) as exc_info:
        create_plan_sync([], store)

    assert exc_info.value.unit_id == "aws_db_instance.main"
    assert exc_info.value.action == "destroy"


def test_prevent_destroy_blocks_replacement():
    record = StateRecord(
        unit_id="aws_db_instance.main",
        inputs={"engine": "postgres"},
        outputs={"id": "db-1"},
    )
    store = InMemoryStateStore({"aws_db_instance.main": record})
    unit = Unit(
        "aws_db_instance.main",
        {"engine": "mysql"},
        lifecycle=Lifecycle(force_new={"engine"}, prevent_destroy=True),
    )

    with pytest.raises(DestroyPrevented) as exc_info:
        create_plan_sync([unit], store)

    assert exc_info.value.action == "replace"


def test_deferred_index_is_unknown_at_plan_time():
    units = [
        Unit("aws_vpc.main", {"azs": ["us-east-1a", "us-east-1b"]}),
        Unit("random_integer.pick", {"result": 1}),
        Unit(
            "aws_subnet.a",
            {"az": ref("aws_vpc.main", "azs", index=ref("random_integer.pick", "result"))},
        ),
    ]
    plan = create_plan_sync(units, InMemoryStateStore())

    assert isinstance(plan.get("aws_subnet.a").planned_inputs["az"], Unknown)
    assert plan.get("aws_subnet.a").predecessors == ["aws_vpc.main", "random_integer.pick"]


def test_analyze_parallelism():
    planner = Planner()
    units = [Unit("aws_vpc.main")] + [
        Unit(f"aws_subnet.s{i}", {"vpc_id": ref("aws_vpc.main", "id")}) for i in range(3)
    ]
    plan = planner.plan(build_graph(units), {})
    analysis = planner.analyze_parallelism(plan)

    assert analysis["total_steps"] == 4
    assert analysis["levels"] == 2
    assert analysis["max_parallel"] == 3
    assert analysis["bottlenecks"] == ["aws_vpc.main"]
