import asyncio
import logging

import pytest

from infraplan import (
    ActionType,
    CyclicDependency,
    EngineConfig,
    Unit,
    create_plan,
    ref,
    run_apply,
    run_apply_sync,
)
from infraplan.providers import InMemoryProvider
from infraplan.state import InMemoryStateStore

from topology import INSTANCE, build_topology


def test_run_apply_sync_end_to_end():
    provider = InMemoryProvider()
    store = InMemoryStateStore()

    report = run_apply_sync(build_topology(), provider, store, config=EngineConfig(max_concurrency=2))

    assert report.exit_code == 0
    assert len(store) == 4
    assert len(provider.resources) == 4


def test_apply_is_idempotent():
    provider = InMemoryProvider()
    store = InMemoryStateStore()

    async def go():
        await run_apply(build_topology(), provider, store)
        calls_after_first = len(provider.calls)
        report = await run_apply(build_topology(), provider, store)
        plan = await create_plan(build_topology(), store)
        return calls_after_first, report, plan

    calls_after_first, report, plan = asyncio.run(go())

    assert report.success
    assert len(provider.calls) == calls_after_first
    assert {u.action for u in report.units.values()} == {ActionType.NOOP}
    assert not plan.has_changes


def test_planning_error_aborts_before_any_provider_call():
    provider = InMemoryProvider()
    units = [
        Unit("a.x", {"v": ref("b.x", "id")}),
        Unit("b.x", {"v": ref("a.x", "id")}),
    ]

    with pytest.raises(CyclicDependency):
        run_apply_sync(units, provider, InMemoryStateStore())

    assert provider.calls == []


def test_failed_apply_logs_errors(caplog):
    provider = InMemoryProvider(fail={INSTANCE: "insufficient capacity"})

    with caplog.at_level(logging.INFO, logger="infraplan"):
        report = run_apply_sync(build_topology(), provider, InMemoryStateStore())

    assert report.exit_code == 1
    assert report.failed == [INSTANCE]
    assert "insufficient capacity" in caplog.text
    assert "Execution trace summary" in caplog.text


def test_partial_apply_is_resumed_by_next_run():
    store = InMemoryStateStore()
    failing = InMemoryProvider(fail={INSTANCE: "insufficient capacity"})
    healthy = InMemoryProvider()

    async def go():
        await run_apply(build_topology(), failing, store)
        plan = await create_plan(build_topology(), store)
        report = await run_apply(build_topology(), healthy, store)
        return plan, report

    plan, report = asyncio.run(go())

    assert plan.actions_of(ActionType.CREATE) == [INSTANCE]
    assert report.success
    assert [(c.op, c.unit_id) for c in healthy.calls] == [("create", INSTANCE)]


def test_in_place_update_reaches_dependents_in_one_apply():
    def units(cidr):
        return [
            Unit("aws_vpc.main", {"cidr_block": cidr}),
            Unit("aws_subnet.a", {"vpc_cidr": ref("aws_vpc.main", "cidr_block")}),
        ]

    provider = InMemoryProvider()
    store = InMemoryStateStore()

    async def go():
        await run_apply(units("10.0.0.0/16"), provider, store)
        report = await run_apply(units("10.1.0.0/16"), provider, store)
        plan = await create_plan(units("10.1.0.0/16"), store)
        subnet = await store.get("aws_subnet.a")
        return report, plan, subnet

    report, plan, subnet = asyncio.run(go())

    assert report.success
    assert report.units["aws_subnet.a"].action is ActionType.UPDATE
    assert subnet.inputs == {"vpc_cidr": "10.1.0.0/16"}
    assert not plan.has_changes
