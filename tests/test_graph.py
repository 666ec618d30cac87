import pytest

from infraplan.engine import (
    CyclicDependency,
    DanglingReference,
    DuplicateIdentifier,
    Unit,
    build_graph,
    ref,
)
from infraplan.engine.graph import find_cycle, layer_ready_sets

from topology import GATEWAY, INSTANCE, SUBNET, VPC, build_topology


def test_topological_order_respects_every_edge():
    graph = build_graph(build_topology())
    order = graph.topological_order()

    assert sorted(order) == sorted(graph.units)
    for dependency, dependent in graph.edges():
        assert order.index(dependency) < order.index(dependent)


def test_ready_sets_are_layered_and_sorted():
    graph = build_graph(build_topology())

    assert graph.ready_sets() == [[VPC], [GATEWAY, SUBNET], [INSTANCE]]


def test_explicit_and_implicit_edges_are_unioned():
    units = [
        Unit("aws_vpc.main"),
        Unit("aws_iam_role.r"),
        Unit(
            "aws_lambda_function.resize",
            {"role": ref("aws_iam_role.r", "arn")},
            depends_on={"aws_vpc.main", "aws_iam_role.r"},
        ),
    ]
    graph = build_graph(units)

    assert graph.dependencies("aws_lambda_function.resize") == frozenset({"aws_vpc.main", "aws_iam_role.r"})
    assert graph.explicit["aws_lambda_function.resize"] == frozenset({"aws_vpc.main", "aws_iam_role.r"})
    assert graph.implicit["aws_lambda_function.resize"] == frozenset({"aws_iam_role.r"})
    assert graph.dependents("aws_vpc.main") == frozenset({"aws_lambda_function.resize"})


def test_transitive_dependents():
    graph = build_graph(build_topology())
    assert graph.transitive_dependents(VPC) == frozenset({SUBNET, GATEWAY, INSTANCE})
    assert graph.transitive_dependents(INSTANCE) == frozenset()


def test_cycle_reported_with_path():
    units = [
        Unit("a.x", depends_on={"c.x"}),
        Unit("b.x", {"upstream": ref("a.x", "id")}),
        Unit("c.x", {"upstream": ref("b.x", "id")}),
        Unit("d.x"),
    ]
    deps = {"a.x": {"c.x"}, "b.x": {"a.x"}, "c.x": {"b.x"}}

    with pytest.raises(CyclicDependency) as exc_info:
        build_graph(units)

    cycle = exc_info.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a.x", "b.x", "c.x"}
    assert len(cycle) == 4
    # each id is followed by one that depends on it
    for before, after in zip(cycle, cycle[1:]):
        assert before in deps[after]


def test_self_dependency_is_a_cycle():
    with pytest.raises(CyclicDependency) as exc_info:
        build_graph([Unit("a.x", depends_on={"a.x"})])

    assert exc_info.value.cycle == ["a.x", "a.x"]


def test_dangling_explicit_dependency():
    with pytest.raises(DanglingReference) as exc_info:
        build_graph([Unit("a.x", depends_on={"missing.x"})])

    assert exc_info.value.target == "missing.x"
    assert exc_info.value.path == "depends_on"


def test_dangling_reference_in_inputs():
    with pytest.raises(DanglingReference):
        build_graph([Unit("a.x", {"vpc_id": ref("aws_vpc.gone", "id")})])


def test_duplicate_identifier():
    with pytest.raises(DuplicateIdentifier):
        build_graph([Unit("a.x"), Unit("a.x")])


def test_find_cycle_none_when_acyclic():
    assert find_cycle(["a", "b", "c"], {"b": ["a"], "c": ["a", "b"]}) is None


def test_layer_ready_sets_generic_nodes():
    levels = layer_ready_sets(["d", "c", "b", "a"], {"b": ["a"], "c": ["a"], "d": ["b", "c"]})
    assert levels == [["a"], ["b", "c"], ["d"]]
