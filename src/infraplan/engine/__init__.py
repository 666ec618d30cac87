"""
engine: Dependency graphs, provisioning plans and their execution.

This package provides the core of infraplan:
- Units with explicit and reference-derived dependencies
- Graph validation (duplicates, dangling references, cycles)
- Planning against recorded state (create/update/replace/destroy/no-op)
- Concurrent execution with partial-failure semantics and timeouts

Core Components:
- Unit / Reference / Lifecycle: What is declared
- DependencyGraph / build_graph(): Validated acyclic graph
- Planner: Diffs the graph against state and orders the steps
- Executor: Applies plans through a provider, writing state
- run_apply(): High-level entry point

Example:
    >>> from infraplan.engine import UnitRegistry, Lifecycle, ref, create_plan_sync
    >>> from infraplan.state import InMemoryStateStore
    >>>
    >>> registry = UnitRegistry()
    >>> registry.define_unit("aws_vpc.main", {"cidr_block": "10.0.0.0/16"})
    >>> registry.define_unit(
    ...     "aws_subnet.public",
    ...     {"vpc_id": ref("aws_vpc.main", "id"), "cidr_block": "10.0.1.0/24"},
    ...     lifecycle=Lifecycle(force_new={"cidr_block"}),
    ... )
    >>> registry.define_unit(
    ...     "aws_internet_gateway.gw",
    ...     {"vpc_id": ref("aws_vpc.main", "id")},
    ... )
    >>>
    >>> plan = create_plan_sync(registry.units, InMemoryStateStore())
    >>> plan.unit_ready_sets()
    [['aws_vpc.main'], ['aws_internet_gateway.gw', 'aws_subnet.public']]
"""

from .errors import (
    InfraplanError,
    PlanningError,
    DuplicateIdentifier,
    DanglingReference,
    CyclicDependency,
    DestroyPrevented,
    DeclarationError,
    UnresolvedIndex,
    ProviderError,
    ProviderTimeout,
    ExecutionCancelled,
)

from .unit import (
    Unit,
    Reference,
    Lifecycle,
    UnitRegistry,
    UnitTemplate,
    UnitVariant,
    ref,
)

from .references import (
    Unknown,
    evaluate,
    evaluate_inputs,
    resolve_references,
)

from .graph import (
    DependencyGraph,
    build_graph,
)

from .planner import (
    ActionType,
    AttributeChange,
    OrderedPlan,
    PlanAction,
    PlanStep,
    Planner,
    StepPhase,
)

from .executor import (
    Executor,
    ExecutionReport,
    StepResult,
    StepStatus,
    UnitResult,
)

from .run_plan import (
    create_plan,
    create_plan_sync,
    run_apply,
    run_apply_sync,
)

__all__ = [
    # Errors
    "InfraplanError",
    "PlanningError",
    "DuplicateIdentifier",
    "DanglingReference",
    "CyclicDependency",
    "DestroyPrevented",
    "DeclarationError",
    "UnresolvedIndex",
    "ProviderError",
    "ProviderTimeout",
    "ExecutionCancelled",
    # Resource model
    "Unit",
    "Reference",
    "Lifecycle",
    "UnitRegistry",
    "UnitTemplate",
    "UnitVariant",
    "ref",
    # References
    "Unknown",
    "evaluate",
    "evaluate_inputs",
    "resolve_references",
    # Graph
    "DependencyGraph",
    "build_graph",
    # Planning
    "ActionType",
    "AttributeChange",
    "OrderedPlan",
    "PlanAction",
    "PlanStep",
    "Planner",
    "StepPhase",
    # Execution
    "Executor",
    "ExecutionReport",
    "StepResult",
    "StepStatus",
    "UnitResult",
    # High-level API
    "create_plan",
    "create_plan_sync",
    "run_apply",
    "run_apply_sync",
]
