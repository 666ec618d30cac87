from .engine import (
    ActionType,
    CyclicDependency,
    DanglingReference,
    DeclarationError,
    DestroyPrevented,
    DuplicateIdentifier,
    ExecutionReport,
    Executor,
    InfraplanError,
    Lifecycle,
    OrderedPlan,
    Planner,
    PlanningError,
    ProviderError,
    ProviderTimeout,
    Reference,
    Unit,
    UnitRegistry,
    UnitTemplate,
    UnitVariant,
    build_graph,
    create_plan,
    create_plan_sync,
    ref,
    run_apply,
    run_apply_sync,
)
from .config import EngineConfig
from .declarations import load_declarations, load_declarations_file

__all__ = [
    "ActionType",
    "CyclicDependency",
    "DanglingReference",
    "DeclarationError",
    "DestroyPrevented",
    "DuplicateIdentifier",
    "ExecutionReport",
    "Executor",
    "InfraplanError",
    "Lifecycle",
    "OrderedPlan",
    "Planner",
    "PlanningError",
    "ProviderError",
    "ProviderTimeout",
    "Reference",
    "Unit",
    "UnitRegistry",
    "UnitTemplate",
    "UnitVariant",
    "build_graph",
    "create_plan",
    "create_plan_sync",
    "ref",
    "run_apply",
    "run_apply_sync",
    "EngineConfig",
    "load_declarations",
    "load_declarations_file",
]

__version__ = "0.1.0"
