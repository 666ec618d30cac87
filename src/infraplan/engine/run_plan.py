"""
High-level entry points for planning and applying.

This module provides `create_plan()` and `run_apply()`, which wire the
graph builder, planner and executor together around a state store.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from .executor import ExecutionReport, Executor
from .graph import build_graph
from .planner import OrderedPlan, Planner
from .unit import Unit
from ..config import EngineConfig
from ..providers.base import Provider
from ..providers.retry import RetryingProvider
from ..state.store import StateStore, load_state_snapshot

logger = logging.getLogger(__name__)


async def create_plan(units: Iterable[Unit], state_store: StateStore) -> OrderedPlan:
    """
    Build the dependency graph and plan it against the store's current state.

    Useful for pre-flight validation and for showing what an apply would do.

    Raises:
        PlanningError: If the units cannot be planned (duplicates, dangling
            references, cycles, protected units)
    """
    graph = build_graph(units)
    state = await load_state_snapshot(state_store)
    return Planner().plan(graph, state)


def create_plan_sync(units: Iterable[Unit], state_store: StateStore) -> OrderedPlan:
    """Synchronous wrapper for create_plan()."""
    return asyncio.run(create_plan(units, state_store))


async def run_apply(
    units: Iterable[Unit],
    provider: Provider,
    state_store: StateStore,
    config: Optional[EngineConfig] = None,
) -> ExecutionReport:
    """
    Plan and apply units in one go.

    This function:
    1. Builds and validates the dependency graph
    2. Plans it against the recorded state
    3. Applies the plan through the provider, writing state as it goes

    Args:
        units: Declared units
        provider: The provider collaborator
        state_store: Where StateRecords are read from and written to
        config: Engine settings (defaults to EngineConfig())

    Returns:
        ExecutionReport with per-unit outcomes; see report.exit_code

    Raises:
        PlanningError: If planning fails; nothing is applied in that case

    Example:
        >>> from infraplan import UnitRegistry, ref, run_apply_sync
        >>> from infraplan.providers import InMemoryProvider
        >>> from infraplan.state import InMemoryStateStore
        >>>
        >>> registry = UnitRegistry()
        >>> registry.define_unit("aws_vpc.main", {"cidr_block": "10.0.0.0/16"})
        >>> registry.define_unit("aws_subnet.a", {"vpc_id": ref("aws_vpc.main", "id")})
        >>> report = run_apply_sync(registry.units, InMemoryProvider(), InMemoryStateStore())
        >>> report.exit_code
        0
    """
    config = config or EngineConfig()
    units = list(units)
    logger.info(f"Planning {len(units)} units")

    planner = Planner()
    plan = planner.plan(build_graph(units), await load_state_snapshot(state_store))

    analysis = planner.analyze_parallelism(plan)
    logger.info(
        f"Plan analysis: {analysis['total_steps']} steps, "
        f"{analysis['levels']} ready-sets, "
        f"max {analysis['max_parallel']} parallel steps"
    )
    if analysis['bottlenecks']:
        logger.warning(f"Bottleneck units (>=3 dependents): {analysis['bottlenecks']}")

    deadline = config.default_timeout
    policy = config.retry_policy()
    if policy is not None:
        provider = RetryingProvider(provider, policy)
        # each attempt has its own deadline; the action gets room for all of them
        deadline = policy.total_timeout()

    executor = Executor(
        provider,
        state_store,
        max_concurrency=config.max_concurrency,
        default_timeout=deadline,
        enable_tracing=config.enable_tracing,
    )
    report = await executor.execute(plan)

    if config.enable_tracing:
        _log_trace_summary(report.trace, error=not report.success)
    if not report.success:
        logger.error(f"Apply finished with failures: {report.errors()}")
    return report


def run_apply_sync(
    units: Iterable[Unit],
    provider: Provider,
    state_store: StateStore,
    **kwargs: Any,
) -> ExecutionReport:
    """Synchronous wrapper for run_apply()."""
    return asyncio.run(run_apply(units, provider, state_store, **kwargs))


def _log_trace_summary(trace: List[Dict[str, Any]], error: bool = False) -> None:
    """Log a summary of the execution trace."""
    if not trace:
        return

    counts: Dict[str, int] = {}
    for entry in trace:
        counts[entry['status']] = counts.get(entry['status'], 0) + 1

    durations = [entry['duration'] for entry in trace if entry.get('duration')]
    total_time = sum(durations) if durations else 0

    level = logging.ERROR if error else logging.INFO
    logger.log(
        level,
        f"Execution trace summary: {len(trace)} steps, "
        + ", ".join(f"{count} {status}" for status, count in sorted(counts.items()))
        + f", total provider time {total_time:.2f}s"
    )

    if durations:
        slowest = sorted(
            (entry for entry in trace if entry.get('duration')),
            key=lambda e: e['duration'],
            reverse=True,
        )
        logger.debug("Slowest steps:")
        for entry in slowest[:5]:
            logger.debug(f"  {entry['unit_id']} ({entry['operation']}): {entry['duration']:.2f}s")
