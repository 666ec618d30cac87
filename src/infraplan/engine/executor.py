"""
Executor: Applies an ordered plan through a provider.

This module provides the Executor class that walks a plan's ready-sets:
- Ready-sets run strictly in order; steps within a set run concurrently
- A semaphore bounds the number of provider calls in flight
- Each provider call carries a per-action deadline
- Outputs are fed to later steps through an append-only snapshot
- StateRecords are written after every successful step
- A failed step skips everything that depends on it; independent
  branches carry on and nothing is rolled back
"""
from __future__ import annotations
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .errors import ExecutionCancelled, InfraplanError, ProviderError, ProviderTimeout
from .planner import (
    ActionType, AttributeChange, OrderedPlan, PlanAction, PlanStep, StepPhase, normalize_value,
)
from .references import evaluate_inputs
from ..providers.base import Provider, call_maybe_async
from ..state.locks import UnitLockManager
from ..state.records import StateRecord
from ..state.store import StateStore

logger = logging.getLogger(__name__)


class StepStatus(Enum):
    """Status of a step or unit."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    """Result of executing a single plan step."""
    step: PlanStep
    operation: ActionType
    status: StepStatus = StepStatus.PENDING
    outputs: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    start_seq: Optional[int] = None
    end_seq: Optional[int] = None

    @property
    def duration(self) -> Optional[float]:
        """Get execution duration in seconds."""
        if self.start_time is not None and self.end_time is not None:
            return self.end_time - self.start_time
        return None

    @property
    def success(self) -> bool:
        return self.status == StepStatus.SUCCEEDED


@dataclass
class UnitResult:
    """Final outcome for one unit (both halves of a replace combined)."""
    unit_id: str
    action: ActionType
    status: StepStatus
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def start_time(self) -> Optional[float]:
        times = [s.start_time for s in self.steps if s.start_time is not None]
        return min(times) if times else None

    @property
    def end_time(self) -> Optional[float]:
        times = [s.end_time for s in self.steps if s.end_time is not None]
        return max(times) if times else None


@dataclass
class ExecutionReport:
    """
    Outcome of applying a plan.

    Attributes:
        units: Per-unit final status and error detail
        steps: Per-step results, including timing
        trace: Chronological step events (when tracing is enabled)
        cancelled: Whether execution stopped early on request
    """
    units: Dict[str, UnitResult]
    steps: Dict[PlanStep, StepResult]
    trace: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False

    def status(self, unit_id: str) -> StepStatus:
        return self.units[unit_id].status

    def _with_status(self, status: StepStatus) -> List[str]:
        return sorted(uid for uid, result in self.units.items() if result.status == status)

    @property
    def succeeded(self) -> List[str]:
        return self._with_status(StepStatus.SUCCEEDED)

    @property
    def failed(self) -> List[str]:
        return self._with_status(StepStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._with_status(StepStatus.SKIPPED)

    @property
    def success(self) -> bool:
        return all(result.status == StepStatus.SUCCEEDED for result in self.units.values())

    @property
    def exit_code(self) -> int:
        """0 if every unit succeeded, 1 otherwise."""
        return 0 if self.success else 1

    def errors(self) -> Dict[str, str]:
        return {
            uid: str(result.error)
            for uid, result in sorted(self.units.items())
            if result.error is not None
        }

    def __repr__(self) -> str:
        return (
            f"ExecutionReport(succeeded={len(self.succeeded)}, failed={len(self.failed)}, "
            f"skipped={len(self.skipped)}, cancelled={self.cancelled})"
        )


class OutputSnapshot:
    """
    Outputs known so far, by unit id.

    Writers take a single lock; entries are only ever added or replaced
    wholesale, so readers see either the old or the new outputs of a unit.
    """

    def __init__(self, initial: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._outputs: Dict[str, Dict[str, Any]] = {
            unit_id: dict(outputs) for unit_id, outputs in (initial or {}).items()
        }
        self._lock = asyncio.Lock()

    async def record(self, unit_id: str, outputs: Mapping[str, Any]) -> None:
        async with self._lock:
            self._outputs[unit_id] = dict(outputs)

    def view(self) -> Mapping[str, Mapping[str, Any]]:
        return self._outputs

    def get(self, unit_id: str) -> Optional[Dict[str, Any]]:
        return self._outputs.get(unit_id)


def _operation(action: PlanAction, step: PlanStep) -> ActionType:
    if step.phase is StepPhase.DESTROY:
        return ActionType.DESTROY
    if action.action is ActionType.REPLACE:
        return ActionType.CREATE
    return action.action


class Executor:
    """
    Applies OrderedPlans against a provider and records state.

    Features:
    - Runs steps of a ready-set concurrently, bounded by max_concurrency
    - Enforces a per-action deadline (ProviderTimeout)
    - Partial-failure semantics: dependents of a failure are skipped
    - Cooperative cancellation between ready-sets
    - Structured execution trace
    """

    def __init__(
        self,
        provider: Provider,
        state_store: StateStore,
        max_concurrency: int = 10,
        default_timeout: Optional[float] = 300.0,
        enable_tracing: bool = True,
    ):
        """
        Initialize the executor.

        Args:
            provider: The provider collaborator
            state_store: Where StateRecords are persisted
            max_concurrency: Maximum provider calls in flight
            default_timeout: Per-action deadline in seconds (None = no deadline)
            enable_tracing: Whether to record an execution trace
        """
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.provider = provider
        self.state_store = state_store
        self.max_concurrency = max_concurrency
        self.default_timeout = default_timeout
        self.enable_tracing = enable_tracing

        self._unit_locks = UnitLockManager()
        self._cancel_requested = False
        self._seq = itertools.count()
        self._results: Dict[PlanStep, StepResult] = {}
        self._trace: List[Dict[str, Any]] = []

    def cancel(self) -> None:
        """Stop the run in progress before its next ready-set; steps already running finish."""
        logger.warning("[EXEC] Cancellation requested")
        self._cancel_requested = True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    async def execute(self, plan: OrderedPlan) -> ExecutionReport:
        """
        Execute a plan.

        Args:
            plan: The OrderedPlan to apply

        Returns:
            ExecutionReport: Per-unit Succeeded/Failed/Skipped with error detail
        """
        logger.info(f"[EXEC] Applying plan with {len(plan.steps)} steps in {len(plan.ready_sets)} ready-sets")

        self._results = {
            step: StepResult(step=step, operation=_operation(plan.actions[step.unit_id], step))
            for step in plan.steps
        }
        self._cancel_requested = False
        self._trace = []
        snapshot = OutputSnapshot({
            unit_id: action.prior.outputs
            for unit_id, action in plan.actions.items()
            if action.prior is not None and action.action in (ActionType.NOOP, ActionType.UPDATE)
        })
        semaphore = asyncio.Semaphore(self.max_concurrency)
        cancelled = False

        for level_idx, level in enumerate(plan.ready_sets):
            if self._cancel_requested:
                cancelled = True
                for step in level:
                    self._skip(step, ExecutionCancelled(step.unit_id))
                continue

            runnable = []
            for step in level:
                blocking = [
                    dep for dep in plan.step_dependencies.get(step, ())
                    if not self._results[dep].success
                ]
                if blocking:
                    blocker = min(blocking, key=lambda s: s.sort_key)
                    self._skip(
                        step,
                        InfraplanError(f"Unit {step.unit_id!r} skipped: {blocker} did not succeed"),
                    )
                else:
                    runnable.append(step)

            logger.debug(f"[EXEC] Ready-set {level_idx}: running {[str(s) for s in runnable]}")
            await asyncio.gather(
                *(self._run_step(plan, step, snapshot, semaphore) for step in runnable)
            )

        report = ExecutionReport(
            units=self._unit_results(plan),
            steps=dict(self._results),
            trace=list(self._trace),
            cancelled=cancelled,
        )
        logger.info(
            f"[EXEC] Apply finished: {len(report.succeeded)} succeeded, "
            f"{len(report.failed)} failed, {len(report.skipped)} skipped"
        )
        return report

    async def _run_step(
        self,
        plan: OrderedPlan,
        step: PlanStep,
        snapshot: OutputSnapshot,
        semaphore: asyncio.Semaphore,
    ) -> None:
        action = plan.actions[step.unit_id]
        result = self._results[step]

        async with semaphore:
            result.status = StepStatus.RUNNING
            result.start_time = time.time()
            result.start_seq = next(self._seq)
            logger.info(f"[EXEC] Starting {result.operation.value} {step.unit_id}")

            try:
                if result.operation is ActionType.NOOP:
                    result.outputs = snapshot.get(step.unit_id)
                elif result.operation is ActionType.DESTROY:
                    await self._destroy(plan, action)
                else:
                    result.outputs = await self._create_or_update(plan, action, result.operation, snapshot)
            except Exception as e:
                result.error = e
                result.status = StepStatus.FAILED
                logger.error(f"[EXEC] {result.operation.value} {step.unit_id} failed: {e}")
            else:
                result.status = StepStatus.SUCCEEDED
            finally:
                result.end_time = time.time()
                result.end_seq = next(self._seq)
                self._trace_step(result)

        if result.success and result.operation is not ActionType.NOOP:
            logger.info(
                f"[EXEC] {result.operation.value} {step.unit_id} completed in {result.duration:.2f}s"
            )

    async def _create_or_update(
        self,
        plan: OrderedPlan,
        action: PlanAction,
        operation: ActionType,
        snapshot: OutputSnapshot,
    ) -> Dict[str, Any]:
        unit = action.unit
        inputs = evaluate_inputs(unit, snapshot.view(), strict=True)

        if operation is ActionType.UPDATE:
            changes = self._concrete_changes(action, inputs)
            outputs = await self._call_provider(
                unit.unit_id, self.provider.update, unit, inputs, changes, action.prior
            )
        else:
            outputs = await self._call_provider(unit.unit_id, self.provider.create, unit, inputs)

        outputs = dict(outputs or {})
        await snapshot.record(unit.unit_id, outputs)

        record = StateRecord(
            unit_id=unit.unit_id,
            inputs=inputs,
            outputs=outputs,
            dependencies=sorted(plan.graph.dependencies(unit.unit_id)),
            prevent_destroy=unit.lifecycle.prevent_destroy,
        )
        async with self._unit_locks.write(unit.unit_id):
            await self.state_store.put(unit.unit_id, record)
        return outputs

    async def _destroy(self, plan: OrderedPlan, action: PlanAction) -> None:
        unit_id = action.unit_id
        await self._call_provider(unit_id, self.provider.destroy, action.prior)

        async with self._unit_locks.write(unit_id):
            if action.action is ActionType.REPLACE:
                replacement = self._results.get(PlanStep(unit_id, StepPhase.CREATE))
                if replacement is not None and replacement.success:
                    # the record already describes the new instance
                    logger.debug(f"[EXEC] {unit_id}: old instance destroyed, keeping new record")
                    return
            await self.state_store.delete(unit_id)

    async def _call_provider(self, unit_id: str, func, *args) -> Any:
        """Call the provider with the per-action deadline, normalizing errors."""
        try:
            call = call_maybe_async(func, *args)
            if self.default_timeout:
                return await asyncio.wait_for(call, timeout=self.default_timeout)
            return await call
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(unit_id, self.default_timeout) from e
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(unit_id, cause=e) from e

    @staticmethod
    def _concrete_changes(action: PlanAction, inputs: Mapping[str, Any]) -> Dict[str, AttributeChange]:
        prior_inputs = action.prior.inputs if action.prior else {}
        ignored = action.unit.lifecycle.ignore_changes
        force_new = action.unit.lifecycle.force_new
        changes: Dict[str, AttributeChange] = {}
        for name in sorted((set(inputs) | set(prior_inputs)) - ignored):
            before, after = prior_inputs.get(name), inputs.get(name)
            if normalize_value(before) != normalize_value(after):
                changes[name] = AttributeChange(before, after, name in force_new)
        return changes

    def _skip(self, step: PlanStep, reason: BaseException) -> None:
        result = self._results[step]
        result.status = StepStatus.SKIPPED
        result.error = reason
        logger.warning(f"[EXEC] Skipping {result.operation.value} {step.unit_id}: {reason}")
        self._trace_step(result)

    def _unit_results(self, plan: OrderedPlan) -> Dict[str, UnitResult]:
        units: Dict[str, UnitResult] = {}
        for unit_id, action in plan.actions.items():
            steps = [self._results[step] for step in action.steps]
            if any(s.status == StepStatus.FAILED for s in steps):
                status = StepStatus.FAILED
            elif any(s.status == StepStatus.SKIPPED for s in steps):
                status = StepStatus.SKIPPED
            elif all(s.success for s in steps):
                status = StepStatus.SUCCEEDED
            else:
                status = StepStatus.PENDING
            error = next(
                (s.error for s in steps if s.status == StepStatus.FAILED),
                next((s.error for s in steps if s.error is not None), None),
            )
            units[unit_id] = UnitResult(
                unit_id=unit_id, action=action.action, status=status, steps=steps, error=error
            )
        return units

    def _trace_step(self, result: StepResult) -> None:
        """Record step execution in trace."""
        if not self.enable_tracing:
            return

        trace_entry = {
            "unit_id": result.step.unit_id,
            "phase": result.step.phase.value,
            "operation": result.operation.value,
            "status": result.status.value,
            "duration": result.duration,
            "timestamp": datetime.now().isoformat(),
        }
        if result.error:
            trace_entry["error"] = str(result.error)
        self._trace.append(trace_entry)

    def get_trace(self) -> List[Dict[str, Any]]:
        """Get the execution trace."""
        return self._trace.copy()

    def get_results(self) -> Dict[PlanStep, StepResult]:
        """Get all step results."""
        return self._results.copy()
