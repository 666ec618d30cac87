"""
Planner: Reconciles declared units against recorded state.

This module provides the Planner class that diffs every unit against its
StateRecord, classifies the required action, and orders the resulting
steps into ready-sets that can be executed with maximal safe parallelism.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple
import logging

from .errors import DestroyPrevented, UnresolvedIndex
from .graph import DependencyGraph, layer_ready_sets
from .references import Unknown, contains_unknown, evaluate
from .unit import Reference, Unit
from ..state.records import StateRecord

logger = logging.getLogger(__name__)


class ActionType(Enum):
    """What has to happen to a unit."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NOOP = "noop"


class StepPhase(Enum):
    """Half of an action that is scheduled on its own."""
    DESTROY = "destroy"
    CREATE = "create"

    @property
    def rank(self) -> int:
        return 0 if self is StepPhase.DESTROY else 1


@dataclass(frozen=True)
class PlanStep:
    """
    One schedulable node of a plan.

    Create, Update and NoOp actions have a single CREATE-phase step, Destroy
    a single DESTROY-phase step, and Replace one of each.
    """
    unit_id: str
    phase: StepPhase

    @property
    def sort_key(self) -> Tuple[str, int]:
        return (self.unit_id, self.phase.rank)

    def __str__(self) -> str:
        return f"{self.unit_id}#{self.phase.value}"


def step_sort_key(step: PlanStep) -> Tuple[str, int]:
    return step.sort_key


@dataclass(frozen=True)
class AttributeChange:
    """Before/after values of one changed attribute."""
    before: Any
    after: Any
    forces_replacement: bool = False

    @property
    def after_known(self) -> bool:
        return not contains_unknown(self.after)


@dataclass
class PlanAction:
    """
    The action planned for one unit.

    Attributes:
        unit_id: The unit this action applies to
        action: Classified action type
        unit: The declared unit (None for Destroy)
        prior: The StateRecord the diff was computed against (None for Create)
        changes: Changed attributes (Update/Replace)
        planned_inputs: Inputs evaluated at plan time; Unknown where deferred
        predecessors: Unit ids whose steps must finish before this action's steps
    """
    unit_id: str
    action: ActionType
    unit: Optional[Unit] = None
    prior: Optional[StateRecord] = None
    changes: Dict[str, AttributeChange] = field(default_factory=dict)
    planned_inputs: Dict[str, Any] = field(default_factory=dict)
    predecessors: List[str] = field(default_factory=list)

    @property
    def create_before_destroy(self) -> bool:
        return bool(self.unit and self.unit.lifecycle.create_before_destroy)

    @property
    def steps(self) -> List[PlanStep]:
        if self.action is ActionType.DESTROY:
            return [PlanStep(self.unit_id, StepPhase.DESTROY)]
        if self.action is ActionType.REPLACE:
            return [
                PlanStep(self.unit_id, StepPhase.DESTROY),
                PlanStep(self.unit_id, StepPhase.CREATE),
            ]
        return [PlanStep(self.unit_id, StepPhase.CREATE)]

    def __repr__(self) -> str:
        return f"PlanAction({self.action.value} {self.unit_id!r}, changes={sorted(self.changes)})"


@dataclass
class OrderedPlan:
    """
    A complete plan: one action per unit plus the step schedule.

    Attributes:
        actions: PlanAction by unit id
        ready_sets: Steps layered for execution; sets run in order, steps
            within a set may run concurrently
        step_dependencies: Steps each step must wait for
        graph: The dependency graph the plan was built from
    """
    actions: Dict[str, PlanAction]
    ready_sets: List[List[PlanStep]]
    step_dependencies: Dict[PlanStep, FrozenSet[PlanStep]]
    graph: DependencyGraph

    def get(self, unit_id: str) -> Optional[PlanAction]:
        return self.actions.get(unit_id)

    @property
    def steps(self) -> List[PlanStep]:
        return [step for level in self.ready_sets for step in level]

    def unit_ready_sets(self) -> List[List[str]]:
        """Ready-sets as unit ids (a replaced unit may appear in two sets)."""
        return [[step.unit_id for step in level] for level in self.ready_sets]

    def actions_of(self, action: ActionType) -> List[str]:
        return sorted(uid for uid, a in self.actions.items() if a.action is action)

    def step_position(self, step: PlanStep) -> int:
        """Index of the ready-set containing a step."""
        for i, level in enumerate(self.ready_sets):
            if step in level:
                return i
        raise KeyError(str(step))

    def summary(self) -> Dict[str, int]:
        counts = {action_type.value: 0 for action_type in ActionType}
        for action in self.actions.values():
            counts[action.action.value] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(a.action is not ActionType.NOOP for a in self.actions.values())

    def __repr__(self) -> str:
        return f"OrderedPlan(actions={len(self.actions)}, ready_sets={len(self.ready_sets)})"


def normalize_value(value: Any) -> Any:
    """Make stored and declared values comparable (tuples come back as lists)."""
    if isinstance(value, Mapping):
        return {key: normalize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_value(item) for item in value]
    return value


class Planner:
    """
    Planner diffs a dependency graph against recorded state and orders the work.

    The planner:
    1. Evaluates declared inputs against outputs known at plan time
    2. Classifies each unit as Create, Update, Replace, NoOp or Destroy
    3. Splits actions into steps and derives the step ordering
    4. Layers steps into ready-sets (ascending id, destroy before create)
    """

    def plan(self, graph: DependencyGraph, state: Mapping[str, StateRecord]) -> OrderedPlan:
        """
        Create an ordered plan.

        Args:
            graph: Validated dependency graph of declared units
            state: Last-applied records by unit id (see load_state_snapshot)

        Returns:
            OrderedPlan: Actions and ready-sets

        Raises:
            DestroyPrevented: If a protected unit would be destroyed or replaced
            CyclicDependency: If the step ordering cannot be satisfied
        """
        actions: Dict[str, PlanAction] = {}
        known_outputs: Dict[str, Mapping[str, Any]] = {}

        for unit_id in graph.topological_order():
            unit = graph.units[unit_id]
            record = state.get(unit_id)
            action = self._classify(unit, record, known_outputs)
            actions[unit_id] = action
            if record is None:
                continue
            if action.action is ActionType.NOOP:
                known_outputs[unit_id] = record.outputs
            elif action.action is ActionType.UPDATE:
                # outputs echoing a changed attribute are only known after apply
                known_outputs[unit_id] = {
                    name: value for name, value in record.outputs.items()
                    if name not in action.changes
                }

        for unit_id in sorted(set(state) - set(graph.units)):
            actions[unit_id] = PlanAction(
                unit_id=unit_id, action=ActionType.DESTROY, prior=state[unit_id]
            )

        self._check_prevent_destroy(actions)

        step_deps = self._order_steps(graph, state, actions)
        ready_sets = layer_ready_sets(step_deps, step_deps, step_sort_key)

        for action in actions.values():
            own = set(action.steps)
            preds: Set[str] = set()
            for step in own:
                preds.update(dep.unit_id for dep in step_deps[step] if dep not in own)
            action.predecessors = sorted(preds)

        plan = OrderedPlan(
            actions=actions,
            ready_sets=ready_sets,
            step_dependencies={step: frozenset(deps) for step, deps in step_deps.items()},
            graph=graph,
        )
        self._log_plan_summary(plan)
        return plan

    def _classify(
        self,
        unit: Unit,
        record: Optional[StateRecord],
        known_outputs: Mapping[str, Mapping[str, Any]],
    ) -> PlanAction:
        planned = self._evaluate_for_plan(unit, known_outputs)

        if record is None:
            return PlanAction(
                unit_id=unit.unit_id, action=ActionType.CREATE, unit=unit, planned_inputs=planned
            )

        ignored = unit.lifecycle.ignore_changes
        changes: Dict[str, AttributeChange] = {}
        for name in sorted((set(planned) | set(record.inputs)) - ignored):
            before = record.inputs.get(name)
            after = planned.get(name)
            if contains_unknown(after) or normalize_value(after) != normalize_value(before):
                changes[name] = AttributeChange(
                    before=before,
                    after=after,
                    forces_replacement=name in unit.lifecycle.force_new,
                )

        if any(change.forces_replacement for change in changes.values()):
            action_type = ActionType.REPLACE
        elif changes:
            action_type = ActionType.UPDATE
        else:
            action_type = ActionType.NOOP

        return PlanAction(
            unit_id=unit.unit_id,
            action=action_type,
            unit=unit,
            prior=record,
            changes=changes,
            planned_inputs=planned,
        )

    def _evaluate_for_plan(
        self, unit: Unit, known_outputs: Mapping[str, Mapping[str, Any]]
    ) -> Dict[str, Any]:
        """Evaluate inputs, deferring any attribute whose index is not yet known."""
        planned: Dict[str, Any] = {}
        for name, value in unit.inputs.items():
            try:
                planned[name] = evaluate(value, known_outputs, strict=False)
            except UnresolvedIndex as e:
                logger.debug(f"[PLAN] Deferring {unit.unit_id}.{name} to apply time: {e}")
                planned[name] = Unknown(Reference(e.unit_id, e.output, e.index))
        return planned

    def _check_prevent_destroy(self, actions: Mapping[str, PlanAction]) -> None:
        for unit_id in sorted(actions):
            action = actions[unit_id]
            if action.action is ActionType.DESTROY and action.prior and action.prior.prevent_destroy:
                raise DestroyPrevented(unit_id, "destroy")
            if action.action is ActionType.REPLACE and action.unit.lifecycle.prevent_destroy:
                raise DestroyPrevented(unit_id, "replace")

    def _order_steps(
        self,
        graph: DependencyGraph,
        state: Mapping[str, StateRecord],
        actions: Mapping[str, PlanAction],
    ) -> Dict[PlanStep, Set[PlanStep]]:
        """
        Derive the dependencies between plan steps.

        - create steps follow the create steps of their dependencies
        - a destroy step waits until every unit that used the old instance
          has been destroyed, updated or replaced
        - a replace destroys first unless something still uses the old
          instance or the unit is create_before_destroy
        """
        deps: Dict[PlanStep, Set[PlanStep]] = {}
        create_step: Dict[str, PlanStep] = {}
        destroy_step: Dict[str, PlanStep] = {}
        for unit_id, action in actions.items():
            for step in action.steps:
                deps[step] = set()
                if step.phase is StepPhase.CREATE:
                    create_step[unit_id] = step
                else:
                    destroy_step[unit_id] = step

        for unit_id in graph.units:
            for dep in graph.dependencies(unit_id):
                deps[create_step[unit_id]].add(create_step[dep])

        users: Dict[str, Set[str]] = {unit_id: set() for unit_id in destroy_step}
        for unit_id in destroy_step:
            if unit_id in graph:
                users[unit_id].update(graph.dependents(unit_id))
        for record in state.values():
            for dep in record.dependencies:
                if dep in users and dep != record.unit_id:
                    users[dep].add(record.unit_id)

        for unit_id, step in destroy_step.items():
            for user in users[unit_id]:
                if user in destroy_step:
                    deps[step].add(destroy_step[user])
                user_action = actions.get(user)
                if (
                    user in create_step
                    and user_action is not None
                    and user_action.action is not ActionType.NOOP
                ):
                    deps[step].add(create_step[user])

        replaced = sorted(
            unit_id for unit_id, action in actions.items() if action.action is ActionType.REPLACE
        )
        # create_before_destroy edges go in first: create steps only wait on
        # create steps at this point, so none of them can close a cycle
        for unit_id in replaced:
            if actions[unit_id].create_before_destroy:
                deps[destroy_step[unit_id]].add(create_step[unit_id])
                logger.debug(f"[PLAN] {unit_id}: create_before_destroy")

        for unit_id in replaced:
            if actions[unit_id].create_before_destroy:
                continue
            create, destroy = create_step[unit_id], destroy_step[unit_id]
            if _depends_on(deps, destroy, create):
                # dependents still use the old instance until they move to the new one
                deps[destroy].add(create)
                logger.debug(f"[PLAN] {unit_id}: old instance kept until dependents are updated")
            else:
                deps[create].add(destroy)
                logger.debug(f"[PLAN] {unit_id}: destroy old instance before creating replacement")

        return deps

    def _log_plan_summary(self, plan: OrderedPlan) -> None:
        summary = plan.summary()
        logger.info(
            f"[PLAN] {summary['create']} to create, {summary['update']} to update, "
            f"{summary['replace']} to replace, {summary['destroy']} to destroy, "
            f"{summary['noop']} unchanged"
        )
        for level_idx, level in enumerate(plan.ready_sets):
            logger.debug(f"[PLAN]   Set {level_idx}: {[str(step) for step in level]}")

    def analyze_parallelism(self, plan: OrderedPlan) -> Dict[str, Any]:
        """
        Analyze parallelism opportunities in the plan.

        Returns:
            Dict with total_steps, max_parallel, levels and bottlenecks
            (units with three or more direct dependents)
        """
        max_parallel = max((len(level) for level in plan.ready_sets), default=0)
        bottlenecks = sorted(
            unit_id for unit_id in plan.graph.units
            if len(plan.graph.dependents(unit_id)) >= 3
        )
        total = len(plan.steps)
        return {
            "total_steps": total,
            "max_parallel": max_parallel,
            "levels": len(plan.ready_sets),
            "bottlenecks": bottlenecks,
            "avg_steps_per_level": total / len(plan.ready_sets) if plan.ready_sets else 0,
        }


def _depends_on(deps: Mapping[PlanStep, Set[PlanStep]], start: PlanStep, target: PlanStep) -> bool:
    """Whether start (transitively) waits for target."""
    seen: Set[PlanStep] = set()
    to_visit = list(deps.get(start, ()))
    while to_visit:
        current = to_visit.pop()
        if current == target:
            return True
        if current in seen:
            continue
        seen.add(current)
        to_visit.extend(deps.get(current, ()))
    return False
