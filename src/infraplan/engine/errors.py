"""
Errors raised while building, planning and applying a provisioning graph.

Plan-time errors (PlanningError subclasses) abort planning entirely: no
partial plan is ever produced. Apply-time errors (ProviderError family)
are scoped to a single unit and only fail that unit and its dependents.
"""
from __future__ import annotations
from typing import Any, List, Optional, Sequence


class InfraplanError(Exception):
    """Base class for all engine errors."""
    pass


class PlanningError(InfraplanError):
    """Raised when a graph or plan cannot be produced."""
    pass


class DuplicateIdentifier(PlanningError):
    """Raised when two units share the same identifier."""

    def __init__(self, unit_id: str):
        self.unit_id = unit_id
        super().__init__(f"Unit {unit_id!r} is already defined")


class DanglingReference(PlanningError):
    """Raised when a unit references or depends on a unit that does not exist."""

    def __init__(self, unit_id: str, target: str, path: str = ""):
        self.unit_id = unit_id
        self.target = target
        self.path = path
        where = f" (at {path})" if path else ""
        super().__init__(
            f"Unit {unit_id!r} references unknown unit {target!r}{where}"
        )


class CyclicDependency(PlanningError):
    """
    Raised when the dependency graph contains a cycle.

    Attributes:
        cycle: Ordered unit ids forming the cycle; the first and last
            entries are the same id.
    """

    def __init__(self, cycle: Sequence[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(f"Cyclic dependency: {' -> '.join(self.cycle)}")


class DestroyPrevented(PlanningError):
    """Raised when a unit marked prevent_destroy would be destroyed or replaced."""

    def __init__(self, unit_id: str, action: str):
        self.unit_id = unit_id
        self.action = action
        super().__init__(
            f"Unit {unit_id!r} has prevent_destroy set but the plan would {action} it"
        )


class DeclarationError(PlanningError):
    """Raised when a declaration tree cannot be turned into units."""
    pass


class UnresolvedIndex(InfraplanError):
    """
    Raised when a reference or index cannot be evaluated yet.

    At plan time this is not fatal: the attribute is deferred and
    re-evaluated once the referenced unit has been applied. At apply time
    it fails the unit that needed the value.
    """

    def __init__(self, unit_id: str, output: str, index: Any = None, reason: str = ""):
        self.unit_id = unit_id
        self.output = output
        self.index = index
        self.reason = reason
        target = f"{unit_id}.{output}"
        if index is not None:
            target += f"[{index!r}]"
        msg = f"Cannot resolve {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ProviderError(InfraplanError):
    """
    Wraps a failure reported by the provider collaborator.

    Attributes:
        unit_id: The unit whose action failed
        cause: The raw error raised by the provider
    """

    def __init__(self, unit_id: str, cause: Optional[BaseException] = None, message: str = ""):
        self.unit_id = unit_id
        self.cause = cause
        detail = message or (str(cause) if cause is not None else "provider error")
        super().__init__(f"Unit {unit_id!r}: {detail}")


class ProviderTimeout(ProviderError):
    """Raised when a provider call exceeds its per-action deadline."""

    def __init__(self, unit_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(unit_id, message=f"timed out after {timeout}s")


class ExecutionCancelled(InfraplanError):
    """Recorded for steps that never started because execution was cancelled."""

    def __init__(self, unit_id: str):
        self.unit_id = unit_id
        super().__init__(f"Unit {unit_id!r} not started: execution cancelled")
