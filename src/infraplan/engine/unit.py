"""
Unit: A single provisionable entity in a dependency graph.

This module defines units, the references between them, their lifecycle
rules, and the registry that enforces identifier uniqueness.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Union

from .errors import DuplicateIdentifier


@dataclass(frozen=True)
class Reference:
    """
    A pointer from a unit input to another unit's output.

    Attributes:
        unit_id: The unit that produces the output
        output: Name of the output attribute
        index: Optional element selector applied to the output. Either a
            literal (list position or map key) or another Reference whose
            value is used as the index.
    """
    unit_id: str
    output: str
    index: Union[int, str, "Reference", None] = None

    def __str__(self) -> str:
        text = f"{self.unit_id}.{self.output}"
        if self.index is not None:
            text += f"[{self.index}]"
        return text


def ref(unit_id: str, output: str, index: Union[int, str, Reference, None] = None) -> Reference:
    """Shorthand for building a Reference."""
    return Reference(unit_id=unit_id, output=output, index=index)


@dataclass(frozen=True)
class Lifecycle:
    """
    Lifecycle rules for a unit.

    Attributes:
        force_new: Attributes that cannot be updated in place; changing any
            of them replaces the unit
        create_before_destroy: On replace, create the new instance before
            destroying the old one
        ignore_changes: Attributes excluded from diffing
        prevent_destroy: Refuse any plan that destroys or replaces the unit
    """
    force_new: FrozenSet[str] = field(default_factory=frozenset)
    create_before_destroy: bool = False
    ignore_changes: FrozenSet[str] = field(default_factory=frozenset)
    prevent_destroy: bool = False

    def __post_init__(self):
        if not isinstance(self.force_new, frozenset):
            object.__setattr__(self, 'force_new', frozenset(self.force_new))
        if not isinstance(self.ignore_changes, frozenset):
            object.__setattr__(self, 'ignore_changes', frozenset(self.ignore_changes))


@dataclass(frozen=True)
class Unit:
    """
    A provisionable unit (a resource or a composed module member).

    Units are immutable for the duration of a planning pass. Inputs may
    embed References anywhere inside lists and dicts; their targets are
    validated when the graph is built, not here.

    Attributes:
        unit_id: Unique identifier, conventionally "<type>.<name>"
        inputs: Input attribute name -> literal, Reference or nested values
        depends_on: Explicit dependency identifiers
        lifecycle: Replacement and protection rules
    """
    unit_id: str
    inputs: Mapping[str, Any] = field(default_factory=dict)
    depends_on: FrozenSet[str] = field(default_factory=frozenset)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    def __post_init__(self):
        if not self.unit_id:
            raise ValueError("unit_id must be a non-empty string")
        if not isinstance(self.depends_on, frozenset):
            object.__setattr__(self, 'depends_on', frozenset(self.depends_on))
        object.__setattr__(self, 'inputs', dict(self.inputs))

    @property
    def unit_type(self) -> str:
        """The resource type part of the identifier ("aws_vpc" for "aws_vpc.main")."""
        head, _, _ = self.unit_id.rpartition(".")
        return head.rsplit(".", 1)[-1] if head else self.unit_id

    def __hash__(self) -> int:
        """Hash by identifier; inputs are mutable containers."""
        return hash(self.unit_id)

    def __repr__(self) -> str:
        return (
            f"Unit(id={self.unit_id!r}, "
            f"inputs={sorted(self.inputs)}, "
            f"depends_on={sorted(self.depends_on)})"
        )


@dataclass(frozen=True)
class UnitVariant:
    """One shape a conditional unit can take."""
    inputs: Mapping[str, Any] = field(default_factory=dict)
    depends_on: FrozenSet[str] = field(default_factory=frozenset)
    lifecycle: Optional[Lifecycle] = None


@dataclass(frozen=True)
class UnitTemplate:
    """
    A tagged union of unit shapes, resolved to one Unit before planning.

    Shared inputs are merged under the selected variant's inputs, so a
    boolean switch such as "use the hardened image" is expressed as two
    variants instead of branches inside attribute values.
    """
    unit_id: str
    variants: Mapping[str, UnitVariant]
    inputs: Mapping[str, Any] = field(default_factory=dict)
    depends_on: FrozenSet[str] = field(default_factory=frozenset)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    def select(self, variant: str) -> Unit:
        """Return the concrete Unit for the named variant."""
        if variant not in self.variants:
            raise KeyError(
                f"Unit {self.unit_id!r} has no variant {variant!r}; "
                f"choose one of {sorted(self.variants)}"
            )
        chosen = self.variants[variant]
        merged = dict(self.inputs)
        merged.update(chosen.inputs)
        return Unit(
            unit_id=self.unit_id,
            inputs=merged,
            depends_on=frozenset(self.depends_on) | frozenset(chosen.depends_on),
            lifecycle=chosen.lifecycle or self.lifecycle,
        )


class UnitRegistry:
    """
    Collects units for one planning pass and enforces unique identifiers.

    Example:
        >>> registry = UnitRegistry()
        >>> registry.define_unit("aws_vpc.main", {"cidr_block": "10.0.0.0/16"})
        >>> registry.define_unit(
        ...     "aws_subnet.public",
        ...     {"vpc_id": ref("aws_vpc.main", "id")},
        ... )
    """

    def __init__(self, units: Optional[Iterable[Unit]] = None):
        self._units: Dict[str, Unit] = {}
        for unit in units or ():
            self.add(unit)

    def define_unit(
        self,
        unit_id: str,
        inputs: Optional[Mapping[str, Any]] = None,
        depends_on: Iterable[str] = (),
        lifecycle: Optional[Lifecycle] = None,
    ) -> Unit:
        """
        Create and register a unit.

        Raises:
            DuplicateIdentifier: If unit_id is already registered
        """
        unit = Unit(
            unit_id=unit_id,
            inputs=dict(inputs or {}),
            depends_on=frozenset(depends_on),
            lifecycle=lifecycle or Lifecycle(),
        )
        return self.add(unit)

    def add(self, unit: Unit) -> Unit:
        if unit.unit_id in self._units:
            raise DuplicateIdentifier(unit.unit_id)
        self._units[unit.unit_id] = unit
        return unit

    def get(self, unit_id: str) -> Optional[Unit]:
        return self._units.get(unit_id)

    @property
    def units(self) -> List[Unit]:
        return list(self._units.values())

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._units

    def __iter__(self) -> Iterator[Unit]:
        return iter(self._units.values())

    def __len__(self) -> int:
        return len(self._units)
