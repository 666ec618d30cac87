"""
Reference resolution: dependency edges and value evaluation.

Edges are extracted from every Reference found in a unit's inputs,
however deeply nested. Values are evaluated against a snapshot of known
outputs; anything not known yet is either deferred (plan time) or an
error (apply time).
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterator, Mapping, Set, Tuple
import logging

from .errors import DanglingReference, UnresolvedIndex
from .unit import Reference, Unit

logger = logging.getLogger(__name__)

OutputSnapshot = Mapping[str, Mapping[str, Any]]


@dataclass(frozen=True)
class Unknown:
    """A value that will only be known after the referenced unit is applied."""
    source: Reference

    def __repr__(self) -> str:
        return f"(known after apply: {self.source})"


def iter_references(value: Any, path: str = "") -> Iterator[Tuple[str, Reference]]:
    """
    Yield (path, reference) for every Reference inside a value.

    Index expressions that are themselves References are yielded too,
    since the unit depends on whatever produces the index.
    """
    if isinstance(value, Reference):
        yield path, value
        if isinstance(value.index, Reference):
            yield from iter_references(value.index, f"{path}[index]")
    elif isinstance(value, Mapping):
        for key, item in value.items():
            yield from iter_references(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            yield from iter_references(item, f"{path}[{i}]")


def resolve_references(unit: Unit, all_units: Mapping[str, Unit]) -> FrozenSet[str]:
    """
    Return the identifiers of every unit referenced by this unit's inputs.

    Args:
        unit: The unit whose inputs are scanned
        all_units: All units of the planning pass, by identifier

    Raises:
        DanglingReference: If a reference points at an unknown unit
    """
    targets: Set[str] = set()
    for path, reference in iter_references(unit.inputs):
        if reference.unit_id not in all_units:
            raise DanglingReference(unit.unit_id, reference.unit_id, path)
        if reference.unit_id != unit.unit_id:
            targets.add(reference.unit_id)
    return frozenset(targets)


def contains_unknown(value: Any) -> bool:
    """Check whether a value (or anything nested in it) is Unknown."""
    if isinstance(value, Unknown):
        return True
    if isinstance(value, Mapping):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def evaluate(value: Any, outputs: OutputSnapshot, strict: bool = False) -> Any:
    """
    Substitute References inside a value with concrete output values.

    Args:
        value: A literal, Reference, or nested list/dict of either
        outputs: Known outputs, unit_id -> output name -> value
        strict: If True, every reference must resolve (apply time). If
            False, unresolvable references become Unknown (plan time).

    Raises:
        UnresolvedIndex: If an index expression cannot be evaluated, or in
            strict mode if any reference cannot be resolved
    """
    if isinstance(value, Reference):
        return _evaluate_reference(value, outputs, strict)
    if isinstance(value, Mapping):
        return {key: evaluate(item, outputs, strict) for key, item in value.items()}
    if isinstance(value, list):
        return [evaluate(item, outputs, strict) for item in value]
    if isinstance(value, tuple):
        return tuple(evaluate(item, outputs, strict) for item in value)
    return value


def evaluate_inputs(unit: Unit, outputs: OutputSnapshot, strict: bool = False) -> Dict[str, Any]:
    """Evaluate all of a unit's inputs; see evaluate()."""
    return {name: evaluate(value, outputs, strict) for name, value in unit.inputs.items()}


def _evaluate_reference(reference: Reference, outputs: OutputSnapshot, strict: bool) -> Any:
    unit_outputs = outputs.get(reference.unit_id)
    if unit_outputs is None or reference.output not in unit_outputs:
        if strict:
            raise UnresolvedIndex(
                reference.unit_id, reference.output, reference.index,
                reason="output not available",
            )
        if isinstance(reference.index, Reference):
            index_value = _evaluate_reference(reference.index, outputs, strict)
            if isinstance(index_value, Unknown):
                raise UnresolvedIndex(
                    reference.unit_id, reference.output, reference.index,
                    reason="index depends on an output not known at plan time",
                )
        return Unknown(reference)

    value = unit_outputs[reference.output]
    if reference.index is None:
        return value

    index = reference.index
    if isinstance(index, Reference):
        index = _evaluate_reference(index, outputs, strict)
        if isinstance(index, Unknown):
            raise UnresolvedIndex(
                reference.unit_id, reference.output, reference.index,
                reason="index depends on an output not known at plan time",
            )
    try:
        return value[index]
    except (IndexError, KeyError, TypeError) as e:
        raise UnresolvedIndex(
            reference.unit_id, reference.output, index,
            reason=f"cannot index {type(value).__name__}: {e}",
        ) from e
