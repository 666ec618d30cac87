"""
InMemoryProvider: a simulated cloud for tests, demos and dry runs.

Resources get generated ids ("vpc-0001"), calls are logged with
timestamps, latency and failures can be injected per unit.
"""
from __future__ import annotations
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from ..engine.errors import ProviderError

logger = logging.getLogger(__name__)

OutputsFactory = Callable[[str, Dict[str, Any]], Dict[str, Any]]


@dataclass
class ProviderCall:
    """One recorded provider call."""
    op: str
    unit_id: str
    start_time: float
    end_time: Optional[float] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class InMemoryProvider:
    """
    Simulates resource CRUD in process memory.

    Args:
        latency: Seconds each call sleeps, or a mapping unit_id -> seconds
        fail: unit_id -> error message; create/update/destroy of that unit raise
        outputs: resource type -> factory(unit_id, inputs) returning extra outputs
    """

    def __init__(
        self,
        latency: Any = 0.0,
        fail: Optional[Mapping[str, str]] = None,
        outputs: Optional[Mapping[str, OutputsFactory]] = None,
    ):
        self.latency = latency
        self.fail: Dict[str, str] = dict(fail or {})
        self.outputs_factories: Dict[str, OutputsFactory] = dict(outputs or {})
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[ProviderCall] = []
        self._counter = itertools.count(1)
        self._in_flight = 0
        self.max_in_flight = 0

    async def create(self, unit, inputs: Dict[str, Any]) -> Dict[str, Any]:
        async with self._track("create", unit.unit_id, inputs):
            resource_id = f"{unit.unit_type.replace('aws_', '').replace('_', '-')}-{next(self._counter):04d}"
            outputs = self._build_outputs(unit.unit_type, unit.unit_id, resource_id, inputs)
            self.resources[resource_id] = {"unit_id": unit.unit_id, "inputs": dict(inputs)}
            return outputs

    async def update(self, unit, inputs: Dict[str, Any], changes, prior) -> Dict[str, Any]:
        async with self._track("update", unit.unit_id, inputs):
            resource_id = prior.outputs.get("id")
            if resource_id not in self.resources:
                raise ProviderError(unit.unit_id, message=f"resource {resource_id!r} does not exist")
            self.resources[resource_id]["inputs"] = dict(inputs)
            return self._build_outputs(unit.unit_type, unit.unit_id, resource_id, inputs)

    async def destroy(self, record) -> None:
        async with self._track("destroy", record.unit_id, record.inputs):
            resource_id = record.outputs.get("id")
            if self.resources.pop(resource_id, None) is None:
                logger.debug(f"[PROVIDER] {record.unit_id} ({resource_id}) already absent")

    def calls_for(self, unit_id: str) -> List[ProviderCall]:
        return [call for call in self.calls if call.unit_id == unit_id]

    @property
    def live_units(self) -> Set[str]:
        return {resource["unit_id"] for resource in self.resources.values()}

    def _build_outputs(
        self, unit_type: str, unit_id: str, resource_id: str, inputs: Dict[str, Any]
    ) -> Dict[str, Any]:
        outputs: Dict[str, Any] = dict(inputs)
        outputs["id"] = resource_id
        outputs["arn"] = f"arn:aws:sim:::{unit_type}/{resource_id}"
        factory = self.outputs_factories.get(unit_type)
        if factory:
            outputs.update(factory(unit_id, dict(inputs)))
        return outputs

    def _track(self, op: str, unit_id: str, inputs: Mapping[str, Any]) -> "_CallTracker":
        return _CallTracker(self, op, unit_id, dict(inputs))

    def _latency_for(self, unit_id: str) -> float:
        if isinstance(self.latency, Mapping):
            return float(self.latency.get(unit_id, 0.0))
        return float(self.latency)


class _CallTracker:
    """Records a call, applies latency and injected failures."""

    def __init__(self, provider: InMemoryProvider, op: str, unit_id: str, inputs: Dict[str, Any]):
        self.provider = provider
        self.call = ProviderCall(op=op, unit_id=unit_id, start_time=time.time(), inputs=inputs)

    async def __aenter__(self):
        provider = self.provider
        provider.calls.append(self.call)
        provider._in_flight += 1
        provider.max_in_flight = max(provider.max_in_flight, provider._in_flight)
        delay = provider._latency_for(self.call.unit_id)
        if delay:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                provider._in_flight -= 1
                self.call.end_time = time.time()
                self.call.error = "cancelled"
                raise
        message = provider.fail.get(self.call.unit_id)
        if message is not None:
            provider._in_flight -= 1
            self.call.end_time = time.time()
            self.call.error = message
            raise ProviderError(self.call.unit_id, message=message)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.provider._in_flight -= 1
        self.call.end_time = time.time()
        if exc is not None:
            self.call.error = str(exc)
        return False
