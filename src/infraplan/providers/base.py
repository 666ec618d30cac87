# infraplan/providers/base.py
from __future__ import annotations
import asyncio
import inspect
from typing import TYPE_CHECKING, Any, Callable, Dict, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..engine.planner import AttributeChange
    from ..engine.unit import Unit
    from ..state.records import StateRecord


@runtime_checkable
class Provider(Protocol):
    """
    The collaborator that actually talks to the cloud.

    Methods may be coroutines or plain functions; plain functions are run
    in a worker thread by the executor. Failures are reported by raising;
    the executor wraps anything that is not already a ProviderError.

    create/update must be safe to retry (the engine or a RetryingProvider
    may repeat a timed-out call). destroy is called at most once per apply
    and should treat "already absent" as success.
    """

    # ---- Create / update: return the unit's outputs -------------------------
    async def create(self, unit: Unit, inputs: Dict[str, Any]) -> Dict[str, Any]: ...
    async def update(
        self,
        unit: Unit,
        inputs: Dict[str, Any],
        changes: Dict[str, AttributeChange],
        prior: StateRecord,
    ) -> Dict[str, Any]: ...

    # ---- Destroy: works from the recorded state, the unit may be gone -------
    async def destroy(self, record: StateRecord) -> None: ...


async def call_maybe_async(func: Callable[..., Any], *args: Any) -> Any:
    """Await a coroutine function, or run a plain function in the default thread pool."""
    if inspect.iscoroutinefunction(func):
        return await func(*args)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args))
