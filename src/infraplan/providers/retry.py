"""
Retry wrapper for provider calls.

The engine never retries on its own; callers opt in by wrapping their
provider. Only create and update are retried since destroy is not assumed
to be idempotent.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

from .base import Provider, call_maybe_async

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound on any single delay
        attempt_timeout: Optional deadline for each individual attempt
        retry_on: Exception types that trigger a retry
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    attempt_timeout: Optional[float] = None
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.attempt_timeout is not None and self.attempt_timeout <= 0:
            raise ValueError(f"attempt_timeout must be > 0, got {self.attempt_timeout}")

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def total_timeout(self) -> Optional[float]:
        """Deadline covering every attempt and the backoff between them."""
        if self.attempt_timeout is None:
            return None
        backoff = sum(self.delay_for(attempt) for attempt in range(1, self.max_attempts))
        return self.max_attempts * self.attempt_timeout + backoff


class RetryingProvider:
    """Wraps a provider and retries create/update according to a RetryPolicy."""

    def __init__(
        self,
        provider: Provider,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self.attempts: Dict[str, int] = {}

    async def create(self, unit, inputs):
        return await self._with_retries("create", unit.unit_id, self.provider.create, unit, inputs)

    async def update(self, unit, inputs, changes, prior):
        return await self._with_retries(
            "update", unit.unit_id, self.provider.update, unit, inputs, changes, prior
        )

    async def destroy(self, record):
        return await call_maybe_async(self.provider.destroy, record)

    async def _with_retries(self, op: str, unit_id: str, func: Callable, *args) -> Any:
        policy = self.policy
        for attempt in range(1, policy.max_attempts + 1):
            self.attempts[unit_id] = attempt
            try:
                call = call_maybe_async(func, *args)
                if policy.attempt_timeout:
                    return await asyncio.wait_for(call, timeout=policy.attempt_timeout)
                return await call
            except policy.retry_on as e:
                if attempt >= policy.max_attempts:
                    logger.error(f"[RETRY] {op} {unit_id} failed after {attempt} attempts: {e!r}")
                    raise
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"[RETRY] {op} {unit_id} failed (attempt {attempt}/{policy.max_attempts}): "
                    f"{e!r}; retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
