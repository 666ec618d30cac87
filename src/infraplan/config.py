"""
Engine configuration.

Values come from keyword arguments or, via EngineConfig.from_env(), from
INFRAPLAN_* environment variables.
"""
from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .providers.retry import RetryPolicy


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    if raw.lower() in ("none", "off", "0"):
        return None
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """
    Attributes:
        max_concurrency: Provider calls allowed in flight at once
        default_timeout: Per-action deadline in seconds (None = no deadline)
        retry_attempts: Attempts for create/update; 1 disables retrying
        retry_base_delay: First backoff delay in seconds
        retry_max_delay: Backoff ceiling in seconds
        enable_tracing: Record a per-step execution trace
        state_backend: "memory" or "mongodb"
        state_uri: MongoDB connection string for the mongodb backend
        state_db_name: Database holding the state collection
        state_collection: Collection holding state records
    """
    max_concurrency: int = 10
    default_timeout: Optional[float] = 300.0
    retry_attempts: int = 1
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    enable_tracing: bool = True
    state_backend: str = "memory"
    state_uri: str = "mongodb://localhost:27017"
    state_db_name: str = "infraplan"
    state_collection: str = "state"

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.default_timeout is not None and self.default_timeout <= 0:
            raise ValueError(f"default_timeout must be > 0, got {self.default_timeout}")
        if self.retry_attempts < 1:
            raise ValueError(f"retry_attempts must be >= 1, got {self.retry_attempts}")

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineConfig:
        """Build a config from INFRAPLAN_* environment variables."""
        values: Dict[str, Any] = {
            "max_concurrency": int(os.getenv("INFRAPLAN_MAX_CONCURRENCY", "10")),
            "default_timeout": _env_float("INFRAPLAN_DEFAULT_TIMEOUT", 300.0),
            "retry_attempts": int(os.getenv("INFRAPLAN_RETRY_ATTEMPTS", "1")),
            "retry_base_delay": float(os.getenv("INFRAPLAN_RETRY_BASE_DELAY", "1.0")),
            "retry_max_delay": float(os.getenv("INFRAPLAN_RETRY_MAX_DELAY", "30.0")),
            "enable_tracing": _env_bool("INFRAPLAN_TRACING", True),
            "state_backend": os.getenv("INFRAPLAN_STATE_BACKEND", "memory"),
            "state_uri": os.getenv("INFRAPLAN_STATE_URI", "mongodb://localhost:27017"),
            "state_db_name": os.getenv("INFRAPLAN_STATE_DB", "infraplan"),
            "state_collection": os.getenv("INFRAPLAN_STATE_COLLECTION", "state"),
        }
        values.update(overrides)
        return cls(**values)

    def retry_policy(self) -> Optional[RetryPolicy]:
        """The retry policy to wrap providers with, or None if retrying is off."""
        if self.retry_attempts <= 1:
            return None
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            attempt_timeout=self.default_timeout,
        )

    def state_store_config(self) -> Dict[str, Any]:
        """Configuration dict for create_state_store()."""
        if self.state_backend == "mongodb":
            return {
                "backend": "mongodb",
                "uri": self.state_uri,
                "db_name": self.state_db_name,
                "collection": self.state_collection,
            }
        return {"backend": self.state_backend}
