from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

STATE_FORMAT_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateRecord(BaseModel):
    """
    Last successfully applied snapshot of one unit.

    A record exists only once the unit has been applied at least once;
    absence means "not yet created". `inputs` are the resolved inputs sent
    to the provider, `dependencies` the unit ids it depended on at the time
    (used to order destroys once the unit is no longer declared).
    """
    model_config = ConfigDict(frozen=True)

    unit_id: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    prevent_destroy: bool = False
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("dependencies", mode="after")
    @classmethod
    def _sort_dependencies(cls, v: List[str]) -> List[str]:
        # stable ordering keeps stored documents diff-friendly
        return sorted(set(v))

    @field_validator("unit_id")
    @classmethod
    def _non_empty_id(cls, v: str) -> str:
        if not v:
            raise ValueError("unit_id must be non-empty")
        return v


class StateDocument(BaseModel):
    """Serializable dump of a whole state store."""
    version: int = STATE_FORMAT_VERSION
    records: List[StateRecord] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def _supported_version(cls, v: int) -> int:
        if v != STATE_FORMAT_VERSION:
            raise ValueError(f"unsupported state format version {v}")
        return v
