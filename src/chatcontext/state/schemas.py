"""State domain data models."""

from __future__ import annotations

import hashlib
import json
import time
import uuid
from typing import Any
from typing import Literal

from pydantic import BaseModel
from pydantic import Field

from chatcontext.models.schemas import CheckpointRetention


class StateValue(BaseModel):
    """One named variable in a scope, with its write version."""

    scope: str
    key: str
    value: Any = None
    version: int = Field(default=0, ge=0)
    updated_at: float = Field(default_factory=time.time)
    deleted: bool = Field(
        default=False,
        description="Tombstone left by restore; keeps the version monotonic.",
    )


class Checkpoint(BaseModel):
    """Immutable copy of a scope's live variables."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: f"ckpt_{uuid.uuid4().hex}")
    scope: str
    created_at: float = Field(default_factory=time.time)
    description: str = ""
    retention: CheckpointRetention = CheckpointRetention.temporary
    values: dict[str, Any] = Field(
        default_factory=dict,
        description="Key to value at checkpoint time (live keys only).",
    )
    versions: dict[str, int] = Field(default_factory=dict)
    content_hash: str = ""


class StateChange(BaseModel):
    """Notification payload for one versioned mutation."""

    model_config = {"frozen": True}

    scope: str
    key: str
    old_version: int
    new_version: int
    trigger: Literal["set", "restore"] = "set"
    deleted: bool = False
    timestamp: float = Field(default_factory=time.time)


def content_hash(values: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON encoding of *values*."""
    canonical = json.dumps(values, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
