"""Memory domain data models."""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass
from dataclasses import field

from pydantic import BaseModel
from pydantic import Field

from chatcontext.models.schemas import MemoryKind

_SECONDS_PER_DAY = 86400.0


class MemoryItem(BaseModel):
    """A durable unit of recall, scoped to one agent."""

    id: str = Field(
        default_factory=lambda: f"mem_{uuid.uuid4().hex}",
        description="Unique identifier, auto-generated as mem_{uuid4_hex}.",
    )
    scope: str = Field(description="Owning agent scope.")
    conversation_id: str | None = Field(
        default=None,
        description="Conversation an episodic item was summarized from.",
    )
    kind: MemoryKind = Field(default=MemoryKind.episodic)
    content: str = Field(description="Summarized textual content.")
    keywords: list[str] = Field(
        default_factory=list,
        description="Reference key for similarity search (sorted keywords).",
    )
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    decay_rate: float = Field(
        default=0.1,
        ge=0.0,
        description="Importance decay per day without access.",
    )
    access_count: int = Field(default=0, ge=0)
    created_at: float = Field(default_factory=time.time)
    last_accessed: float = Field(default_factory=time.time)
    decayed_at: float = Field(
        default_factory=time.time,
        description="Last time decay was applied; decay never double counts.",
    )
    promoted: bool = Field(
        default=False,
        description="Episodic item already promoted into semantic memory.",
    )
    source_ids: list[str] = Field(
        default_factory=list,
        description="Items merged or promoted into this one.",
    )
    version: int = Field(default=0, description="Optimistic write version.")

    def decayed_importance(self, now: float) -> float:
        """Importance after exponential decay since last access or decay."""
        since = max(self.last_accessed, self.decayed_at)
        days = max(now - since, 0.0) / _SECONDS_PER_DAY
        return self.importance * math.exp(-self.decay_rate * days)


@dataclass(frozen=True)
class ScoredMemory:
    item: MemoryItem
    score: float


@dataclass(frozen=True)
class MemoryRetrieval:
    """Result of a relevance query; ``degraded`` when the backend failed."""

    items: list[ScoredMemory] = field(default_factory=list)
    degraded: bool = False
    warning: str | None = None


@dataclass
class ConsolidationResult:
    scope: str
    created: list[str] = field(default_factory=list)
    promoted: int = 0
    merged: int = 0
    decayed: int = 0
    pruned: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)
