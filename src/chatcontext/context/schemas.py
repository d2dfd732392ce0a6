"""Context engine data models."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from chatcontext.errors import DegradedModeWarning
from chatcontext.models.messages import Message
from chatcontext.models.schemas import ContextSource
from chatcontext.models.schemas import MemoryKind

SECTION_TITLES: dict[ContextSource, str] = {
    ContextSource.history: "Conversation history",
    ContextSource.episodic: "Episodic memory",
    ContextSource.semantic: "Semantic memory",
    ContextSource.knowledge: "Knowledge",
}


class CandidateReason(str, Enum):
    """Why a candidate was included in or excluded from the window."""

    required = "required"
    selected = "selected"
    compressed = "compressed"
    budget = "budget"
    below_threshold = "below_threshold"
    limit = "limit"


class ContextCandidate(BaseModel):
    """A scored fragment that may enter the context window."""

    id: str
    source: ContextSource
    content: str
    tokens: int = Field(ge=0, description="Estimated token cost of ``content``.")
    original_tokens: int = Field(default=0, ge=0)
    relevance: float = Field(default=0.0, ge=0.0, le=1.0)
    timestamp: float = Field(default=0.0, description="Unix epoch; newer is more recent.")
    score: float = Field(default=0.0, description="Composite score set by the optimizer.")
    included: bool = False
    reason: CandidateReason | None = None
    compressed: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        if not self.original_tokens:
            self.original_tokens = self.tokens


class ContextFragment(BaseModel):
    id: str
    content: str
    tokens: int
    score: float
    role: str | None = None
    compressed: bool = False


class ContextSection(BaseModel):
    source: ContextSource
    title: str
    fragments: list[ContextFragment] = Field(default_factory=list)


class OptimizedContext(BaseModel):
    """The engine's output: an ordered, budget-bounded context window."""

    sections: list[ContextSection] = Field(default_factory=list)
    total_tokens: int = 0
    token_budget: int = 0
    sources_used: list[ContextSource] = Field(default_factory=list)
    quality_score: float = 1.0
    compression_applied: bool = False
    candidates: list[ContextCandidate] = Field(default_factory=list)
    warnings: list[DegradedModeWarning] = Field(default_factory=list)
    fallback: bool = False

    def included(self) -> list[ContextCandidate]:
        return [c for c in self.candidates if c.included]

    def exclusion_counts(self) -> dict[str, int]:
        counts = Counter(
            c.reason.value for c in self.candidates if not c.included and c.reason
        )
        return dict(sorted(counts.items()))

    def memory_ids(self) -> list[str]:
        return [
            str(c.metadata["item_id"])
            for c in self.included()
            if c.source in (ContextSource.episodic, ContextSource.semantic)
            and "item_id" in c.metadata
        ]

    def history_messages(self) -> list[dict[str, str]]:
        """History fragments as provider chat messages, oldest first."""
        return [
            {"role": fragment.role or "user", "content": fragment.content}
            for section in self.sections
            if section.source is ContextSource.history
            for fragment in section.fragments
        ]

    def reference_text(self) -> str:
        """Non-history sections rendered as headed text blocks."""
        blocks = []
        for section in self.sections:
            if section.source is ContextSource.history or not section.fragments:
                continue
            lines = "\n".join(f"- {f.content}" for f in section.fragments)
            blocks.append(f"## {section.title}\n{lines}")
        return "\n\n".join(blocks)

    def render(self, format: str = "text") -> str | list[dict[str, str]]:
        """Provider-ready layout: one prompt string or role/content blocks."""
        if format == "text":
            return self.render_text()
        if format == "messages":
            blocks = []
            reference = self.reference_text()
            if reference:
                blocks.append({"role": "system", "content": reference})
            blocks.extend(self.history_messages())
            return blocks
        raise ValueError(f"unsupported render format {format!r}")

    def render_text(self) -> str:
        """Whole window as one text block, sections in priority order."""
        blocks = []
        for section in self.sections:
            if not section.fragments:
                continue
            if section.source is ContextSource.history:
                lines = "\n".join(
                    f"{f.role or 'user'}: {f.content}" for f in section.fragments
                )
            else:
                lines = "\n".join(f"- {f.content}" for f in section.fragments)
            blocks.append(f"## {section.title}\n{lines}")
        return "\n\n".join(blocks)


@dataclass(frozen=True)
class ConversationContext:
    """What the retriever needs to know about the request it serves."""

    scope: str
    conversation_id: str | None = None
    history: list[Message] = field(default_factory=list)
    memory_kinds: tuple[MemoryKind, ...] = ()
    max_memory_results: int = 10
    min_memory_relevance: float = 0.2
    request_id: str | None = None
