"""Pydantic models for the chat request/response contracts.

Two wire shapes are supported: the structured (versioned) shape used
internally and by new clients, and the flat legacy shape kept for old
clients. Input models validate requests; output models shape responses.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any
from typing import Literal

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from chatcontext.errors import FieldError
from chatcontext.models.messages import Message
from chatcontext.models.messages import MessageContent
from chatcontext.models.messages import Role

CURRENT_VERSION = "2.0.0"
SUPPORTED_MAJOR = 2

_SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)(?:[-+][0-9A-Za-z.-]+)?$")

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProtocolVersion(str, Enum):
    """Request/response shape a caller speaks."""

    legacy = "legacy"
    structured = "structured"


class MemoryKind(str, Enum):
    """Memory store a recall item lives in."""

    episodic = "episodic"
    semantic = "semantic"


class ContextSource(str, Enum):
    """Origin of a context candidate, declared in priority order."""

    history = "history"
    episodic = "episodic"
    semantic = "semantic"
    knowledge = "knowledge"


SOURCE_PRIORITY: dict[ContextSource, int] = {
    source: rank for rank, source in enumerate(ContextSource)
}


class CheckpointRetention(str, Enum):
    temporary = "temporary"
    permanent = "permanent"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class MessageInput(BaseModel):
    """Inbound message: role plus tagged content."""

    role: Role = Field(default=Role.user)
    content: MessageContent = Field(description="Tagged message body.")
    metadata: dict[str, Any] = Field(default_factory=dict)


class RequestContext(BaseModel):
    """Identifiers the request is scoped to."""

    agent_id: str | None = Field(default=None)
    conversation_id: str | None = Field(default=None)
    session_id: str | None = Field(default=None)
    user_id: str | None = Field(default=None)


class ResponseOptions(BaseModel):
    stream: bool = Field(default=False, description="Emit incremental chunks.")
    include_metadata: bool = Field(
        default=True,
        description="Attach the full processing_details trace.",
    )
    include_metrics: bool = Field(
        default=True,
        description="Attach ProcessingMetrics.",
    )
    max_tokens: int | None = Field(
        default=None,
        gt=0,
        description="Completion token cap, bounded by the reserved completion allowance.",
    )


class MemoryOptions(BaseModel):
    enabled: bool = Field(default=True)
    kinds: list[MemoryKind] = Field(
        default_factory=lambda: [MemoryKind.episodic, MemoryKind.semantic],
    )
    max_results: int = Field(default=10, ge=1, le=100)
    min_relevance: float = Field(default=0.2, ge=0.0, le=1.0)


class StateOptions(BaseModel):
    save_checkpoint: bool = Field(
        default=False,
        description="Checkpoint session state after the response is persisted.",
    )
    include_shared: bool = Field(
        default=True,
        description="Load the agent-wide shared scope alongside session state.",
    )


class ContextOptions(BaseModel):
    max_messages: int = Field(default=20, ge=0, le=200)
    token_budget: int | None = Field(
        default=None,
        gt=0,
        description="Lowers the model-derived context budget; never raises it.",
    )
    required_sources: list[ContextSource] = Field(default_factory=list)
    excluded_sources: list[ContextSource] = Field(default_factory=list)


class RequestOptions(BaseModel):
    """Option groups; response/memory/state must all be present."""

    response: ResponseOptions
    memory: MemoryOptions
    state: StateOptions
    context: ContextOptions = Field(default_factory=ContextOptions)


class StructuredRequest(BaseModel):
    """Versioned request shape."""

    model_config = {"extra": "forbid"}

    version: str = Field(description="Semver of the contract, major 2.")
    message: MessageInput
    context: RequestContext = Field(default_factory=RequestContext)
    options: RequestOptions
    request_id: str | None = Field(default=None)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        match = _SEMVER_RE.match(value)
        if match is None:
            raise ValueError("version must be a semver string such as 2.0.0")
        if int(match.group(1)) != SUPPORTED_MAJOR:
            raise ValueError(f"unsupported major version {match.group(1)}")
        return value


class LegacyRequest(BaseModel):
    """Flat request shape kept for old clients."""

    model_config = {"extra": "allow"}

    agentId: str
    message: str
    conversationId: str | None = None
    sessionId: str | None = None
    userId: str | None = None


def default_options() -> dict[str, Any]:
    """Every option group filled with its explicit default."""
    return RequestOptions(
        response=ResponseOptions(),
        memory=MemoryOptions(),
        state=StateOptions(),
    ).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ProcessingMetrics(BaseModel):
    """Per-request timings and token counts. Never used for control flow."""

    stages: dict[str, float] = Field(
        default_factory=dict,
        description="Stage name to duration in milliseconds.",
    )
    stages_executed: list[str] = Field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    total_duration_ms: float = 0.0
    tool_calls: int = 0
    provider_attempts: int = 0


class ErrorInfo(BaseModel):
    code: str
    message: str
    request_id: str | None = None
    fields: list[FieldError] | None = None


class ResponseData(BaseModel):
    message: Message


class StructuredResponse(BaseModel):
    version: str = Field(default=CURRENT_VERSION)
    status: Literal["success", "error"] = "success"
    request_id: str | None = None
    data: ResponseData | None = None
    metrics: ProcessingMetrics | None = None
    processing_details: dict[str, Any] | None = None
    error: ErrorInfo | None = None


class LegacyAgent(BaseModel):
    id: str | None = None
    name: str | None = None


class LegacyResponse(BaseModel):
    message: str
    agent: LegacyAgent
    conversationId: str | None = None
    sessionId: str | None = None
    metrics: ProcessingMetrics | None = None
    processing_details: dict[str, Any] | None = None
    error: ErrorInfo | None = None


class StreamChunk(BaseModel):
    """One streaming event: text deltas, then a single final chunk."""

    type: Literal["delta", "final"]
    delta: str = ""
    response: StructuredResponse | None = None
