"""Request-scoped processing state threaded through every stage."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any

from chatcontext.config import FeatureFlags
from chatcontext.context.schemas import OptimizedContext
from chatcontext.conversation.store import AgentProfile
from chatcontext.errors import DegradedModeWarning
from chatcontext.models.messages import Message
from chatcontext.models.messages import MessageContent
from chatcontext.models.messages import ToolResultContent
from chatcontext.models.schemas import ProcessingMetrics
from chatcontext.models.schemas import ProtocolVersion
from chatcontext.models.schemas import StructuredRequest


class PipelineState(str, Enum):
    parsing = "parsing"
    validating = "validating"
    enriching = "enriching"
    main_processing = "main_processing"
    responding = "responding"
    done = "done"
    failed = "failed"


@dataclass
class StageRecord:
    """Outcome of one stage run, kept for the processing_details trace."""

    name: str
    duration_ms: float
    ok: bool
    error_code: str | None = None


@dataclass
class ProcessingContext:
    """Everything one request accumulates on its way through the pipeline.

    Assembled per request, consumed by the stages in order and discarded
    once the response is built. Never persisted as a whole.
    """

    request: StructuredRequest
    request_id: str
    flags: FeatureFlags
    protocol: ProtocolVersion = ProtocolVersion.structured
    state: PipelineState = PipelineState.parsing
    deadline: float | None = None

    # Parsing / Validating
    message: Message | None = None
    conversation_id: str | None = None
    agent: AgentProfile | None = None

    # Enriching
    history: list[Message] = field(default_factory=list)
    state_snapshot: dict[str, dict[str, Any]] = field(default_factory=dict)
    memory_scope: str = "global"
    memory_enabled: bool = False
    token_budget: int = 0
    context: OptimizedContext | None = None

    # MainProcessing
    handler: str | None = None
    reply_content: MessageContent | None = None
    partial_text: str = ""
    tool_results: list[ToolResultContent] = field(default_factory=list)
    stream_queue: asyncio.Queue[str | None] | None = None

    # Responding
    assistant_message: Message | None = None
    checkpoint_id: str | None = None
    consolidation_scheduled: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    metrics: ProcessingMetrics = field(default_factory=ProcessingMetrics)
    degraded: list[DegradedModeWarning] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    stage_records: list[StageRecord] = field(default_factory=list)

    @property
    def agent_id(self) -> str | None:
        return self.request.context.agent_id

    @property
    def session_id(self) -> str | None:
        return self.request.context.session_id

    @property
    def degraded_mode(self) -> bool:
        return bool(self.degraded)

    def warn(self, component: str, message: str) -> None:
        self.degraded.append(
            DegradedModeWarning(
                component=component,
                message=message,
                request_id=self.request_id,
            )
        )
