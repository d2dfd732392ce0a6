"""The five built-in pipeline stages.

Each stage mutates the ``ProcessingContext`` and either returns or raises
a typed ``PipelineError``; the processor owns ordering, timing and the
request deadline.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict
from typing import Protocol
from typing import runtime_checkable

from chatcontext.config import PipelineConfig
from chatcontext.context.engine import ContextEngine
from chatcontext.context.schemas import ConversationContext
from chatcontext.conversation.store import AgentDirectory
from chatcontext.conversation.store import AgentProfile
from chatcontext.conversation.store import ConversationStore
from chatcontext.errors import FieldError
from chatcontext.errors import HandlerError
from chatcontext.errors import RequestValidationError
from chatcontext.memory.manager import MemoryManager
from chatcontext.models.messages import Message
from chatcontext.models.messages import Role
from chatcontext.models.messages import TextContent
from chatcontext.pipeline.context import PipelineState
from chatcontext.pipeline.context import ProcessingContext
from chatcontext.pipeline.handlers import MessageHandler
from chatcontext.pipeline.prompt import fixed_system_text
from chatcontext.state.manager import session_scope
from chatcontext.state.manager import shared_scope
from chatcontext.state.manager import StateManager
from chatcontext.text import DEFAULT_ESTIMATOR
from chatcontext.text import TokenEstimator

logger = logging.getLogger(__name__)

_TRANSPORT_KEYS = {"_transport"}


@runtime_checkable
class PipelineStage(Protocol):
    """One step of the processor.

    ``deadline_bound`` stages run under the overall request deadline.
    """

    name: str
    state: PipelineState
    deadline_bound: bool

    async def run(self, ctx: ProcessingContext) -> None: ...


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class ParsingStage:
    """Canonical ``Message`` from the request; transport-only keys dropped."""

    name = "parsing"
    state = PipelineState.parsing
    deadline_bound = False

    def __init__(self, estimator: TokenEstimator = DEFAULT_ESTIMATOR) -> None:
        self._estimator = estimator

    async def run(self, ctx: ProcessingContext) -> None:
        inbound = ctx.request.message
        ctx.conversation_id = (
            ctx.request.context.conversation_id or f"conv_{uuid.uuid4().hex}"
        )
        metadata = {
            key: value
            for key, value in inbound.metadata.items()
            if key not in _TRANSPORT_KEYS and not key.lower().startswith("x-")
        }
        metadata["request_id"] = ctx.request_id
        message = Message(
            role=inbound.role,
            content=inbound.content,
            conversation_id=ctx.conversation_id,
            metadata=metadata,
        )
        ctx.message = message.model_copy(
            update={"tokens": self._estimator.estimate(message.text)}
        )
        ctx.decisions.append(f"content_type:{inbound.content.type}")


# ---------------------------------------------------------------------------
# Validating
# ---------------------------------------------------------------------------


class ValidatingStage:
    """Business invariants the schema cannot express."""

    name = "validating"
    state = PipelineState.validating
    deadline_bound = False

    def __init__(
        self,
        conversations: ConversationStore,
        *,
        agents: AgentDirectory | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self._conversations = conversations
        self._agents = agents
        self._config = config or PipelineConfig()

    async def run(self, ctx: ProcessingContext) -> None:
        assert ctx.message is not None and ctx.conversation_id is not None
        errors: list[FieldError] = []

        agent_id = ctx.agent_id
        if agent_id:
            if self._agents is None:
                ctx.agent = AgentProfile(id=agent_id)
            else:
                ctx.agent = await self._agents.get_agent(agent_id)
                if ctx.agent is None:
                    errors.append(
                        FieldError(
                            field="context.agent_id",
                            message=f"unknown agent {agent_id}",
                            code="not_found",
                        )
                    )

        if not await self._conversations.is_writable(ctx.conversation_id):
            errors.append(
                FieldError(
                    field="context.conversation_id",
                    message=f"conversation {ctx.conversation_id} is read-only",
                    code="read_only",
                )
            )

        length = len(ctx.message.text)
        if length > self._config.max_message_chars:
            errors.append(
                FieldError(
                    field="message.content",
                    message=(
                        f"message is {length} characters, "
                        f"limit is {self._config.max_message_chars}"
                    ),
                    code="too_long",
                )
            )

        if errors:
            raise RequestValidationError(errors, request_id=ctx.request_id)


# ---------------------------------------------------------------------------
# Enriching
# ---------------------------------------------------------------------------


class EnrichingStage:
    """History, state snapshot and the optimized context window."""

    name = "enriching"
    state = PipelineState.enriching
    deadline_bound = True

    def __init__(
        self,
        conversations: ConversationStore,
        context_engine: ContextEngine,
        *,
        memory_manager: MemoryManager | None = None,
        state_manager: StateManager | None = None,
        config: PipelineConfig | None = None,
        estimator: TokenEstimator = DEFAULT_ESTIMATOR,
    ) -> None:
        self._conversations = conversations
        self._engine = context_engine
        self._memory = memory_manager
        self._state = state_manager
        self._config = config or PipelineConfig()
        self._estimator = estimator

    async def run(self, ctx: ProcessingContext) -> None:
        assert ctx.message is not None and ctx.conversation_id is not None
        options = ctx.request.options

        ctx.history = await self._conversations.recent(
            ctx.conversation_id, limit=options.context.max_messages
        )
        await self._load_state(ctx)

        ctx.memory_scope = ctx.agent_id or "global"
        ctx.memory_enabled = (
            self._memory is not None
            and ctx.flags.enable_memory
            and options.memory.enabled
        )
        ctx.token_budget = self._context_budget(ctx)

        conversation = ConversationContext(
            scope=ctx.memory_scope,
            conversation_id=ctx.conversation_id,
            history=ctx.history,
            memory_kinds=tuple(options.memory.kinds) if ctx.memory_enabled else (),
            max_memory_results=options.memory.max_results,
            min_memory_relevance=options.memory.min_relevance,
            request_id=ctx.request_id,
        )
        ctx.context = await self._engine.build_context(
            ctx.message.text,
            conversation,
            ctx.token_budget,
            required_sources=options.context.required_sources,
            excluded_sources=options.context.excluded_sources,
        )
        ctx.degraded.extend(ctx.context.warnings)
        if ctx.context.compression_applied:
            ctx.decisions.append("context_compressed")
        if ctx.context.fallback:
            ctx.decisions.append("context_fallback")

    def _context_budget(self, ctx: ProcessingContext) -> int:
        """Tokens left for context once the fixed prompt parts are paid for.

        A caller-supplied budget can shrink the window but never grow it
        past the model window minus the completion allowance.
        """
        assert ctx.message is not None
        window = self._config.token_budget
        requested = ctx.request.options.context.token_budget
        budget = min(requested, window) if requested else window
        fixed = (
            self._estimator.estimate(ctx.message.text)
            + self._estimator.estimate(fixed_system_text(ctx))
            + self._config.prompt_overhead_tokens
        )
        if fixed >= budget:
            ctx.decisions.append("context_budget_exhausted")
            return 0
        return budget - fixed

    async def _load_state(self, ctx: ProcessingContext) -> None:
        if self._state is None:
            return
        scopes = [session_scope(ctx.session_id, ctx.conversation_id)]
        if ctx.request.options.state.include_shared and ctx.agent_id:
            scopes.append(shared_scope(ctx.agent_id))
        for scope in scopes:
            try:
                ctx.state_snapshot[scope] = await self._state.snapshot(scope)
            except Exception as exc:
                logger.warning(
                    "state snapshot unavailable scope=%s request_id=%s: %s",
                    scope,
                    ctx.request_id,
                    exc,
                )
                ctx.warn("state", f"state snapshot unavailable for {scope}: {exc}")


# ---------------------------------------------------------------------------
# MainProcessing
# ---------------------------------------------------------------------------


class MainProcessingStage:
    """Dispatches to the first handler that accepts the message."""

    name = "main_processing"
    state = PipelineState.main_processing
    deadline_bound = True

    def __init__(self, handlers: list[MessageHandler]) -> None:
        self._handlers = list(handlers)

    async def run(self, ctx: ProcessingContext) -> None:
        assert ctx.message is not None
        handler = next((h for h in self._handlers if h.can_handle(ctx)), None)
        if handler is None:
            raise HandlerError(
                f"no handler accepts content type {ctx.message.content.type!r}",
                request_id=ctx.request_id,
            )
        ctx.handler = handler.name
        ctx.decisions.append(f"handler:{handler.name}")
        ctx.reply_content = await handler.handle(ctx)


# ---------------------------------------------------------------------------
# Responding
# ---------------------------------------------------------------------------


class RespondingStage:
    """Persists the exchange and prepares the processing trace."""

    name = "responding"
    state = PipelineState.responding
    deadline_bound = False

    def __init__(
        self,
        conversations: ConversationStore,
        *,
        memory_manager: MemoryManager | None = None,
        state_manager: StateManager | None = None,
        estimator: TokenEstimator = DEFAULT_ESTIMATOR,
    ) -> None:
        self._conversations = conversations
        self._memory = memory_manager
        self._state = state_manager
        self._estimator = estimator

    async def run(self, ctx: ProcessingContext) -> None:
        assert ctx.message is not None and ctx.conversation_id is not None
        content = ctx.reply_content or TextContent(text=ctx.partial_text)
        metadata = {"request_id": ctx.request_id, "degraded_mode": ctx.degraded_mode}
        if ctx.degraded:
            metadata["degraded"] = [w.component for w in ctx.degraded]
        assistant = Message(
            role=Role.assistant,
            content=content,
            conversation_id=ctx.conversation_id,
            metadata=metadata,
        )
        ctx.assistant_message = assistant.model_copy(
            update={"tokens": self._estimator.estimate(assistant.text)}
        )

        await self._conversations.append(ctx.conversation_id, ctx.message)
        await self._conversations.append(ctx.conversation_id, ctx.assistant_message)

        await self._checkpoint(ctx)
        await self._update_memory(ctx)
        ctx.details = build_details(ctx)

        if ctx.request.options.response.include_metadata:
            await self._conversations.annotate(
                ctx.conversation_id,
                ctx.assistant_message.id,
                {"processing_details": ctx.details},
            )

    async def _checkpoint(self, ctx: ProcessingContext) -> None:
        wanted = ctx.request.options.state.save_checkpoint
        if not wanted:
            return
        if self._state is None or not ctx.flags.enable_state_checkpoints:
            ctx.decisions.append("checkpoint_skipped")
            return
        ctx.checkpoint_id = await self._state.checkpoint(
            session_scope(ctx.session_id, ctx.conversation_id),
            description=f"after {ctx.assistant_message.id}" if ctx.assistant_message else "",
            request_id=ctx.request_id,
        )

    async def _update_memory(self, ctx: ProcessingContext) -> None:
        if self._memory is None or not ctx.memory_enabled:
            return
        assert ctx.message is not None and ctx.assistant_message is not None
        if ctx.context is not None:
            try:
                await self._memory.touch(ctx.memory_scope, ctx.context.memory_ids())
            except Exception as exc:
                logger.warning(
                    "memory access tracking failed scope=%s request_id=%s: %s",
                    ctx.memory_scope,
                    ctx.request_id,
                    exc,
                )
                ctx.warn("memory", f"access tracking failed: {exc}")
        window = [*ctx.history, ctx.message, ctx.assistant_message]
        task = self._memory.maybe_consolidate(
            ctx.memory_scope, window, conversation_id=ctx.conversation_id
        )
        ctx.consolidation_scheduled = task is not None


def build_details(ctx: ProcessingContext) -> dict:
    """Machine-readable trace of what the pipeline did for this request."""
    context = ctx.context
    memory_ids = context.memory_ids() if context is not None else []
    return {
        "request_id": ctx.request_id,
        "protocol": ctx.protocol.value,
        "conversation_id": ctx.conversation_id,
        "handler": ctx.handler,
        "stages_executed": list(ctx.metrics.stages_executed),
        "stages": dict(ctx.metrics.stages),
        "stage_status": [asdict(record) for record in ctx.stage_records],
        "context_operations": {
            "sources_used": (
                [s.value for s in context.sources_used] if context is not None else []
            ),
            "total_tokens": context.total_tokens if context is not None else 0,
            "token_budget": ctx.token_budget,
            "quality_score": context.quality_score if context is not None else 0.0,
            "compression_applied": (
                context.compression_applied if context is not None else False
            ),
            "candidates_considered": len(context.candidates) if context is not None else 0,
            "candidates_included": len(context.included()) if context is not None else 0,
            "excluded": context.exclusion_counts() if context is not None else {},
            "fallback": context.fallback if context is not None else False,
        },
        "memory_operations": {
            "enabled": ctx.memory_enabled,
            "scope": ctx.memory_scope,
            "retrieved": len(memory_ids),
            "item_ids": memory_ids,
            "consolidation_scheduled": ctx.consolidation_scheduled,
        },
        "state_operations": {
            "scopes": sorted(ctx.state_snapshot),
            "keys_loaded": sum(len(values) for values in ctx.state_snapshot.values()),
            "checkpoint_id": ctx.checkpoint_id,
        },
        "tool_results": [r.model_dump(mode="json") for r in ctx.tool_results],
        "decisions": list(ctx.decisions),
        "degraded": [w.model_dump(mode="json") for w in ctx.degraded],
        "degraded_mode": ctx.degraded_mode,
    }
