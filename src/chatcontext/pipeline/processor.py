"""Message processor: drives the stage list for one request.

The driver loop is fixed; stages live in an ordered list so new ones can
be inserted between existing stages without touching the loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator
from collections.abc import Awaitable
from collections.abc import Callable
from time import perf_counter

from chatcontext.config import ContextConfig
from chatcontext.config import FeatureFlags
from chatcontext.config import LLMConfig
from chatcontext.config import PipelineConfig
from chatcontext.context.engine import ContextEngine
from chatcontext.context.knowledge import KnowledgeSource
from chatcontext.conversation.store import AgentDirectory
from chatcontext.conversation.store import ConversationStore
from chatcontext.conversation.store import InMemoryConversationStore
from chatcontext.errors import PipelineError
from chatcontext.errors import PipelineTimeout
from chatcontext.errors import RequestValidationError
from chatcontext.llm.adapters import LLMAdapter
from chatcontext.llm.retry import RetryPolicy
from chatcontext.memory.manager import MemoryManager
from chatcontext.models.messages import content_text
from chatcontext.models.messages import Message
from chatcontext.models.messages import Role
from chatcontext.models.messages import TextContent
from chatcontext.models.schemas import ErrorInfo
from chatcontext.models.schemas import ProtocolVersion
from chatcontext.models.schemas import ResponseData
from chatcontext.models.schemas import StreamChunk
from chatcontext.models.schemas import StructuredRequest
from chatcontext.models.schemas import StructuredResponse
from chatcontext.observability import export_metrics
from chatcontext.observability import increment_counter
from chatcontext.observability import MetricsSink
from chatcontext.observability import record_latency
from chatcontext.pipeline.context import PipelineState
from chatcontext.pipeline.context import ProcessingContext
from chatcontext.pipeline.context import StageRecord
from chatcontext.pipeline.handlers import default_handlers
from chatcontext.pipeline.handlers import MessageHandler
from chatcontext.pipeline.handlers import ProviderClient
from chatcontext.pipeline.stages import build_details
from chatcontext.pipeline.stages import EnrichingStage
from chatcontext.pipeline.stages import MainProcessingStage
from chatcontext.pipeline.stages import ParsingStage
from chatcontext.pipeline.stages import PipelineStage
from chatcontext.pipeline.stages import RespondingStage
from chatcontext.pipeline.stages import ValidatingStage
from chatcontext.pipeline.tools import ToolRegistry
from chatcontext.state.manager import StateManager
from chatcontext.text import DEFAULT_ESTIMATOR
from chatcontext.text import TokenEstimator

logger = logging.getLogger(__name__)


class MessageProcessor:
    """Parsing -> Validating -> Enriching -> MainProcessing -> Responding.

    ``process`` never raises for request-level faults: every typed
    ``PipelineError`` and every unclassified exception becomes an error
    response carrying the request id. Only cancellation propagates.
    With a ``metrics_sink`` the metric snapshot is exported after every
    request; a failing export is logged and never alters the response.
    """

    def __init__(
        self,
        llm: LLMAdapter,
        *,
        conversations: ConversationStore | None = None,
        memory_manager: MemoryManager | None = None,
        state_manager: StateManager | None = None,
        knowledge_source: KnowledgeSource | None = None,
        agents: AgentDirectory | None = None,
        tools: ToolRegistry | None = None,
        context_engine: ContextEngine | None = None,
        handlers: list[MessageHandler] | None = None,
        llm_config: LLMConfig | None = None,
        context_config: ContextConfig | None = None,
        pipeline_config: PipelineConfig | None = None,
        estimator: TokenEstimator = DEFAULT_ESTIMATOR,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics_sink: MetricsSink | None = None,
    ) -> None:
        self._config = pipeline_config or PipelineConfig()
        self._metrics_sink = metrics_sink
        self._conversations = conversations or InMemoryConversationStore()
        self._memory = memory_manager
        self._state = state_manager
        self._engine = context_engine or ContextEngine(
            memory_manager=memory_manager,
            knowledge_source=knowledge_source,
            config=context_config,
            estimator=estimator,
        )
        provider = ProviderClient(
            llm,
            llm_config=llm_config,
            retry_policy=RetryPolicy.from_config(self._config),
            estimator=estimator,
            sleep=sleep,
            max_completion_tokens=self._config.reserved_completion_tokens,
        )
        self._handlers = handlers or default_handlers(
            provider, tools=tools, max_tool_depth=self._config.max_tool_depth
        )
        self._stages: list[PipelineStage] = [
            ParsingStage(estimator),
            ValidatingStage(self._conversations, agents=agents, config=self._config),
            EnrichingStage(
                self._conversations,
                self._engine,
                memory_manager=memory_manager,
                state_manager=state_manager,
                config=self._config,
                estimator=estimator,
            ),
            MainProcessingStage(self._handlers),
            RespondingStage(
                self._conversations,
                memory_manager=memory_manager,
                state_manager=state_manager,
                estimator=estimator,
            ),
        ]

    @property
    def conversations(self) -> ConversationStore:
        return self._conversations

    @property
    def memory_manager(self) -> MemoryManager | None:
        return self._memory

    @property
    def state_manager(self) -> StateManager | None:
        return self._state

    @property
    def stages(self) -> list[PipelineStage]:
        return list(self._stages)

    def insert_stage(
        self,
        stage: PipelineStage,
        *,
        before: str | None = None,
        after: str | None = None,
    ) -> None:
        """Insert *stage* next to the stage named *before* or *after*."""
        if (before is None) == (after is None):
            raise ValueError("exactly one of before/after is required")
        anchor = before if before is not None else after
        names = [s.name for s in self._stages]
        if anchor not in names:
            raise ValueError(f"unknown stage {anchor!r}; known stages: {names}")
        index = names.index(anchor) + (0 if before is not None else 1)
        self._stages.insert(index, stage)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(
        self,
        request: StructuredRequest,
        *,
        protocol: ProtocolVersion = ProtocolVersion.structured,
        flags: FeatureFlags | None = None,
        request_id: str | None = None,
        stream_queue: asyncio.Queue[str | None] | None = None,
    ) -> StructuredResponse:
        flags = flags or FeatureFlags()
        response = await self._process(
            request,
            protocol=protocol,
            flags=flags,
            request_id=request_id,
            stream_queue=stream_queue,
        )
        if flags.enable_metrics:
            await export_metrics(self._metrics_sink)
        return response

    async def _process(
        self,
        request: StructuredRequest,
        *,
        protocol: ProtocolVersion,
        flags: FeatureFlags,
        request_id: str | None,
        stream_queue: asyncio.Queue[str | None] | None,
    ) -> StructuredResponse:
        request_id = request_id or request.request_id or f"req_{uuid.uuid4().hex}"
        streaming = request.options.response.stream and flags.enable_streaming
        ctx = ProcessingContext(
            request=request,
            request_id=request_id,
            flags=flags,
            protocol=protocol,
            deadline=asyncio.get_running_loop().time() + self._config.request_timeout_seconds,
            stream_queue=stream_queue if streaming else None,
        )

        start = perf_counter()
        ok = False
        try:
            await self._drive(ctx)
            ok = True
        except asyncio.CancelledError:
            ctx.state = PipelineState.failed
            logger.warning("request cancelled request_id=%s", request_id)
            await self._persist_incomplete(ctx)
            raise
        except PipelineError as exc:
            ctx.state = PipelineState.failed
            if exc.request_id is None:
                exc.request_id = request_id
            increment_counter(f"pipeline.errors.{exc.code}")
            logger.warning(
                "request failed request_id=%s code=%s: %s",
                request_id,
                exc.code,
                exc.message,
            )
            return self._error_response(ctx, exc, start)
        except Exception as exc:
            ctx.state = PipelineState.failed
            increment_counter("pipeline.errors.internal_error")
            logger.exception("unclassified pipeline fault request_id=%s", request_id)
            error = PipelineError(f"{type(exc).__name__}: {exc}", request_id=request_id)
            return self._error_response(ctx, error, start)
        finally:
            record_latency(
                operation="pipeline.process",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
                request_id=request_id,
            )

        ctx.state = PipelineState.done
        return self._success_response(ctx, start)

    async def process_stream(
        self,
        request: StructuredRequest,
        *,
        protocol: ProtocolVersion = ProtocolVersion.structured,
        flags: FeatureFlags | None = None,
        request_id: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield text deltas as they arrive, then one final chunk.

        A reply produced without streaming (tool loop, non-streaming
        adapter) is emitted as a single delta before the final chunk.
        """
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        task = asyncio.create_task(
            self.process(
                request,
                protocol=protocol,
                flags=flags,
                request_id=request_id,
                stream_queue=queue,
            )
        )
        task.add_done_callback(lambda _: queue.put_nowait(None))

        emitted = False
        try:
            while True:
                delta = await queue.get()
                if delta is None:
                    break
                emitted = True
                yield StreamChunk(type="delta", delta=delta)
            response = await task
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if not emitted and response.data is not None:
            text = content_text(response.data.message.content)
            if text:
                yield StreamChunk(type="delta", delta=text)
        yield StreamChunk(type="final", response=response)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _drive(self, ctx: ProcessingContext) -> None:
        for stage in self._stages:
            ctx.state = getattr(stage, "state", ctx.state)
            if getattr(stage, "deadline_bound", False):
                await self._run_bounded(stage, ctx)
            else:
                await self._run_stage(stage, ctx)
        if ctx.assistant_message is None:
            raise PipelineError(
                "pipeline finished without a reply", request_id=ctx.request_id
            )

    async def _run_bounded(self, stage: PipelineStage, ctx: ProcessingContext) -> None:
        assert ctx.deadline is not None
        try:
            async with asyncio.timeout_at(ctx.deadline) as deadline:
                await self._run_stage(stage, ctx)
        except TimeoutError as exc:
            if not deadline.expired():
                raise
            increment_counter("pipeline.timeouts")
            if ctx.stage_records and ctx.stage_records[-1].name == stage.name:
                ctx.stage_records[-1].error_code = PipelineTimeout.code
            raise PipelineTimeout(
                f"request deadline of {self._config.request_timeout_seconds}s "
                f"exceeded during {stage.name}",
                request_id=ctx.request_id,
            ) from exc

    async def _run_stage(self, stage: PipelineStage, ctx: ProcessingContext) -> None:
        start = perf_counter()
        ok = False
        error_code: str | None = None
        try:
            await stage.run(ctx)
            ok = True
        except PipelineError as exc:
            error_code = exc.code
            raise
        except Exception:
            error_code = PipelineError.code
            raise
        finally:
            duration_ms = (perf_counter() - start) * 1000
            ctx.metrics.stages[stage.name] = round(duration_ms, 3)
            ctx.stage_records.append(
                StageRecord(
                    name=stage.name,
                    duration_ms=round(duration_ms, 3),
                    ok=ok,
                    error_code=error_code,
                )
            )
            record_latency(
                operation=f"pipeline.{stage.name}",
                duration_ms=duration_ms,
                ok=ok,
                request_id=ctx.request_id,
            )
        ctx.metrics.stages_executed.append(stage.name)

    async def _persist_incomplete(self, ctx: ProcessingContext) -> None:
        """Store streamed text from a cancelled request, tagged incomplete."""
        if (
            not ctx.partial_text
            or ctx.assistant_message is not None
            or ctx.message is None
            or ctx.conversation_id is None
        ):
            return
        partial = Message(
            role=Role.assistant,
            content=TextContent(text=ctx.partial_text),
            conversation_id=ctx.conversation_id,
            metadata={"request_id": ctx.request_id, "incomplete": True},
        )
        await self._conversations.append(ctx.conversation_id, ctx.message)
        await self._conversations.append(ctx.conversation_id, partial)
        logger.info(
            "persisted incomplete reply message=%s request_id=%s",
            partial.id,
            ctx.request_id,
        )

    # ------------------------------------------------------------------
    # Response assembly
    # ------------------------------------------------------------------

    def _finalize_metrics(self, ctx: ProcessingContext, start: float) -> None:
        metrics = ctx.metrics
        metrics.total_tokens = metrics.prompt_tokens + metrics.completion_tokens
        metrics.total_duration_ms = round((perf_counter() - start) * 1000, 3)

    def _success_response(self, ctx: ProcessingContext, start: float) -> StructuredResponse:
        assert ctx.assistant_message is not None
        self._finalize_metrics(ctx, start)
        options = ctx.request.options.response
        return StructuredResponse(
            request_id=ctx.request_id,
            data=ResponseData(message=ctx.assistant_message),
            metrics=ctx.metrics if options.include_metrics else None,
            processing_details=build_details(ctx) if options.include_metadata else None,
        )

    def _error_response(
        self,
        ctx: ProcessingContext,
        exc: PipelineError,
        start: float,
    ) -> StructuredResponse:
        self._finalize_metrics(ctx, start)
        options = ctx.request.options.response
        fields = exc.errors if isinstance(exc, RequestValidationError) else None
        return StructuredResponse(
            status="error",
            request_id=ctx.request_id,
            metrics=ctx.metrics if options.include_metrics else None,
            processing_details=build_details(ctx) if options.include_metadata else None,
            error=ErrorInfo(
                code=exc.code,
                message=exc.message,
                request_id=exc.request_id or ctx.request_id,
                fields=fields,
            ),
        )
