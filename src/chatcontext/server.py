"""ChatContext: FastMCP v2 server exposing the chat pipeline.

Tools delegate to a ``ChatService`` plus the State and Memory managers
built by ``configure()``. Without a ``redis_url`` every backend is
in-process; call ``configure()`` before using the server.
"""

from __future__ import annotations

from time import perf_counter
from typing import Any

from fastmcp import FastMCP
from neo4j import AsyncDriver
from neo4j import AsyncGraphDatabase
from redis.asyncio import Redis  # type: ignore[import-untyped]

from chatcontext.audit import AuditEventType
from chatcontext.audit import AuditLogger
from chatcontext.config import AuditConfig
from chatcontext.config import ContextConfig
from chatcontext.config import FeatureFlags
from chatcontext.config import LLMConfig
from chatcontext.config import MemoryConfig
from chatcontext.config import PipelineConfig
from chatcontext.config import StateConfig
from chatcontext.context import KnowledgeSource
from chatcontext.context import Neo4jKnowledgeSource
from chatcontext.conversation import AgentProfile
from chatcontext.conversation import InMemoryConversationStore
from chatcontext.conversation import RedisConversationStore
from chatcontext.conversation import StaticAgentDirectory
from chatcontext.errors import ConflictError
from chatcontext.errors import FieldError
from chatcontext.errors import StateContentionError
from chatcontext.llm import build_llm_adapter
from chatcontext.llm import EchoLLMAdapter
from chatcontext.llm import LLMAdapter
from chatcontext.memory import InMemoryMemoryBackend
from chatcontext.memory import LLMSummarizer
from chatcontext.memory import MemoryManager
from chatcontext.memory import RedisMemoryBackend
from chatcontext.models.schemas import CheckpointRetention
from chatcontext.models.schemas import MemoryKind
from chatcontext.observability import metrics_snapshot
from chatcontext.observability import MetricsSink
from chatcontext.observability import record_latency
from chatcontext.pipeline import ChatService
from chatcontext.pipeline import MessageProcessor
from chatcontext.pipeline import ToolRegistry
from chatcontext.protocol import RollbackManager
from chatcontext.state import CheckpointNotFound
from chatcontext.state import InMemoryStateStore
from chatcontext.state import RedisStateStore
from chatcontext.state import StateManager

mcp = FastMCP("ChatContext")

# ---------------------------------------------------------------------------
# Service instances (set via configure())
# ---------------------------------------------------------------------------

_service: ChatService | None = None
_state_manager: StateManager | None = None
_memory_manager: MemoryManager | None = None
_rollback: RollbackManager | None = None
_redis: Redis | None = None
_graph_driver: AsyncDriver | None = None
_audit_logger: AuditLogger | None = None


async def configure(
    redis_url: str | None = None,
    *,
    neo4j_url: str | None = None,
    knowledge_source: KnowledgeSource | None = None,
    llm_config: LLMConfig | None = None,
    llm_adapter: LLMAdapter | None = None,
    llm_summaries: bool = False,
    agents: list[AgentProfile] | None = None,
    tools: ToolRegistry | None = None,
    flags: FeatureFlags | None = None,
    pipeline_config: PipelineConfig | None = None,
    context_config: ContextConfig | None = None,
    memory_config: MemoryConfig | None = None,
    state_config: StateConfig | None = None,
    audit_config: AuditConfig | None = None,
    metrics_sink: MetricsSink | None = None,
) -> None:
    """Build backends, managers and the chat service.

    Must be called before the MCP tools can function. The LLM defaults to
    the offline ``EchoLLMAdapter`` unless ``llm_config`` or
    ``llm_adapter`` is given.
    With a ``metrics_sink`` the metric snapshot is pushed after every
    chat request.
    """
    global _service, _state_manager, _memory_manager, _rollback, _redis, _graph_driver
    global _audit_logger
    if _redis is not None:
        try:
            await _redis.aclose()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass
        _redis = None
    if _graph_driver is not None:
        try:
            await _graph_driver.close()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass
        _graph_driver = None

    _audit_logger = AuditLogger(audit_config or AuditConfig())

    if llm_adapter is not None:
        adapter = llm_adapter
    elif llm_config is not None:
        adapter = build_llm_adapter(llm_config)
    else:
        adapter = EchoLLMAdapter()

    if redis_url is not None:
        _redis = Redis.from_url(redis_url)
        conversations = RedisConversationStore(_redis)
        memory_backend = RedisMemoryBackend(_redis)
        state_store = RedisStateStore(_redis)
    else:
        conversations = InMemoryConversationStore()
        memory_backend = InMemoryMemoryBackend()
        state_store = InMemoryStateStore()

    if knowledge_source is None and neo4j_url is not None:
        _graph_driver = AsyncGraphDatabase.driver(neo4j_url)
        knowledge_source = Neo4jKnowledgeSource(_graph_driver)

    _memory_manager = MemoryManager(
        memory_backend,
        config=memory_config,
        summarizer=LLMSummarizer(adapter) if llm_summaries else None,
        audit_logger=_audit_logger,
    )
    _state_manager = StateManager(
        state_store,
        config=state_config,
        audit_logger=_audit_logger,
    )
    directory = StaticAgentDirectory(agents) if agents is not None else None
    processor = MessageProcessor(
        adapter,
        conversations=conversations,
        memory_manager=_memory_manager,
        state_manager=_state_manager,
        knowledge_source=knowledge_source,
        agents=directory,
        tools=tools,
        llm_config=llm_config,
        context_config=context_config,
        pipeline_config=pipeline_config,
        metrics_sink=metrics_sink,
    )
    _rollback = RollbackManager(flags or FeatureFlags(), audit_logger=_audit_logger)
    _service = ChatService(
        processor,
        rollback=_rollback,
        agents=directory,
        audit_logger=_audit_logger,
    )


async def shutdown() -> None:
    """Wait for background work, close backend clients and release state."""
    global _service, _state_manager, _memory_manager, _rollback, _redis, _graph_driver
    global _audit_logger
    if _memory_manager is not None:
        await _memory_manager.wait_idle()
    if _redis is not None:
        await _redis.aclose()
        _redis = None
    if _graph_driver is not None:
        await _graph_driver.close()
        _graph_driver = None
    _service = None
    _state_manager = None
    _memory_manager = None
    _rollback = None
    _audit_logger = None


def _get_service() -> ChatService:
    if _service is None:
        raise RuntimeError("Chat service not configured. Call configure() first.")
    return _service


def _get_state() -> StateManager:
    if _state_manager is None:
        raise RuntimeError("State manager not configured. Call configure() first.")
    return _state_manager


def _get_memory() -> MemoryManager:
    if _memory_manager is None:
        raise RuntimeError("Memory manager not configured. Call configure() first.")
    return _memory_manager


def _get_audit() -> AuditLogger:
    if _audit_logger is None:
        raise RuntimeError("Audit logger not configured. Call configure() first.")
    return _audit_logger


def _flags() -> FeatureFlags:
    return _rollback.flags if _rollback is not None else FeatureFlags()


def _rejected(code: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"status": "rejected", "error": {"code": code, "message": message, **extra}}


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def chat(request: dict[str, Any]) -> dict[str, Any]:
    """Process one chat message through the context pipeline.

    Args:
        request: Structured request (``version``, ``message``, ``options``)
            or legacy request (``agentId``, ``message``).
    """
    start = perf_counter()
    ok = False
    try:
        response = await _get_service().handle(request)
        ok = response.error is None
        return response.model_dump(mode="json", exclude_none=True)
    finally:
        record_latency(
            operation="mcp.chat",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def get_state(scope: str, key: str) -> dict[str, Any]:
    """Read one state variable with its version (0 when missing).

    Args:
        scope: State scope, e.g. ``session:s1`` or ``shared:agent-1``.
        key: Variable name.
    """
    start = perf_counter()
    ok = False
    try:
        value, version = await _get_state().get(scope, key)
        ok = True
        return {"scope": scope, "key": key, "value": value, "version": version}
    finally:
        record_latency(
            operation="mcp.get_state",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def set_state(
    scope: str,
    key: str,
    value: Any,
    expected_version: int,
) -> dict[str, Any]:
    """Write a state variable if ``expected_version`` is still current.

    Args:
        scope: State scope.
        key: Variable name.
        value: Any JSON value.
        expected_version: Version the caller last read (0 for a new key).
    """
    start = perf_counter()
    ok = False
    try:
        try:
            version = await _get_state().set(scope, key, value, expected_version)
        except ConflictError as exc:
            return {
                "status": "conflict",
                "error": {
                    **exc.to_dict(),
                    "expected_version": exc.expected_version,
                    "actual_version": exc.actual_version,
                },
            }
        except StateContentionError as exc:
            return {"status": "contention", "error": exc.to_dict()}
        ok = True
        return {"status": "ok", "scope": scope, "key": key, "version": version}
    finally:
        record_latency(
            operation="mcp.set_state",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def create_checkpoint(
    scope: str,
    description: str = "",
    retention: str = "temporary",
) -> dict[str, Any]:
    """Freeze the live variables of a scope.

    Args:
        scope: State scope to checkpoint.
        description: Free-text label.
        retention: ``temporary`` (pruned beyond the limit) or ``permanent``.
    """
    start = perf_counter()
    ok = False
    try:
        if not _flags().enable_state_checkpoints:
            return _rejected("feature_disabled", "State checkpoints are disabled.")
        try:
            policy = CheckpointRetention(retention)
        except ValueError:
            return _rejected(
                "validation_error",
                "retention must be 'temporary' or 'permanent'.",
                fields=[
                    FieldError(
                        field="retention", message="unknown retention", code="enum"
                    ).model_dump()
                ],
            )
        checkpoint_id = await _get_state().checkpoint(
            scope, description=description, retention=policy
        )
        ok = True
        return {"status": "ok", "checkpoint_id": checkpoint_id, "scope": scope}
    finally:
        record_latency(
            operation="mcp.create_checkpoint",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def restore_checkpoint(
    checkpoint_id: str,
    preserve_current: bool = False,
) -> dict[str, Any]:
    """Replace a scope's live variables with a checkpoint, all or nothing.

    Args:
        checkpoint_id: Id returned by ``create_checkpoint``.
        preserve_current: Take a backup checkpoint of the live scope first.
    """
    start = perf_counter()
    ok = False
    try:
        if not _flags().enable_state_checkpoints:
            return _rejected("feature_disabled", "State checkpoints are disabled.")
        state = _get_state()
        try:
            await state.restore(checkpoint_id, preserve_current=preserve_current)
        except CheckpointNotFound:
            return _rejected("not_found", f"Unknown checkpoint {checkpoint_id}.")
        except ValueError as exc:
            return _rejected("integrity_error", str(exc))
        ok = True
        return {"status": "ok", "checkpoint_id": checkpoint_id}
    finally:
        record_latency(
            operation="mcp.restore_checkpoint",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def search_memory(
    scope: str,
    query: str,
    kinds: list[str] | None = None,
    max_results: int = 10,
    min_relevance: float = 0.2,
) -> dict[str, Any]:
    """Relevance search over episodic and semantic memory.

    Args:
        scope: Memory scope (the agent id, or ``global``).
        query: Natural language query.
        kinds: Subset of ``episodic``/``semantic`` (default both).
        max_results: 1..100.
        min_relevance: 0..1.
    """
    start = perf_counter()
    ok = False
    try:
        if not _flags().enable_memory:
            return _rejected("feature_disabled", "The memory system is disabled.")
        fields: list[dict[str, Any]] = []
        if not 1 <= max_results <= 100:
            fields.append(
                FieldError(
                    field="max_results", message="must be in 1..100", code="range"
                ).model_dump()
            )
        if not 0.0 <= min_relevance <= 1.0:
            fields.append(
                FieldError(
                    field="min_relevance", message="must be in [0, 1]", code="range"
                ).model_dump()
            )
        try:
            wanted = [MemoryKind(k) for k in kinds] if kinds else list(MemoryKind)
        except ValueError:
            fields.append(
                FieldError(
                    field="kinds", message="unknown memory kind", code="enum"
                ).model_dump()
            )
            wanted = []
        if fields:
            return _rejected("validation_error", "Invalid search arguments.", fields=fields)

        retrieval = await _get_memory().retrieve(
            scope,
            query,
            kinds=wanted,
            max_results=max_results,
            min_relevance=min_relevance,
        )
        ok = not retrieval.degraded
        return {
            "status": "degraded" if retrieval.degraded else "ok",
            "warning": retrieval.warning,
            "items": [
                {
                    "id": scored.item.id,
                    "kind": scored.item.kind.value,
                    "content": scored.item.content,
                    "importance": scored.item.importance,
                    "score": scored.score,
                }
                for scored in retrieval.items
            ],
        }
    finally:
        record_latency(
            operation="mcp.search_memory",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def get_audit_events(
    request_id: str | None = None,
    conversation_id: str | None = None,
    event_type: str | None = None,
    limit: int = 50,
) -> dict[str, Any]:
    """Trace a request or conversation through the audit trail.

    Args:
        request_id: Only events caused by this request.
        conversation_id: Only events for this conversation.
        event_type: e.g. ``MESSAGE_PROCESSED`` or ``STATE_SET``.
        limit: Most recent matches to return, 1..500.
    """
    start = perf_counter()
    ok = False
    try:
        audit = _get_audit()
        if not audit.config.enabled:
            return _rejected("feature_disabled", "The audit trail is disabled.")
        fields: list[dict[str, Any]] = []
        if not 1 <= limit <= 500:
            fields.append(
                FieldError(field="limit", message="must be in 1..500", code="range").model_dump()
            )
        try:
            wanted = AuditEventType(event_type) if event_type else None
        except ValueError:
            fields.append(
                FieldError(
                    field="event_type", message="unknown event type", code="enum"
                ).model_dump()
            )
            wanted = None
        if fields:
            return _rejected("validation_error", "Invalid audit query.", fields=fields)

        events = await audit.read_events(
            request_id=request_id,
            conversation_id=conversation_id,
            event_type=wanted,
            limit=limit,
        )
        ok = True
        return {
            "status": "ok",
            "events": [e.model_dump(mode="json", exclude_none=True) for e in events],
        }
    finally:
        record_latency(
            operation="mcp.get_audit_events",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def get_metrics() -> dict[str, Any]:
    """Latency summaries, counters and active kill switches."""
    snapshot = metrics_snapshot()
    snapshot["active_switches"] = sorted(
        s.value for s in (_rollback.active_switches if _rollback is not None else ())
    )
    return snapshot
