"""Request front door: normalize -> validate -> process -> render."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from collections.abc import Mapping
from time import perf_counter
from typing import Any

from chatcontext.audit import AuditEventType
from chatcontext.audit import AuditLogger
from chatcontext.conversation.store import AgentDirectory
from chatcontext.errors import RequestValidationError
from chatcontext.models.schemas import CURRENT_VERSION
from chatcontext.models.schemas import ErrorInfo
from chatcontext.models.schemas import LegacyResponse
from chatcontext.models.schemas import ProtocolVersion
from chatcontext.models.schemas import StreamChunk
from chatcontext.models.schemas import StructuredResponse
from chatcontext.observability import increment_counter
from chatcontext.observability import record_latency
from chatcontext.pipeline.processor import MessageProcessor
from chatcontext.protocol.adapter import NormalizedRequest
from chatcontext.protocol.adapter import RollbackManager
from chatcontext.protocol.adapter import VersionAdapter
from chatcontext.protocol.validator import SchemaValidator

logger = logging.getLogger(__name__)


class ChatService:
    """Wires the protocol layer to the processor for one deployment.

    The flag snapshot is read from the ``RollbackManager`` once per
    request and passed explicitly from there on.
    """

    def __init__(
        self,
        processor: MessageProcessor,
        *,
        rollback: RollbackManager | None = None,
        adapter: VersionAdapter | None = None,
        validator: SchemaValidator | None = None,
        agents: AgentDirectory | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._processor = processor
        self._rollback = rollback or RollbackManager()
        self._adapter = adapter or VersionAdapter()
        self._validator = validator or SchemaValidator()
        self._agents = agents
        self._audit = audit_logger

    @property
    def processor(self) -> MessageProcessor:
        return self._processor

    @property
    def rollback(self) -> RollbackManager:
        return self._rollback

    async def handle(self, raw: Any) -> StructuredResponse | LegacyResponse:
        start = perf_counter()
        ok = False
        try:
            try:
                normalized = self._adapter.normalize(raw, self._rollback.flags)
            except RequestValidationError as exc:
                response = self._validation_response(exc.errors, exc.request_id)
                return await self._render(response, ProtocolVersion.legacy, raw)

            result = self._validator.validate(normalized.payload)
            if not result.ok:
                increment_counter("pipeline.errors.validation_error")
                response = self._validation_response(result.errors, normalized.request_id)
            else:
                assert result.request is not None
                response = await self._processor.process(
                    result.request,
                    protocol=normalized.protocol,
                    flags=normalized.flags,
                    request_id=normalized.request_id,
                )
            ok = response.status == "success"
            await self._audit_processed(normalized, response)
            return await self._render(response, normalized.protocol, raw)
        finally:
            record_latency(
                operation="chat.handle",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def handle_stream(self, raw: Any) -> AsyncIterator[StreamChunk]:
        """Streaming variant of ``handle``; always speaks the structured shape."""
        try:
            normalized = self._adapter.normalize(raw, self._rollback.flags)
        except RequestValidationError as exc:
            yield StreamChunk(
                type="final",
                response=self._validation_response(exc.errors, exc.request_id),
            )
            return

        result = self._validator.validate(normalized.payload)
        if not result.ok:
            yield StreamChunk(
                type="final",
                response=self._validation_response(result.errors, normalized.request_id),
            )
            return

        assert result.request is not None
        async for chunk in self._processor.process_stream(
            result.request,
            protocol=normalized.protocol,
            flags=normalized.flags,
            request_id=normalized.request_id,
        ):
            if chunk.type == "final" and chunk.response is not None:
                await self._audit_processed(normalized, chunk.response)
            yield chunk

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validation_response(errors, request_id: str | None) -> StructuredResponse:
        summary = "; ".join(f"{e.field}: {e.message}" for e in errors[:3])
        return StructuredResponse(
            version=CURRENT_VERSION,
            status="error",
            request_id=request_id,
            error=ErrorInfo(
                code=RequestValidationError.code,
                message=summary or "invalid request",
                request_id=request_id,
                fields=list(errors),
            ),
        )

    async def _render(
        self,
        response: StructuredResponse,
        protocol: ProtocolVersion,
        raw: Any,
    ) -> StructuredResponse | LegacyResponse:
        if protocol is not ProtocolVersion.legacy:
            return response

        agent_id, conversation_id, session_id = _legacy_ids(raw)
        message = response.data.message if response.data is not None else None
        if message is not None and message.conversation_id:
            conversation_id = message.conversation_id
        agent_name = None
        if agent_id and self._agents is not None:
            agent = await self._agents.get_agent(agent_id)
            agent_name = agent.name if agent is not None else None
        return self._adapter.to_legacy_response(
            response,
            agent_id=agent_id,
            agent_name=agent_name,
            conversation_id=conversation_id,
            session_id=session_id,
        )

    async def _audit_processed(
        self, normalized: NormalizedRequest, response: StructuredResponse
    ) -> None:
        if self._audit is None:
            return
        await self._audit.emit(
            AuditEventType.MESSAGE_PROCESSED,
            request_id=normalized.request_id,
            conversation_id=_conversation_id(normalized, response),
            protocol=normalized.protocol.value,
            rollback=normalized.rollback,
            status=response.status,
            error_code=response.error.code if response.error is not None else None,
        )


def _conversation_id(
    normalized: NormalizedRequest, response: StructuredResponse
) -> str | None:
    """Conversation the turn landed in, generated ids included."""
    if response.data is not None and response.data.message.conversation_id:
        return response.data.message.conversation_id
    context = normalized.payload.get("context")
    if isinstance(context, Mapping):
        return context.get("conversation_id")
    return None


def _legacy_ids(raw: Any) -> tuple[str | None, str | None, str | None]:
    """Agent, conversation and session ids from either request shape."""
    if not isinstance(raw, Mapping):
        return None, None, None
    context = raw.get("context")
    if isinstance(context, Mapping):
        return (
            context.get("agent_id"),
            context.get("conversation_id"),
            context.get("session_id"),
        )
    return (
        raw.get("agentId") or raw.get("agent_id"),
        raw.get("conversationId"),
        raw.get("sessionId"),
    )
