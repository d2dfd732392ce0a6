"""Content-type handlers and the retrying provider client.

Handlers are resolved once, at processor construction, into an ordered
list; MainProcessing picks the first whose ``can_handle`` accepts the
parsed message.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from time import perf_counter
from typing import Any
from typing import Protocol
from typing import runtime_checkable

from chatcontext.config import LLMConfig
from chatcontext.errors import ProviderError
from chatcontext.llm.adapters import Completion
from chatcontext.llm.adapters import LLMAdapter
from chatcontext.llm.adapters import StreamingLLMAdapter
from chatcontext.llm.retry import call_with_retry
from chatcontext.llm.retry import RetryPolicy
from chatcontext.models.messages import MessageContent
from chatcontext.models.messages import StructuredContent
from chatcontext.models.messages import TextContent
from chatcontext.models.messages import ToolCall
from chatcontext.models.messages import ToolCallContent
from chatcontext.models.messages import ToolResultContent
from chatcontext.observability import record_latency
from chatcontext.pipeline.context import ProcessingContext
from chatcontext.pipeline.prompt import build_prompt
from chatcontext.pipeline.tools import ToolRegistry
from chatcontext.text import DEFAULT_ESTIMATOR
from chatcontext.text import TokenEstimator

logger = logging.getLogger(__name__)

_STRUCTURED_INSTRUCTIONS = (
    "The user sent a JSON payload. Reply with a single JSON object when a "
    "structured answer is appropriate."
)

# ---------------------------------------------------------------------------
# Provider client
# ---------------------------------------------------------------------------


class ProviderClient:
    """Calls the provider through the retry policy and books usage.

    Streams when the request carries a stream queue, no tools are offered
    and the adapter supports streaming. Once a delta has been emitted a
    failure is no longer retried, since the caller has already seen text.
    ``max_completion_tokens`` caps whatever completion size the request or
    the LLM config asks for.
    """

    def __init__(
        self,
        llm: LLMAdapter,
        *,
        llm_config: LLMConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        estimator: TokenEstimator = DEFAULT_ESTIMATOR,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_completion_tokens: int | None = None,
    ) -> None:
        self._llm = llm
        self._config = llm_config or LLMConfig()
        self._max_completion_tokens = max_completion_tokens
        self._policy = retry_policy or RetryPolicy()
        self._estimator = estimator
        self._sleep = sleep

    async def complete(
        self,
        ctx: ProcessingContext,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        max_tokens = ctx.request.options.response.max_tokens or self._config.max_tokens
        if self._max_completion_tokens is not None:
            max_tokens = min(max_tokens, self._max_completion_tokens)
        streaming = (
            ctx.stream_queue is not None
            and not tools
            and isinstance(self._llm, StreamingLLMAdapter)
        )

        def on_attempt(attempt: int) -> None:
            ctx.metrics.provider_attempts += 1

        async def attempt() -> Completion:
            if streaming:
                return await self._stream(ctx, messages, max_tokens)
            return await self._llm.complete(
                messages,
                temperature=self._config.temperature,
                max_tokens=max_tokens,
                timeout_seconds=self._config.timeout_seconds,
                tools=tools,
            )

        start = perf_counter()
        ok = False
        try:
            completion = await call_with_retry(
                attempt,
                self._policy,
                request_id=ctx.request_id,
                on_attempt=on_attempt,
                sleep=self._sleep,
            )
            ok = True
        finally:
            record_latency(
                operation="provider.complete",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
                request_id=ctx.request_id,
            )

        ctx.metrics.prompt_tokens += completion.prompt_tokens
        ctx.metrics.completion_tokens += completion.completion_tokens
        return completion

    async def _stream(
        self,
        ctx: ProcessingContext,
        messages: list[dict[str, Any]],
        max_tokens: int,
    ) -> Completion:
        assert ctx.stream_queue is not None
        parts: list[str] = []
        try:
            async for delta in self._llm.stream(  # type: ignore[attr-defined]
                messages,
                temperature=self._config.temperature,
                max_tokens=max_tokens,
                timeout_seconds=self._config.timeout_seconds,
            ):
                parts.append(delta)
                ctx.partial_text += delta
                await ctx.stream_queue.put(delta)
        except ProviderError as exc:
            if parts:
                raise ProviderError(
                    f"stream interrupted after partial output: {exc.message}",
                    transient=False,
                    status_code=exc.status_code,
                    request_id=ctx.request_id,
                ) from exc
            raise

        text = "".join(parts)
        return Completion(
            text=text,
            prompt_tokens=sum(
                self._estimator.estimate(str(m.get("content") or "")) for m in messages
            ),
            completion_tokens=self._estimator.estimate(text),
        )


# ---------------------------------------------------------------------------
# Handler protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class MessageHandler(Protocol):
    name: str

    def can_handle(self, ctx: ProcessingContext) -> bool: ...

    async def handle(self, ctx: ProcessingContext) -> MessageContent: ...


def _tool_call_message(calls: list[ToolCall], text: str | None) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": text or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": json.dumps(call.arguments, sort_keys=True),
                },
            }
            for call in calls
        ],
    }


class _ConversationalHandler:
    """Shared provider conversation with a bounded tool-call loop."""

    name = "conversational"

    def __init__(
        self,
        provider: ProviderClient,
        *,
        tools: ToolRegistry | None = None,
        max_tool_depth: int = 3,
    ) -> None:
        self._provider = provider
        self._tools = tools
        self._max_tool_depth = max_tool_depth

    def _tool_specs(self, ctx: ProcessingContext) -> list[dict[str, Any]] | None:
        if not ctx.flags.enable_tool_calls or not self._tools:
            return None
        return self._tools.specs()

    async def _converse(
        self,
        ctx: ProcessingContext,
        messages: list[dict[str, Any]],
        *,
        depth: int = 0,
    ) -> Completion:
        tools = self._tool_specs(ctx)
        completion = await self._provider.complete(ctx, messages, tools=tools)
        while completion.tool_calls:
            if tools is None:
                ctx.decisions.append("tool_calls_ignored")
                break
            if depth >= self._max_tool_depth:
                ctx.decisions.append("tool_depth_exceeded")
                logger.warning(
                    "tool loop stopped at depth=%d request_id=%s",
                    depth,
                    ctx.request_id,
                )
                break
            depth += 1
            await self._run_tools(ctx, messages, completion.tool_calls, completion.text)
            completion = await self._provider.complete(ctx, messages, tools=tools)
        return completion

    async def _run_tools(
        self,
        ctx: ProcessingContext,
        messages: list[dict[str, Any]],
        calls: list[ToolCall],
        text: str | None,
    ) -> None:
        assert self._tools is not None
        messages.append(_tool_call_message(calls, text))
        for call in calls:
            result = await self._tools.execute(call, request_id=ctx.request_id)
            ctx.metrics.tool_calls += 1
            ctx.tool_results.append(result)
            messages.append(
                {"role": "tool", "tool_call_id": call.id, "content": result.output}
            )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


class ToolCallHandler(_ConversationalHandler):
    """Runs tool calls sent by the caller, then lets the provider answer."""

    name = "tool_call"

    def can_handle(self, ctx: ProcessingContext) -> bool:
        return (
            ctx.message is not None
            and isinstance(ctx.message.content, ToolCallContent)
            and ctx.flags.enable_tool_calls
            and bool(self._tools)
        )

    async def handle(self, ctx: ProcessingContext) -> MessageContent:
        assert ctx.message is not None
        content = ctx.message.content
        assert isinstance(content, ToolCallContent)
        messages = build_prompt(ctx)
        await self._run_tools(ctx, messages, content.calls, content.text)
        completion = await self._converse(ctx, messages, depth=1)
        return TextContent(text=completion.text)


class StructuredHandler(_ConversationalHandler):
    """JSON payloads and tool results; a JSON object reply stays structured."""

    name = "structured"

    def can_handle(self, ctx: ProcessingContext) -> bool:
        return ctx.message is not None and isinstance(
            ctx.message.content, (StructuredContent, ToolResultContent)
        )

    async def handle(self, ctx: ProcessingContext) -> MessageContent:
        assert ctx.message is not None
        content = ctx.message.content
        schema_name = content.schema_name if isinstance(content, StructuredContent) else None
        messages = build_prompt(ctx, instructions=_STRUCTURED_INSTRUCTIONS)
        completion = await self._converse(ctx, messages)
        try:
            data = json.loads(completion.text)
        except ValueError:
            return TextContent(text=completion.text)
        if isinstance(data, dict):
            return StructuredContent(data=data, schema_name=schema_name)
        return TextContent(text=completion.text)


class TextHandler(_ConversationalHandler):
    name = "text"

    def can_handle(self, ctx: ProcessingContext) -> bool:
        return ctx.message is not None and isinstance(ctx.message.content, TextContent)

    async def handle(self, ctx: ProcessingContext) -> MessageContent:
        completion = await self._converse(ctx, build_prompt(ctx))
        return TextContent(text=completion.text)


def default_handlers(
    provider: ProviderClient,
    *,
    tools: ToolRegistry | None = None,
    max_tool_depth: int = 3,
) -> list[MessageHandler]:
    """Handlers in resolution order: tool calls, structured, text."""
    return [
        ToolCallHandler(provider, tools=tools, max_tool_depth=max_tool_depth),
        StructuredHandler(provider, tools=tools, max_tool_depth=max_tool_depth),
        TextHandler(provider, tools=tools, max_tool_depth=max_tool_depth),
    ]
