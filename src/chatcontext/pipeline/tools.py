"""Caller-supplied tools the provider may ask to run."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from time import perf_counter
from typing import Any

from chatcontext.models.messages import ToolCall
from chatcontext.models.messages import ToolResultContent
from chatcontext.observability import record_latency

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    fn: Callable[..., Any]
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class ToolRegistry:
    """Named tools, advertised to the provider in the function-calling layout.

    A failing or unknown tool produces an ``is_error`` result that is fed
    back to the provider; it never aborts the request.
    Plain functions run in a worker thread; coroutine functions run on
    the event loop.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def register(
        self,
        name: str,
        fn: Callable[..., Any],
        *,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> None:
        if name in self._tools:
            raise ValueError(f"tool {name!r} is already registered")
        spec = ToolSpec(name=name, fn=fn, description=description)
        if parameters is not None:
            spec = replace(spec, parameters=parameters)
        self._tools[name] = spec

    def specs(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.parameters,
                },
            }
            for spec in self._tools.values()
        ]

    async def execute(self, call: ToolCall, *, request_id: str | None = None) -> ToolResultContent:
        spec = self._tools.get(call.name)
        if spec is None:
            return ToolResultContent(
                call_id=call.id,
                name=call.name,
                output=f"unknown tool: {call.name}",
                is_error=True,
            )

        start = perf_counter()
        ok = False
        try:
            if inspect.iscoroutinefunction(spec.fn):
                result = await spec.fn(**call.arguments)
            else:
                result = await asyncio.to_thread(spec.fn, **call.arguments)
            if inspect.isawaitable(result):
                result = await result
            ok = True
        except Exception as exc:
            logger.warning(
                "tool failed name=%s call_id=%s request_id=%s: %s",
                call.name,
                call.id,
                request_id,
                exc,
            )
            return ToolResultContent(
                call_id=call.id,
                name=call.name,
                output=f"{type(exc).__name__}: {exc}",
                is_error=True,
            )
        finally:
            record_latency(
                operation=f"tool.{call.name}",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
                request_id=request_id,
            )

        output = result if isinstance(result, str) else json.dumps(result, default=str)
        return ToolResultContent(call_id=call.id, name=call.name, output=output)
