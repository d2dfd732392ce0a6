"""Unit tests for the tool registry."""

from __future__ import annotations

import asyncio
import json
import threading
import time

import pytest

from chatcontext.models import ToolCall
from chatcontext.observability import latency_metrics_snapshot
from chatcontext.pipeline import ToolRegistry


def _add(a: int, b: int) -> int:
    return a + b


async def _lookup(city: str) -> dict:
    return {"city": city, "temp_c": 21}


def _broken() -> str:
    raise KeyError("missing credentials")


@pytest.fixture()
def registry() -> ToolRegistry:
    tools = ToolRegistry()
    tools.register(
        "add",
        _add,
        description="Add two integers.",
        parameters={
            "type": "object",
            "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
            "required": ["a", "b"],
        },
    )
    tools.register("weather", _lookup, description="Current weather.")
    tools.register("broken", _broken)
    return tools


class TestRegistration:
    def test_len_and_contains(self, registry):
        assert len(registry) == 3
        assert "add" in registry
        assert "nope" not in registry

    def test_duplicate_rejected(self, registry):
        with pytest.raises(ValueError, match="already registered"):
            registry.register("add", _add)

    def test_specs_use_function_layout(self, registry):
        specs = {s["function"]["name"]: s for s in registry.specs()}
        assert specs["add"]["type"] == "function"
        assert specs["add"]["function"]["parameters"]["required"] == ["a", "b"]
        assert specs["weather"]["function"]["parameters"] == {
            "type": "object",
            "properties": {},
        }


class TestExecute:
    async def test_sync_result_serialized(self, registry):
        result = await registry.execute(ToolCall(id="c1", name="add", arguments={"a": 2, "b": 3}))
        assert result.call_id == "c1"
        assert result.output == "5"
        assert not result.is_error
        assert latency_metrics_snapshot()["tool.add"]["count"] == 1

    async def test_async_result_awaited(self, registry):
        result = await registry.execute(ToolCall(name="weather", arguments={"city": "Lyon"}))
        assert json.loads(result.output) == {"city": "Lyon", "temp_c": 21}

    async def test_unknown_tool_is_error_result(self, registry):
        result = await registry.execute(ToolCall(name="teleport"))
        assert result.is_error
        assert result.output == "unknown tool: teleport"

    async def test_failure_becomes_error_result(self, registry):
        result = await registry.execute(ToolCall(name="broken"), request_id="req-1")
        assert result.is_error
        assert result.output.startswith("KeyError:")
        assert latency_metrics_snapshot()["tool.broken"]["error_count"] == 1

    async def test_bad_arguments_become_error_result(self, registry):
        result = await registry.execute(ToolCall(name="add", arguments={"a": 1}))
        assert result.is_error
        assert result.output.startswith("TypeError:")


class TestConcurrency:
    async def test_sync_tool_runs_in_worker_thread(self):
        tools = ToolRegistry()
        tools.register("whoami", lambda: threading.get_ident())
        result = await tools.execute(ToolCall(name="whoami"))
        assert int(result.output) != threading.get_ident()

    async def test_blocking_tool_leaves_event_loop_free(self):
        order: list[str] = []

        def slow() -> str:
            time.sleep(0.2)
            return "done"

        async def tick() -> None:
            await asyncio.sleep(0.01)
            order.append("tick")

        async def run_tool() -> None:
            result = await tools.execute(ToolCall(name="slow"))
            order.append(result.output)

        tools = ToolRegistry()
        tools.register("slow", slow)
        await asyncio.gather(run_tool(), tick())
        assert order == ["tick", "done"]
