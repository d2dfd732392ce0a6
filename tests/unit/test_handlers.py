"""Prompt layout and provider client unit tests."""

from __future__ import annotations

import asyncio

import pytest

from chatcontext.config import FeatureFlags
from chatcontext.context.schemas import ContextFragment
from chatcontext.context.schemas import ContextSection
from chatcontext.context.schemas import OptimizedContext
from chatcontext.conversation import AgentProfile
from chatcontext.errors import ProviderError
from chatcontext.llm.retry import RetryPolicy
from chatcontext.models import ContextSource
from chatcontext.models.messages import Message
from chatcontext.models.messages import Role
from chatcontext.models.messages import TextContent
from chatcontext.pipeline import build_prompt
from chatcontext.pipeline import ProcessingContext
from chatcontext.pipeline import ProviderClient
from tests.helpers.fakes import ScriptedLLM
from tests.helpers.fakes import StreamingLLM
from tests.helpers.fakes import structured_request


async def _no_sleep(delay: float) -> None:
    return None


def _ctx(text: str = "Hi", **kwargs) -> ProcessingContext:
    ctx = ProcessingContext(
        request=structured_request(text),
        request_id="req-1",
        flags=FeatureFlags(),
        **kwargs,
    )
    ctx.message = Message(role=Role.user, content=TextContent(text=text))
    return ctx


def _fragment(fid: str, content: str, role: str | None = None) -> ContextFragment:
    return ContextFragment(id=fid, content=content, tokens=4, score=0.9, role=role)


class TestBuildPrompt:
    def test_layout(self):
        ctx = _ctx()
        ctx.agent = AgentProfile(id="agent-1", system_prompt="Be brief.")
        ctx.context = OptimizedContext(
            sections=[
                ContextSection(
                    source=ContextSource.knowledge,
                    title="Knowledge",
                    fragments=[_fragment("k1", "Lyon is in France")],
                ),
                ContextSection(
                    source=ContextSource.history,
                    title="Conversation history",
                    fragments=[
                        _fragment("m1", "Where is Lyon?", role="user"),
                        _fragment("m2", "In France.", role="assistant"),
                    ],
                ),
            ]
        )
        ctx.state_snapshot = {"session:s1": {"plan": "pro"}, "shared:agent-1": {}}

        messages = build_prompt(ctx)

        assert messages == [
            {
                "role": "system",
                "content": (
                    "Be brief.\n\n"
                    "## Knowledge\n- Lyon is in France\n\n"
                    '## Session state\n- session:s1.plan = "pro"'
                ),
            },
            {"role": "user", "content": "Where is Lyon?"},
            {"role": "assistant", "content": "In France."},
            {"role": "user", "content": "Hi"},
        ]

    def test_instructions_follow_agent_prompt(self):
        ctx = _ctx()
        ctx.agent = AgentProfile(id="agent-1", system_prompt="Be brief.")
        messages = build_prompt(ctx, instructions="Answer in JSON.")
        assert messages[0]["content"] == "Be brief.\n\nAnswer in JSON."

    def test_no_system_message_without_system_parts(self):
        assert build_prompt(_ctx("Hello")) == [{"role": "user", "content": "Hello"}]

    def test_unknown_history_roles_sent_as_user(self):
        ctx = _ctx()
        ctx.context = OptimizedContext(
            sections=[
                ContextSection(
                    source=ContextSource.history,
                    title="Conversation history",
                    fragments=[_fragment("m1", "42", role="tool")],
                )
            ]
        )
        assert build_prompt(ctx)[0] == {"role": "user", "content": "42"}


class TestProviderClient:
    async def test_usage_accumulates_across_calls(self):
        client = ProviderClient(ScriptedLLM())
        ctx = _ctx()
        await client.complete(ctx, [{"role": "user", "content": "a"}])
        await client.complete(ctx, [{"role": "user", "content": "b"}])
        assert ctx.metrics.prompt_tokens == 20
        assert ctx.metrics.completion_tokens == 6
        assert ctx.metrics.provider_attempts == 2

    async def test_streams_into_queue(self):
        llm = StreamingLLM()
        ctx = _ctx(stream_queue=asyncio.Queue())
        completion = await ProviderClient(llm).complete(ctx, [{"role": "user", "content": "hi"}])

        assert completion.text == "Hello there"
        assert completion.completion_tokens == 3
        assert ctx.partial_text == "Hello there"
        assert [ctx.stream_queue.get_nowait() for _ in range(3)] == ["Hel", "lo ", "there"]

    async def test_tools_disable_streaming(self):
        llm = StreamingLLM()
        ctx = _ctx(stream_queue=asyncio.Queue())
        tools = [{"type": "function", "function": {"name": "ping", "parameters": {}}}]
        completion = await ProviderClient(llm).complete(
            ctx, [{"role": "user", "content": "hi"}], tools=tools
        )
        assert llm.stream_calls == 0
        assert completion.text == "Echo: hi"
        assert ctx.stream_queue.empty()

    async def test_interrupted_stream_not_retried(self):
        llm = StreamingLLM(fail_after=2)
        ctx = _ctx(stream_queue=asyncio.Queue())
        with pytest.raises(ProviderError) as excinfo:
            await ProviderClient(llm, sleep=_no_sleep).complete(
                ctx, [{"role": "user", "content": "hi"}]
            )
        assert not excinfo.value.transient
        assert "partial output" in excinfo.value.message
        assert llm.stream_calls == 1
        assert ctx.partial_text == "Hello "

    async def test_failure_before_first_delta_retried(self):
        llm = StreamingLLM(fail_after=0)
        ctx = _ctx(stream_queue=asyncio.Queue())
        client = ProviderClient(
            llm, retry_policy=RetryPolicy(max_attempts=2), sleep=_no_sleep
        )
        with pytest.raises(ProviderError) as excinfo:
            await client.complete(ctx, [{"role": "user", "content": "hi"}])
        assert excinfo.value.transient
        assert llm.stream_calls == 2
        assert ctx.metrics.provider_attempts == 2
