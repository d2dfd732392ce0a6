"""Unit tests for concrete LLM adapters, the provider factory and retry."""

from __future__ import annotations

import json

import pytest

from chatcontext.config import LLMConfig
from chatcontext.config import PipelineConfig
from chatcontext.errors import ProviderError
from chatcontext.llm import build_llm_adapter
from chatcontext.llm import call_with_retry
from chatcontext.llm import Completion
from chatcontext.llm import EchoLLMAdapter
from chatcontext.llm import OpenAICompatibleLLMAdapter
from chatcontext.llm import parse_chat_completion
from chatcontext.llm import RetryPolicy
from chatcontext.llm import StreamingLLMAdapter
from chatcontext.observability import counters_snapshot


class TestBuildLLMAdapter:
    def test_openai_provider_requires_api_key(self) -> None:
        with pytest.raises(ValueError, match="api_key is required"):
            build_llm_adapter(LLMConfig(provider="openai", api_key=None))

    def test_openai_provider_built(self) -> None:
        adapter = build_llm_adapter(LLMConfig(provider="OpenAI", api_key="k"))
        assert isinstance(adapter, OpenAICompatibleLLMAdapter)

    def test_echo_provider_is_supported(self) -> None:
        adapter = build_llm_adapter(LLMConfig(provider="echo"))
        assert isinstance(adapter, EchoLLMAdapter)
        assert isinstance(adapter, StreamingLLMAdapter)

    def test_unsupported_provider_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unsupported llm_config.provider"):
            build_llm_adapter(LLMConfig(provider="anthropic"))


class TestEchoLLMAdapter:
    async def test_echoes_last_user_turn(self) -> None:
        completion = await EchoLLMAdapter().complete(
            [
                {"role": "system", "content": "be nice"},
                {"role": "user", "content": "first"},
                {"role": "assistant", "content": "ok"},
                {"role": "user", "content": "second"},
            ]
        )
        assert completion.text == "Echo: second"
        assert completion.prompt_tokens > 0
        assert completion.tool_calls == []

    async def test_respects_max_tokens_in_words(self) -> None:
        completion = await EchoLLMAdapter(prefix="").complete(
            [{"role": "user", "content": "one two three four"}], max_tokens=2
        )
        assert completion.text == "one two"

    async def test_stream_rejoins_to_full_text(self) -> None:
        deltas = [
            d
            async for d in EchoLLMAdapter().stream([{"role": "user", "content": "a b c"}])
        ]
        assert deltas == ["Echo:", " a", " b", " c"]
        assert "".join(deltas) == "Echo: a b c"


class TestOpenAICompatibleAdapter:
    async def test_complete_uses_sync_path_via_thread(self, monkeypatch) -> None:
        adapter = OpenAICompatibleLLMAdapter(model="gpt-4", api_key="test")

        def _fake_sync(messages, *, temperature, max_tokens, timeout_seconds, tools):
            assert messages == [{"role": "user", "content": "hello"}]
            assert temperature == 0.3
            assert max_tokens == 77
            assert timeout_seconds == 11.0
            assert tools is None
            return Completion(text="hi")

        monkeypatch.setattr(adapter, "_complete_sync", _fake_sync)

        result = await adapter.complete(
            [{"role": "user", "content": "hello"}],
            temperature=0.3,
            max_tokens=77,
            timeout_seconds=11.0,
        )
        assert result.text == "hi"


class TestParseChatCompletion:
    def test_text_and_usage(self) -> None:
        raw = json.dumps(
            {
                "choices": [{"message": {"content": "Hello"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3},
            }
        )
        completion = parse_chat_completion(raw)
        assert completion.text == "Hello"
        assert completion.prompt_tokens == 12
        assert completion.completion_tokens == 3

    def test_tool_calls_decoded(self) -> None:
        raw = json.dumps(
            {
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {
                                        "name": "lookup",
                                        "arguments": '{"q": "x"}',
                                    },
                                }
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ]
            }
        )
        completion = parse_chat_completion(raw)
        assert completion.text == ""
        assert completion.tool_calls[0].name == "lookup"
        assert completion.tool_calls[0].arguments == {"q": "x"}
        assert completion.finish_reason == "tool_calls"

    def test_missing_choices_is_permanent_error(self) -> None:
        with pytest.raises(ProviderError) as excinfo:
            parse_chat_completion('{"error": "nope"}')
        assert excinfo.value.transient is False

    def test_malformed_tool_arguments_rejected(self) -> None:
        raw = json.dumps(
            {
                "choices": [
                    {
                        "message": {
                            "content": "",
                            "tool_calls": [
                                {"id": "c", "function": {"name": "t", "arguments": "{bad"}}
                            ],
                        }
                    }
                ]
            }
        )
        with pytest.raises(ProviderError, match="malformed tool call"):
            parse_chat_completion(raw)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class _Flaky:
    def __init__(self, failures: list[ProviderError]) -> None:
        self._failures = list(failures)
        self.calls = 0

    async def __call__(self) -> Completion:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        return Completion(text="done")


class TestRetry:
    def test_delay_is_exponential_and_capped(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay_seconds=0.5, max_delay_seconds=1.5)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 1.5, 1.5]

    def test_from_config_never_below_one_attempt(self) -> None:
        policy = RetryPolicy.from_config(PipelineConfig(retry_attempts=0))
        assert policy.max_attempts == 1

    async def test_transient_errors_retried(self) -> None:
        slept: list[float] = []

        async def sleep(delay: float) -> None:
            slept.append(delay)

        fn = _Flaky([ProviderError("503", transient=True), ProviderError("429", transient=True)])
        attempts: list[int] = []
        result = await call_with_retry(
            fn,
            RetryPolicy(max_attempts=3, base_delay_seconds=0.1),
            on_attempt=attempts.append,
            sleep=sleep,
        )
        assert result.text == "done"
        assert fn.calls == 3
        assert attempts == [1, 2, 3]
        assert slept == [0.1, 0.2]
        assert counters_snapshot()["provider.retries"] == 2

    async def test_permanent_error_not_retried(self) -> None:
        async def sleep(delay: float) -> None:
            raise AssertionError("must not sleep")

        fn = _Flaky([ProviderError("400 bad request", transient=False)])
        with pytest.raises(ProviderError) as excinfo:
            await call_with_retry(fn, RetryPolicy(), request_id="req-9", sleep=sleep)
        assert fn.calls == 1
        assert excinfo.value.request_id == "req-9"

    async def test_gives_up_after_max_attempts(self) -> None:
        async def sleep(delay: float) -> None:
            return None

        fn = _Flaky([ProviderError("timeout", transient=True) for _ in range(5)])
        with pytest.raises(ProviderError, match="timeout"):
            await call_with_retry(fn, RetryPolicy(max_attempts=2), sleep=sleep)
        assert fn.calls == 2
