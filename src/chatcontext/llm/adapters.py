"""Language-model provider abstraction, concrete adapters and factory."""

from __future__ import annotations

import asyncio
import json
import math
from collections.abc import AsyncIterator
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from chatcontext.config import LLMConfig
from chatcontext.errors import ProviderError
from chatcontext.models.messages import ToolCall

# ---------------------------------------------------------------------------
# Provider abstraction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Completion:
    """One provider answer: text and/or requested tool calls."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: str = "stop"


@runtime_checkable
class LLMAdapter(Protocol):
    """Protocol for language-model provider adapters.

    ``messages`` are ``{"role": ..., "content": ...}`` dicts in the
    OpenAI chat layout. Failures raise ``ProviderError``; network-class
    failures set ``transient=True``.
    """

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        timeout_seconds: float = 30.0,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion: ...


@runtime_checkable
class StreamingLLMAdapter(LLMAdapter, Protocol):
    """Adapter that can also yield incremental text deltas."""

    def stream(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        timeout_seconds: float = 30.0,
    ) -> AsyncIterator[str]: ...


def _rough_tokens(text: str) -> int:
    return math.ceil(len(text) / 4) if text else 0


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class EchoLLMAdapter:
    """Deterministic offline adapter that echoes the last user turn."""

    def __init__(self, prefix: str = "Echo: ") -> None:
        self._prefix = prefix

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        timeout_seconds: float = 30.0,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        del temperature, timeout_seconds, tools
        text = self._reply(messages)
        words = text.split()
        if len(words) > max_tokens:
            text = " ".join(words[:max_tokens])
        prompt = sum(_rough_tokens(str(m.get("content") or "")) for m in messages)
        return Completion(
            text=text,
            prompt_tokens=prompt,
            completion_tokens=_rough_tokens(text),
        )

    async def stream(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        timeout_seconds: float = 30.0,
    ) -> AsyncIterator[str]:
        completion = await self.complete(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )
        words = completion.text.split(" ")
        for index, word in enumerate(words):
            yield word if index == 0 else f" {word}"

    def _reply(self, messages: list[dict[str, Any]]) -> str:
        for message in reversed(messages):
            if message.get("role") == "user":
                return f"{self._prefix}{message.get('content') or ''}"
        return self._prefix.strip()


class OpenAICompatibleLLMAdapter:
    """OpenAI-compatible chat-completions adapter."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        timeout_seconds: float = 30.0,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        return await asyncio.to_thread(
            self._complete_sync,
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
            tools=tools,
        )

    def _complete_sync(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float,
        max_tokens: int,
        timeout_seconds: float,
        tools: list[dict[str, Any]] | None,
    ) -> Completion:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
        request = Request(
            url=f"{self._base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise ProviderError(
                f"provider HTTP {exc.code}: {detail[:200]}",
                transient=exc.code == 429 or exc.code >= 500,
                status_code=exc.code,
            ) from exc
        except URLError as exc:
            raise ProviderError(
                f"provider network error: {exc.reason}", transient=True
            ) from exc
        except OSError as exc:
            raise ProviderError(f"provider IO error: {exc}", transient=True) from exc

        return parse_chat_completion(raw)


def parse_chat_completion(raw: str) -> Completion:
    """Decode an OpenAI chat-completions body into a ``Completion``."""
    try:
        data = json.loads(raw)
        choice = data["choices"][0]
        message = choice["message"]
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise ProviderError("provider response missing choices[0].message") from exc

    content = message.get("content") or ""
    if not isinstance(content, str):
        raise ProviderError("provider response content must be a string")

    calls: list[ToolCall] = []
    for entry in message.get("tool_calls") or []:
        try:
            function = entry["function"]
            arguments = json.loads(function.get("arguments") or "{}")
            calls.append(
                ToolCall(id=entry["id"], name=function["name"], arguments=arguments)
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError("provider returned a malformed tool call") from exc

    usage = data.get("usage") or {}
    return Completion(
        text=content,
        tool_calls=calls,
        prompt_tokens=int(usage.get("prompt_tokens", 0)),
        completion_tokens=int(usage.get("completion_tokens", 0)),
        finish_reason=str(choice.get("finish_reason") or "stop"),
    )


def build_llm_adapter(config: LLMConfig) -> LLMAdapter:
    """Create a concrete adapter from ``LLMConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError("llm_config.api_key is required when provider='openai'")
        return OpenAICompatibleLLMAdapter(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
        )
    if provider == "echo":
        return EchoLLMAdapter()
    raise ValueError(
        f"Unsupported llm_config.provider '{config.provider}'. "
        "Supported providers: openai, echo."
    )
