"""Unit tests for concurrent retrieval and the context engine."""

from __future__ import annotations

import asyncio

from chatcontext.config import ContextConfig
from chatcontext.context import CandidateReason
from chatcontext.context import ContextEngine
from chatcontext.context import ContextRetriever
from chatcontext.context import ConversationContext
from chatcontext.context import KnowledgeSnippet
from chatcontext.context import StaticKnowledgeSource
from chatcontext.memory import InMemoryMemoryBackend
from chatcontext.memory import MemoryItem
from chatcontext.memory import MemoryManager
from chatcontext.models import ContextSource
from chatcontext.models import MemoryKind
from chatcontext.models.messages import Message
from chatcontext.models.messages import Role
from chatcontext.models.messages import TextContent
from chatcontext.observability import counters_snapshot

KINDS = (MemoryKind.episodic, MemoryKind.semantic)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FailingBackend(InMemoryMemoryBackend):
    async def search(self, scope, keywords, kinds):
        raise ConnectionError("memory cluster unreachable")


class _SlowKnowledge:
    async def search(self, query: str, *, limit: int = 10) -> list[KnowledgeSnippet]:
        await asyncio.sleep(5)
        return []


class _BrokenKnowledge:
    async def search(self, query: str, *, limit: int = 10) -> list[KnowledgeSnippet]:
        raise RuntimeError("index corrupted")


def _history(*texts: str) -> list[Message]:
    roles = [Role.user, Role.assistant]
    return [
        Message(
            role=roles[i % 2],
            content=TextContent(text=text),
            created_at=1000.0 + i,
        )
        for i, text in enumerate(texts)
    ]


def _conversation(history: list[Message] | None = None, **kwargs) -> ConversationContext:
    defaults = {
        "scope": "agent-1",
        "conversation_id": "conv-1",
        "history": history or [],
        "memory_kinds": KINDS,
        "request_id": "req-1",
    }
    defaults.update(kwargs)
    return ConversationContext(**defaults)


async def _memory(*contents: str) -> MemoryManager:
    manager = MemoryManager(InMemoryMemoryBackend())
    for content in contents:
        await manager.add(MemoryItem(scope="agent-1", content=content, importance=0.5))
    return manager


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------


class TestRetriever:
    async def test_gathers_all_sources(self):
        knowledge = StaticKnowledgeSource()
        knowledge.add("The project deadline moved to Friday", title="Planning")
        retriever = ContextRetriever(
            memory_manager=await _memory("Project deadline is tight"),
            knowledge_source=knowledge,
        )

        outcome = await retriever.retrieve(
            "project deadline",
            _conversation(_history("When is the project due?", "Soon.")),
        )

        sources = {c.source for c in outcome.candidates}
        assert sources == {
            ContextSource.history,
            ContextSource.episodic,
            ContextSource.knowledge,
        }
        assert outcome.warnings == []

    async def test_history_relevance_favours_recent_turns(self):
        outcome = await ContextRetriever().retrieve(
            "unrelated", _conversation(_history("one", "two", "three"))
        )
        relevance = [c.relevance for c in outcome.candidates]
        assert relevance == sorted(relevance)
        assert relevance[-1] == 1.0

    async def test_slow_source_dropped_with_warning(self):
        retriever = ContextRetriever(
            knowledge_source=_SlowKnowledge(),
            config=ContextConfig(source_timeout_seconds=0.05),
        )
        outcome = await retriever.retrieve("hello", _conversation(_history("hello there")))

        assert [c.source for c in outcome.candidates] == [ContextSource.history]
        assert [w.component for w in outcome.warnings] == ["knowledge"]
        assert "timed out" in outcome.warnings[0].message
        assert counters_snapshot()["context.source.knowledge.degraded"] == 1

    async def test_failing_source_dropped_with_warning(self):
        retriever = ContextRetriever(knowledge_source=_BrokenKnowledge())
        outcome = await retriever.retrieve("hello", _conversation())
        assert outcome.candidates == []
        assert "index corrupted" in outcome.warnings[0].message

    async def test_memory_backend_failure_degrades(self):
        retriever = ContextRetriever(memory_manager=MemoryManager(_FailingBackend()))
        outcome = await retriever.retrieve("project deadline", _conversation())

        assert outcome.candidates == []
        assert [w.component for w in outcome.warnings] == ["memory"]
        assert outcome.warnings[0].request_id == "req-1"

    async def test_excluded_sources_not_queried(self):
        retriever = ContextRetriever(memory_manager=await _memory("project deadline"))
        outcome = await retriever.retrieve(
            "project deadline",
            _conversation(_history("project deadline?")),
            excluded_sources=[ContextSource.history, ContextSource.semantic],
        )
        assert {c.source for c in outcome.candidates} == {ContextSource.episodic}

    async def test_memory_skipped_without_kinds(self):
        retriever = ContextRetriever(memory_manager=await _memory("project deadline"))
        outcome = await retriever.retrieve(
            "project deadline", _conversation(memory_kinds=())
        )
        assert outcome.candidates == []

    async def test_low_relevance_marked_unless_required(self):
        knowledge = StaticKnowledgeSource()
        knowledge.add("alpha beta gamma delta")
        retriever = ContextRetriever(knowledge_source=knowledge)

        outcome = await retriever.retrieve("alpha one two three four", _conversation())
        assert outcome.candidates[0].reason is CandidateReason.below_threshold

        required = await retriever.retrieve(
            "alpha one two three four",
            _conversation(),
            required_sources=[ContextSource.knowledge],
        )
        assert required.candidates[0].reason is None

    async def test_candidate_limit(self):
        retriever = ContextRetriever(config=ContextConfig(max_candidates=2))
        outcome = await retriever.retrieve("x", _conversation(_history("a", "b", "c", "d")))
        limited = [c for c in outcome.candidates if c.reason is CandidateReason.limit]
        assert len(limited) == 2

    async def test_history_window_keeps_latest_turns(self):
        history = _history("a", "b", "c", "d", "e")
        retriever = ContextRetriever(config=ContextConfig(history_window=2))
        outcome = await retriever.retrieve("x", _conversation(history))
        assert [c.content for c in outcome.candidates] == ["d", "e"]
        assert outcome.candidates[-1].relevance == 1.0

    async def test_zero_history_window_drops_history(self):
        retriever = ContextRetriever(config=ContextConfig(history_window=0))
        outcome = await retriever.retrieve("x", _conversation(_history("a", "b")))
        assert outcome.candidates == []


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestContextEngine:
    async def test_empty_inputs_give_empty_window(self):
        engine = ContextEngine(memory_manager=await _memory())
        context = await engine.build_context("Hello", _conversation(), 1000)
        assert context.sources_used == []
        assert context.total_tokens == 0
        assert not context.fallback

    async def test_window_respects_budget(self):
        history = _history(*(f"message number {i} about the launch" for i in range(40)))
        engine = ContextEngine(memory_manager=await _memory("launch window opens at dawn"))
        context = await engine.build_context("launch", _conversation(history), 60)

        assert context.total_tokens <= 60
        assert context.token_budget == 60
        assert context.exclusion_counts()["budget"] > 0

    async def test_warnings_carried_onto_context(self):
        engine = ContextEngine(memory_manager=MemoryManager(_FailingBackend()))
        context = await engine.build_context("hello", _conversation(), 500)
        assert [w.component for w in context.warnings] == ["memory"]
        assert not context.fallback

    async def test_required_and_excluded_resolve_to_excluded(self):
        engine = ContextEngine()
        context = await engine.build_context(
            "hello",
            _conversation(_history("hello")),
            500,
            required_sources=[ContextSource.history],
            excluded_sources=[ContextSource.history],
        )
        assert context.sources_used == []

    async def test_internal_failure_returns_fallback(self, monkeypatch):
        engine = ContextEngine()

        def explode(*args, **kwargs):
            raise ZeroDivisionError("bad weights")

        monkeypatch.setattr(engine.optimizer, "optimize", explode)
        context = await engine.build_context("hello", _conversation(_history("hi")), 500)

        assert context.fallback
        assert context.quality_score == 0.0
        assert context.sections == []
        assert context.warnings[0].component == "context"
        assert "bad weights" in context.warnings[0].message
