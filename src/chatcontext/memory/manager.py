"""Episodic and semantic memory: relevance retrieval and consolidation.

Retrieval is a pure read over the backend so repeated identical queries
return identical ordered results; access tracking goes through
``touch``. Consolidation runs in the background every N turns, at most
once per scope at a time, and writes through the backend's versioned
``put``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Callable
from collections.abc import Iterable
from time import perf_counter
from typing import Protocol
from typing import runtime_checkable

from chatcontext.audit import AuditEventType
from chatcontext.audit import AuditLogger
from chatcontext.config import MemoryConfig
from chatcontext.errors import ConflictError
from chatcontext.errors import ProviderError
from chatcontext.llm.adapters import LLMAdapter
from chatcontext.memory.schemas import ConsolidationResult
from chatcontext.memory.schemas import MemoryItem
from chatcontext.memory.schemas import MemoryRetrieval
from chatcontext.memory.schemas import ScoredMemory
from chatcontext.memory.store import MemoryBackend
from chatcontext.models.messages import Message
from chatcontext.models.messages import Role
from chatcontext.models.schemas import MemoryKind
from chatcontext.observability import increment_counter
from chatcontext.observability import record_latency
from chatcontext.text import jaccard
from chatcontext.text import query_overlap
from chatcontext.text import split_sentences
from chatcontext.text import tokenize

logger = logging.getLogger(__name__)

_EMPHASIS_WORDS = frozenset(
    {"important", "remember", "always", "never", "must", "prefer", "critical"}
)

# ---------------------------------------------------------------------------
# Summarizers
# ---------------------------------------------------------------------------


@runtime_checkable
class Summarizer(Protocol):
    async def summarize(self, messages: list[Message]) -> str: ...


class ExtractiveSummarizer:
    """Keeps the sentences with the most frequent conversation keywords."""

    def __init__(self, max_sentences: int = 3) -> None:
        self._max_sentences = max_sentences

    async def summarize(self, messages: list[Message]) -> str:
        sentences: list[str] = []
        for message in messages:
            if message.role in (Role.user, Role.assistant):
                sentences.extend(split_sentences(message.text))
        if not sentences:
            return ""

        frequency = Counter(word for s in sentences for word in tokenize(s))

        def weight(index: int) -> float:
            words = tokenize(sentences[index])
            if not words:
                return 0.0
            return sum(frequency[w] for w in words) / len(words)

        ranked = sorted(range(len(sentences)), key=lambda i: (-weight(i), i))
        keep = sorted(ranked[: self._max_sentences])
        return " ".join(sentences[i] for i in keep)


class LLMSummarizer:
    """Summarizes the window with the configured provider."""

    def __init__(self, llm: LLMAdapter, *, max_tokens: int = 256) -> None:
        self._llm = llm
        self._max_tokens = max_tokens

    async def summarize(self, messages: list[Message]) -> str:
        transcript = "\n".join(f"{m.role.value}: {m.text}" for m in messages)
        completion = await self._llm.complete(
            [
                {
                    "role": "system",
                    "content": (
                        "Summarize the durable facts, preferences and decisions "
                        "in this conversation in at most three sentences."
                    ),
                },
                {"role": "user", "content": transcript},
            ],
            max_tokens=self._max_tokens,
        )
        return completion.text.strip()


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class MemoryManager:
    """Reads and consolidates memory items for one backend."""

    def __init__(
        self,
        backend: MemoryBackend,
        *,
        config: MemoryConfig | None = None,
        summarizer: Summarizer | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._config = config or MemoryConfig()
        self._summarizer = summarizer or ExtractiveSummarizer()
        self._fallback_summarizer = ExtractiveSummarizer()
        self._audit = audit_logger
        self._clock = clock
        self._turns: dict[str, int] = {}
        self._running: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def backend(self) -> MemoryBackend:
        return self._backend

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        scope: str,
        query: str,
        *,
        kinds: Iterable[MemoryKind] = (MemoryKind.episodic, MemoryKind.semantic),
        max_results: int = 10,
        min_relevance: float = 0.2,
        request_id: str | None = None,
    ) -> MemoryRetrieval:
        """Relevance search scoped to *scope*.

        Never raises for backend failures: an unavailable backend yields
        an empty, degraded result.
        """
        start = perf_counter()
        wanted = list(dict.fromkeys(kinds))
        query_terms = tokenize(query)
        if not wanted or not query_terms:
            return MemoryRetrieval()

        ok = False
        try:
            candidates = await self._backend.search(scope, query_terms, wanted)
            ok = True
        except Exception as exc:
            increment_counter("memory.degraded")
            logger.warning(
                "memory backend unavailable scope=%s request_id=%s: %s",
                scope,
                request_id,
                exc,
            )
            return MemoryRetrieval(
                degraded=True,
                warning=f"memory backend unavailable: {exc}",
            )
        finally:
            record_latency(
                operation="memory.retrieve",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
                request_id=request_id,
            )

        scored = [
            ScoredMemory(item=item, score=self.score(item, query_terms))
            for item in candidates
        ]
        scored = [s for s in scored if s.score >= min_relevance]
        scored.sort(key=lambda s: (-s.score, -s.item.created_at, s.item.id))
        return MemoryRetrieval(items=scored[:max_results])

    def score(self, item: MemoryItem, query_terms: set[str]) -> float:
        similarity = query_overlap(query_terms, set(item.keywords))
        value = (
            self._config.similarity_weight * similarity
            + self._config.importance_weight * item.importance
        )
        return round(min(max(value, 0.0), 1.0), 6)

    async def touch(self, scope: str, item_ids: Iterable[str]) -> None:
        """Record an access on each item (best effort, versioned)."""
        now = self._clock()

        def bump(item: MemoryItem) -> MemoryItem:
            return item.model_copy(
                update={
                    "access_count": item.access_count + 1,
                    "last_accessed": now,
                }
            )

        for item_id in item_ids:
            await self._write_with_retry(scope, item_id, bump)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def add(self, item: MemoryItem) -> MemoryItem:
        """Store a new item, deriving keywords from content when missing."""
        if not item.keywords:
            item = item.model_copy(update={"keywords": sorted(tokenize(item.content))})
        return await self._backend.put(item)

    def maybe_consolidate(
        self,
        scope: str,
        window: list[Message],
        *,
        conversation_id: str | None = None,
    ) -> asyncio.Task | None:
        """Count one turn; every N turns schedule background consolidation."""
        count = self._turns.get(scope, 0) + 1
        self._turns[scope] = count
        if count < self._config.consolidate_every_turns:
            return None
        if scope in self._running:
            return None  # Another consolidation is already in progress

        self._turns[scope] = 0
        self._running.add(scope)
        task = asyncio.create_task(
            self._run_background(scope, list(window), conversation_id)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_background(
        self,
        scope: str,
        window: list[Message],
        conversation_id: str | None,
    ) -> None:
        try:
            await self.consolidate(scope, window, conversation_id=conversation_id)
        except Exception:
            logger.exception("background consolidation failed scope=%s", scope)
        finally:
            self._running.discard(scope)

    async def wait_idle(self) -> None:
        """Wait for scheduled consolidations to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def consolidate(
        self,
        scope: str,
        window: list[Message],
        *,
        conversation_id: str | None = None,
    ) -> ConsolidationResult:
        """Summarize *window* into episodic memory, promote, decay and prune."""
        start = perf_counter()
        result = ConsolidationResult(scope=scope)
        ok = False
        try:
            turns = [m for m in window if m.role in (Role.user, Role.assistant)]
            if turns:
                summary = await self._summarize(turns, result)
                if summary:
                    item = await self.add(
                        MemoryItem(
                            scope=scope,
                            conversation_id=conversation_id,
                            kind=MemoryKind.episodic,
                            content=summary,
                            importance=self._estimate_importance(turns, summary),
                            decay_rate=self._config.default_decay_rate,
                            created_at=self._clock(),
                            last_accessed=self._clock(),
                            decayed_at=self._clock(),
                            source_ids=[m.id for m in turns],
                        )
                    )
                    result.created.append(item.id)
            else:
                result.skipped = True

            await self._promote(scope, result)
            await self._decay_and_prune(scope, result)
            ok = True
        finally:
            record_latency(
                operation="memory.consolidate",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

        logger.info(
            "consolidated scope=%s created=%d promoted=%d merged=%d pruned=%d",
            scope,
            len(result.created),
            result.promoted,
            result.merged,
            result.pruned,
        )
        if self._audit is not None:
            await self._audit.emit(
                AuditEventType.MEMORY_CONSOLIDATED,
                conversation_id=conversation_id,
                scope=scope,
                created=result.created,
                promoted=result.promoted,
                merged=result.merged,
                decayed=result.decayed,
                pruned=result.pruned,
            )
        return result

    # ------------------------------------------------------------------
    # Consolidation steps
    # ------------------------------------------------------------------

    async def _summarize(
        self, turns: list[Message], result: ConsolidationResult
    ) -> str:
        try:
            return await self._summarizer.summarize(turns)
        except ProviderError as exc:
            result.errors.append(f"summarizer failed: {exc.message}")
            logger.warning("summarizer failed, using extractive summary: %s", exc.message)
            return await self._fallback_summarizer.summarize(turns)

    def _estimate_importance(self, turns: list[Message], summary: str) -> float:
        importance = self._config.default_importance
        words = tokenize(" ".join(m.text for m in turns if m.role is Role.user))
        if words & _EMPHASIS_WORDS:
            importance += 0.2
        importance += min(len(tokenize(summary)) / 100.0, 0.2)
        return round(min(importance, 1.0), 6)

    async def _promote(self, scope: str, result: ConsolidationResult) -> None:
        threshold = self._config.promotion_threshold
        episodic = await self._backend.list_items(scope, [MemoryKind.episodic])
        semantic = await self._backend.list_items(scope, [MemoryKind.semantic])

        for item in episodic:
            if item.promoted or item.importance < threshold:
                continue
            words = set(item.keywords)
            target = max(
                (s for s in semantic if jaccard(words, set(s.keywords)) >= self._config.merge_similarity),
                key=lambda s: jaccard(words, set(s.keywords)),
                default=None,
            )
            if target is not None:

                def merge(current: MemoryItem, source: MemoryItem = item) -> MemoryItem:
                    content = current.content
                    if source.content not in content:
                        content = f"{content} {source.content}"
                    return current.model_copy(
                        update={
                            "content": content,
                            "keywords": sorted(set(current.keywords) | set(source.keywords)),
                            "importance": max(current.importance, source.importance),
                            "source_ids": [*current.source_ids, source.id],
                        }
                    )

                if await self._write_with_retry(scope, target.id, merge) is not None:
                    result.merged += 1
            else:
                created = await self._backend.put(
                    MemoryItem(
                        scope=scope,
                        kind=MemoryKind.semantic,
                        content=item.content,
                        keywords=item.keywords,
                        importance=item.importance,
                        decay_rate=item.decay_rate / 2,
                        created_at=self._clock(),
                        last_accessed=self._clock(),
                        decayed_at=self._clock(),
                        source_ids=[item.id],
                    )
                )
                semantic.append(created)

            await self._write_with_retry(
                scope, item.id, lambda current: current.model_copy(update={"promoted": True})
            )
            result.promoted += 1

    async def _decay_and_prune(self, scope: str, result: ConsolidationResult) -> None:
        now = self._clock()
        for item in await self._backend.list_items(scope):
            decayed = item.decayed_importance(now)
            if decayed < self._config.prune_threshold:
                await self._backend.delete(scope, item.id)
                result.pruned += 1
                continue
            if item.importance - decayed < 1e-6:
                continue

            def apply(current: MemoryItem, now: float = now) -> MemoryItem:
                return current.model_copy(
                    update={
                        "importance": round(current.decayed_importance(now), 6),
                        "decayed_at": now,
                    }
                )

            if await self._write_with_retry(scope, item.id, apply) is not None:
                result.decayed += 1

    async def _write_with_retry(
        self,
        scope: str,
        item_id: str,
        mutate: Callable[[MemoryItem], MemoryItem],
    ) -> MemoryItem | None:
        """Read-modify-write with bounded retry on version conflicts."""
        for _ in range(self._config.max_write_retries):
            current = await self._backend.get(scope, item_id)
            if current is None:
                return None
            try:
                return await self._backend.put(
                    mutate(current), expected_version=current.version
                )
            except ConflictError:
                increment_counter("memory.write_conflicts")
                continue
        logger.warning(
            "giving up on memory write after %d conflicts scope=%s item=%s",
            self._config.max_write_retries,
            scope,
            item_id,
        )
        return None
