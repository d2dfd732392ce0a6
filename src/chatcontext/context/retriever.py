"""Concurrent candidate gathering from history, memory and knowledge."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field
from time import perf_counter

from chatcontext.config import ContextConfig
from chatcontext.context.knowledge import KnowledgeSource
from chatcontext.context.schemas import CandidateReason
from chatcontext.context.schemas import ContextCandidate
from chatcontext.context.schemas import ConversationContext
from chatcontext.errors import DegradedModeWarning
from chatcontext.memory.manager import MemoryManager
from chatcontext.models.schemas import ContextSource
from chatcontext.observability import increment_counter
from chatcontext.observability import record_latency
from chatcontext.text import DEFAULT_ESTIMATOR
from chatcontext.text import query_overlap
from chatcontext.text import TokenEstimator
from chatcontext.text import tokenize

logger = logging.getLogger(__name__)


@dataclass
class RetrievalOutcome:
    candidates: list[ContextCandidate] = field(default_factory=list)
    warnings: list[DegradedModeWarning] = field(default_factory=list)


class ContextRetriever:
    """Queries every enabled source concurrently with a per-source timeout.

    A source that times out or fails is dropped and reported as a
    ``DegradedModeWarning``; the other sources still contribute.
    """

    def __init__(
        self,
        *,
        memory_manager: MemoryManager | None = None,
        knowledge_source: KnowledgeSource | None = None,
        config: ContextConfig | None = None,
        estimator: TokenEstimator = DEFAULT_ESTIMATOR,
    ) -> None:
        self._memory = memory_manager
        self._knowledge = knowledge_source
        self._config = config or ContextConfig()
        self._estimator = estimator

    async def retrieve(
        self,
        query: str,
        conversation: ConversationContext,
        *,
        required_sources: Iterable[ContextSource] = (),
        excluded_sources: Iterable[ContextSource] = (),
    ) -> RetrievalOutcome:
        excluded = set(excluded_sources)
        required = set(required_sources)
        query_terms = tokenize(query)
        outcome = RetrievalOutcome()

        jobs: dict[str, Awaitable[list[ContextCandidate]]] = {}
        if ContextSource.history not in excluded:
            jobs["history"] = self._from_history(conversation, query_terms)
        kinds = tuple(
            kind
            for kind in conversation.memory_kinds
            if ContextSource(kind.value) not in excluded
        )
        if self._memory is not None and kinds:
            jobs["memory"] = self._from_memory(query, conversation, kinds, outcome)
        if self._knowledge is not None and ContextSource.knowledge not in excluded:
            jobs["knowledge"] = self._from_knowledge(query)

        results = await asyncio.gather(
            *(
                self._bounded(name, job, conversation.request_id, outcome)
                for name, job in jobs.items()
            )
        )
        candidates = [c for batch in results for c in batch]
        self._apply_thresholds(candidates, required)
        outcome.candidates = candidates
        return outcome

    async def _bounded(
        self,
        name: str,
        job: Awaitable[list[ContextCandidate]],
        request_id: str | None,
        outcome: RetrievalOutcome,
    ) -> list[ContextCandidate]:
        start = perf_counter()
        ok = False
        try:
            batch = await asyncio.wait_for(job, timeout=self._config.source_timeout_seconds)
            ok = True
            return batch
        except TimeoutError:
            message = f"source timed out after {self._config.source_timeout_seconds}s"
        except Exception as exc:
            message = f"source failed: {exc}"
        finally:
            record_latency(
                operation=f"context.source.{name}",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
                request_id=request_id,
            )
        increment_counter(f"context.source.{name}.degraded")
        logger.warning("dropping context source=%s request_id=%s: %s", name, request_id, message)
        outcome.warnings.append(
            DegradedModeWarning(component=name, message=message, request_id=request_id)
        )
        return []

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def _from_history(
        self, conversation: ConversationContext, query_terms: set[str]
    ) -> list[ContextCandidate]:
        window = self._config.history_window
        messages = [m for m in conversation.history if m.text.strip()]
        messages = messages[-window:] if window > 0 else []
        total = len(messages)
        candidates = []
        for index, message in enumerate(messages):
            position = (index + 1) / total
            overlap = query_overlap(query_terms, tokenize(message.text))
            candidates.append(
                ContextCandidate(
                    id=message.id,
                    source=ContextSource.history,
                    content=message.text,
                    tokens=message.tokens or self._estimator.estimate(message.text),
                    relevance=round(0.4 + 0.6 * max(position, overlap), 6),
                    timestamp=message.created_at,
                    metadata={"role": message.role.value},
                )
            )
        return candidates

    async def _from_memory(
        self,
        query: str,
        conversation: ConversationContext,
        kinds: tuple,
        outcome: RetrievalOutcome,
    ) -> list[ContextCandidate]:
        assert self._memory is not None
        retrieval = await self._memory.retrieve(
            conversation.scope,
            query,
            kinds=kinds,
            max_results=conversation.max_memory_results,
            min_relevance=conversation.min_memory_relevance,
            request_id=conversation.request_id,
        )
        if retrieval.degraded:
            outcome.warnings.append(
                DegradedModeWarning(
                    component="memory",
                    message=retrieval.warning or "memory unavailable",
                    request_id=conversation.request_id,
                )
            )
        return [
            ContextCandidate(
                id=scored.item.id,
                source=ContextSource(scored.item.kind.value),
                content=scored.item.content,
                tokens=self._estimator.estimate(scored.item.content),
                relevance=min(scored.score, 1.0),
                timestamp=scored.item.created_at,
                metadata={"item_id": scored.item.id, "importance": scored.item.importance},
            )
            for scored in retrieval.items
        ]

    async def _from_knowledge(self, query: str) -> list[ContextCandidate]:
        assert self._knowledge is not None
        snippets = await self._knowledge.search(query, limit=self._config.knowledge_limit)
        return [
            ContextCandidate(
                id=snippet.id,
                source=ContextSource.knowledge,
                content=snippet.content,
                tokens=self._estimator.estimate(snippet.content),
                relevance=min(max(snippet.score, 0.0), 1.0),
                timestamp=snippet.timestamp,
                metadata={"title": snippet.title} if snippet.title else {},
            )
            for snippet in snippets
        ]

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def _apply_thresholds(
        self, candidates: list[ContextCandidate], required: set[ContextSource]
    ) -> None:
        threshold = self._config.relevance_threshold
        open_candidates = []
        for candidate in candidates:
            if candidate.source not in required and candidate.relevance < threshold:
                candidate.reason = CandidateReason.below_threshold
            else:
                open_candidates.append(candidate)

        limit = self._config.max_candidates
        if len(open_candidates) <= limit:
            return
        open_candidates.sort(
            key=lambda c: (c.source not in required, -c.relevance, -c.timestamp, c.id)
        )
        for candidate in open_candidates[limit:]:
            candidate.reason = CandidateReason.limit
