"""Context engine: retrieve -> optimize/compress -> structure."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from collections.abc import Iterable
from time import perf_counter

from chatcontext.config import ContextConfig
from chatcontext.context.compressor import ContextCompressor
from chatcontext.context.knowledge import KnowledgeSource
from chatcontext.context.optimizer import ContextOptimizer
from chatcontext.context.retriever import ContextRetriever
from chatcontext.context.schemas import ConversationContext
from chatcontext.context.schemas import OptimizedContext
from chatcontext.context.structurer import ContextStructurer
from chatcontext.errors import DegradedModeWarning
from chatcontext.memory.manager import MemoryManager
from chatcontext.models.schemas import ContextSource
from chatcontext.observability import record_latency
from chatcontext.text import DEFAULT_ESTIMATOR
from chatcontext.text import TokenEstimator
from chatcontext.text import tokenize

logger = logging.getLogger(__name__)


class ContextEngine:
    """Builds the budget-bounded context window for one request."""

    def __init__(
        self,
        *,
        memory_manager: MemoryManager | None = None,
        knowledge_source: KnowledgeSource | None = None,
        config: ContextConfig | None = None,
        estimator: TokenEstimator = DEFAULT_ESTIMATOR,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or ContextConfig()
        self.retriever = ContextRetriever(
            memory_manager=memory_manager,
            knowledge_source=knowledge_source,
            config=self.config,
            estimator=estimator,
        )
        self.compressor = ContextCompressor(estimator)
        self.optimizer = ContextOptimizer(
            config=self.config,
            compressor=self.compressor,
            clock=clock,
        )
        self.structurer = ContextStructurer()

    async def build_context(
        self,
        query: str,
        conversation: ConversationContext,
        token_budget: int,
        required_sources: Iterable[ContextSource] = (),
        excluded_sources: Iterable[ContextSource] = (),
    ) -> OptimizedContext:
        start = perf_counter()
        ok = False
        required = [s for s in required_sources if s not in set(excluded_sources)]
        try:
            outcome = await self.retriever.retrieve(
                query,
                conversation,
                required_sources=required,
                excluded_sources=excluded_sources,
            )
            ranked = self.optimizer.optimize(
                outcome.candidates,
                token_budget,
                required_sources=required,
                query_terms=tokenize(query),
            )
            context = self.structurer.structure(ranked, token_budget)
            context.warnings = outcome.warnings
            ok = True
        except Exception as exc:
            logger.exception(
                "context build failed request_id=%s; using fallback context",
                conversation.request_id,
            )
            return self.fallback(token_budget, reason=str(exc), request_id=conversation.request_id)
        finally:
            record_latency(
                operation="context.build",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
                request_id=conversation.request_id,
            )

        logger.debug(
            "context built request_id=%s tokens=%d/%d sources=%s quality=%.3f",
            conversation.request_id,
            context.total_tokens,
            token_budget,
            [s.value for s in context.sources_used],
            context.quality_score,
        )
        return context

    @staticmethod
    def fallback(
        token_budget: int,
        *,
        reason: str,
        request_id: str | None = None,
    ) -> OptimizedContext:
        """Empty window used when context assembly itself fails."""
        return OptimizedContext(
            token_budget=token_budget,
            quality_score=0.0,
            fallback=True,
            warnings=[
                DegradedModeWarning(
                    component="context",
                    message=f"context engine failed: {reason}",
                    request_id=request_id,
                )
            ],
        )
