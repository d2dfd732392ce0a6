"""Token-budgeted selection of context candidates."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from collections.abc import Iterable

from chatcontext.config import ContextConfig
from chatcontext.context.compressor import ContextCompressor
from chatcontext.context.schemas import CandidateReason
from chatcontext.context.schemas import ContextCandidate
from chatcontext.models.schemas import ContextSource
from chatcontext.models.schemas import SOURCE_PRIORITY

logger = logging.getLogger(__name__)

SOURCE_WEIGHTS: dict[ContextSource, float] = {
    ContextSource.history: 1.0,
    ContextSource.episodic: 0.8,
    ContextSource.semantic: 0.6,
    ContextSource.knowledge: 0.4,
}


def ordering_key(candidate: ContextCandidate) -> tuple[float, float, int]:
    """Higher score first, then newer, then higher-priority source."""
    return (-candidate.score, -candidate.timestamp, SOURCE_PRIORITY[candidate.source])


class ContextOptimizer:
    """Greedy budgeted selection with required sources accepted first.

    Composite score::

        relevance_weight * relevance
        + recency_weight * exp(-age_hours / recency_half_life_hours)
        + source_weight * SOURCE_WEIGHTS[source]
    """

    def __init__(
        self,
        *,
        config: ContextConfig | None = None,
        compressor: ContextCompressor | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or ContextConfig()
        self._compressor = compressor or ContextCompressor()
        self._clock = clock

    def score(self, candidate: ContextCandidate, now: float) -> float:
        cfg = self._config
        age_hours = max(now - candidate.timestamp, 0.0) / 3600.0
        recency = math.exp(-age_hours / cfg.recency_half_life_hours)
        value = (
            cfg.relevance_weight * candidate.relevance
            + cfg.recency_weight * recency
            + cfg.source_weight * SOURCE_WEIGHTS[candidate.source]
        )
        return round(value, 6)

    def optimize(
        self,
        candidates: list[ContextCandidate],
        token_budget: int,
        *,
        required_sources: Iterable[ContextSource] = (),
        query_terms: set[str] | frozenset[str] = frozenset(),
    ) -> list[ContextCandidate]:
        """Decide inclusion for every undecided candidate; return all, ranked."""
        now = self._clock()
        for candidate in candidates:
            candidate.score = self.score(candidate, now)
        ranked = sorted(candidates, key=ordering_key)

        required = set(required_sources)
        open_candidates = [c for c in ranked if c.reason is None]
        must_keep = [c for c in open_candidates if c.source in required]
        optional = [c for c in open_candidates if c.source not in required]

        used = self._accept_required(must_keep, token_budget, query_terms)
        remaining = token_budget - used

        for candidate in optional:
            if candidate.tokens <= remaining:
                self._accept(candidate, CandidateReason.selected)
                remaining -= candidate.tokens
            elif (
                candidate.tokens > token_budget
                and remaining >= self._config.min_compressed_tokens
            ):
                # Larger than the whole window on its own: shrink into what is left.
                self._compressor.compress_candidate(
                    candidate, remaining, query_terms=query_terms
                )
                self._accept(candidate, CandidateReason.compressed)
                remaining -= candidate.tokens
            else:
                self._reject(candidate, CandidateReason.budget)
        return ranked

    def _accept_required(
        self,
        candidates: list[ContextCandidate],
        token_budget: int,
        query_terms: set[str] | frozenset[str],
    ) -> int:
        total = sum(c.tokens for c in candidates)
        if total <= token_budget:
            for candidate in candidates:
                self._accept(candidate, CandidateReason.required)
            return total

        # Required set alone overflows: compress proportionally, never drop.
        kept = list(candidates)
        while kept and len(kept) > token_budget:
            dropped = kept.pop()
            self._reject(dropped, CandidateReason.budget)
            logger.warning(
                "required candidate %s dropped: budget %d below one token per fragment",
                dropped.id,
                token_budget,
            )
        if not kept:
            return 0

        kept_total = sum(c.tokens for c in kept)
        targets = [max(token_budget * c.tokens // kept_total, 1) for c in kept]
        overflow = sum(targets) - token_budget
        while overflow > 0:
            index = max(range(len(targets)), key=lambda i: targets[i])
            targets[index] -= 1
            overflow -= 1

        used = 0
        for candidate, target in zip(kept, targets):
            self._compressor.compress_candidate(
                candidate, target, query_terms=query_terms
            )
            self._accept(candidate, CandidateReason.required)
            used += candidate.tokens
        return used

    @staticmethod
    def _accept(candidate: ContextCandidate, reason: CandidateReason) -> None:
        candidate.included = True
        candidate.reason = reason

    @staticmethod
    def _reject(candidate: ContextCandidate, reason: CandidateReason) -> None:
        candidate.included = False
        candidate.reason = reason
