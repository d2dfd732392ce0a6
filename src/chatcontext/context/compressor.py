"""Salience-preserving compression of oversized context fragments."""

from __future__ import annotations

from chatcontext.context.schemas import ContextCandidate
from chatcontext.text import DEFAULT_ESTIMATOR
from chatcontext.text import split_sentences
from chatcontext.text import TokenEstimator
from chatcontext.text import tokenize

_ELLIPSIS = "..."


class ContextCompressor:
    """Shrinks text to a token target.

    Sentences are ranked by overlap with the query (the first sentence
    gets a bonus) and the best ones are kept in their original order. If
    no sentence subset fits, the text is truncated word by word.
    """

    def __init__(self, estimator: TokenEstimator = DEFAULT_ESTIMATOR) -> None:
        self._estimator = estimator

    def compress(
        self,
        text: str,
        target_tokens: int,
        *,
        query_terms: set[str] | frozenset[str] = frozenset(),
    ) -> str:
        """Return *text* reduced so that its estimate is <= *target_tokens*."""
        if target_tokens <= 0:
            return ""
        if self._estimator.estimate(text) <= target_tokens:
            return text

        sentences = split_sentences(text)
        if len(sentences) > 1:
            ranked = sorted(
                range(len(sentences)),
                key=lambda i: (-self._salience(sentences[i], i, query_terms), i),
            )
            chosen: list[int] = []
            for index in ranked:
                trial = " ".join(sentences[i] for i in sorted([*chosen, index]))
                if self._estimator.estimate(trial) <= target_tokens:
                    chosen.append(index)
            if chosen:
                return " ".join(sentences[i] for i in sorted(chosen))

        return self._truncate(text, target_tokens)

    def compress_candidate(
        self,
        candidate: ContextCandidate,
        target_tokens: int,
        *,
        query_terms: set[str] | frozenset[str] = frozenset(),
    ) -> None:
        """Compress *candidate* in place when it exceeds *target_tokens*."""
        if candidate.tokens <= target_tokens:
            return
        candidate.content = self.compress(
            candidate.content, target_tokens, query_terms=query_terms
        )
        candidate.tokens = self._estimator.estimate(candidate.content)
        candidate.compressed = True

    @staticmethod
    def _salience(sentence: str, position: int, query_terms: set[str] | frozenset[str]) -> float:
        words = tokenize(sentence)
        overlap = len(words & query_terms) / len(query_terms) if query_terms else 0.0
        lead = 0.5 if position == 0 else 0.0
        density = min(len(words) / 20.0, 0.25)
        return overlap + lead + density

    def _truncate(self, text: str, target_tokens: int) -> str:
        kept: list[str] = []
        for word in text.split():
            trial = " ".join([*kept, word]) + _ELLIPSIS
            if self._estimator.estimate(trial) > target_tokens:
                break
            kept.append(word)
        if kept:
            return " ".join(kept) + _ELLIPSIS

        # Even one word is too long: cut characters (estimate is monotonic).
        low, high = 0, len(text)
        while low < high:
            mid = (low + high + 1) // 2
            if self._estimator.estimate(text[:mid]) <= target_tokens:
                low = mid
            else:
                high = mid - 1
        return text[:low]
