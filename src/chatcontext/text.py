"""Text helpers shared by memory search, retrieval and compression."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Protocol
from typing import runtime_checkable

# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_WORD_RE = re.compile(r"[a-z0-9]+")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+|\n+")

_STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "do", "for",
        "from", "has", "have", "i", "in", "is", "it", "its", "me", "my", "of",
        "on", "or", "our", "so", "that", "the", "their", "then", "there",
        "this", "to", "was", "we", "were", "what", "when", "which", "who",
        "will", "with", "you", "your",
    }
)


def tokenize(text: str) -> set[str]:
    """Extract lowercase alphanumeric keywords from *text*, minus stopwords."""
    return {word for word in _WORD_RE.findall(text.lower()) if word not in _STOPWORDS}


def query_overlap(query_terms: set[str], terms: set[str]) -> float:
    """Fraction of query keywords present in *terms* (0.0 when no query)."""
    if not query_terms:
        return 0.0
    return len(query_terms & terms) / len(query_terms)


def jaccard(left: set[str], right: set[str]) -> float:
    if not left and not right:
        return 0.0
    return len(left & right) / len(left | right)


def split_sentences(text: str) -> list[str]:
    return [part.strip() for part in _SENTENCE_RE.split(text) if part.strip()]


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


@runtime_checkable
class TokenEstimator(Protocol):
    """Estimates the token cost of a text fragment for budget accounting.

    Implementations must be monotonic: a prefix never costs more than the
    whole text.
    """

    def estimate(self, text: str) -> int: ...


@dataclass(frozen=True)
class CharTokenEstimator:
    """Character-count heuristic, roughly four characters per token."""

    chars_per_token: float = 4.0

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)


DEFAULT_ESTIMATOR = CharTokenEstimator()
