"""Render selected candidates into an ordered, sectioned context window."""

from __future__ import annotations

from chatcontext.context.schemas import ContextCandidate
from chatcontext.context.schemas import ContextFragment
from chatcontext.context.schemas import ContextSection
from chatcontext.context.schemas import OptimizedContext
from chatcontext.context.schemas import SECTION_TITLES
from chatcontext.models.schemas import ContextSource


class ContextStructurer:
    def structure(
        self,
        candidates: list[ContextCandidate],
        token_budget: int,
    ) -> OptimizedContext:
        sections: list[ContextSection] = []
        for source in ContextSource:
            chosen = [c for c in candidates if c.included and c.source is source]
            if not chosen:
                continue
            if source is ContextSource.history:
                chosen.sort(key=lambda c: (c.timestamp, c.id))
            else:
                chosen.sort(key=lambda c: (-c.score, -c.timestamp, c.id))
            sections.append(
                ContextSection(
                    source=source,
                    title=SECTION_TITLES[source],
                    fragments=[
                        ContextFragment(
                            id=c.id,
                            content=c.content,
                            tokens=c.tokens,
                            score=c.score,
                            role=c.metadata.get("role"),
                            compressed=c.compressed,
                        )
                        for c in chosen
                    ],
                )
            )

        return OptimizedContext(
            sections=sections,
            total_tokens=sum(c.tokens for c in candidates if c.included),
            token_budget=token_budget,
            sources_used=[s.source for s in sections],
            quality_score=self.quality_score(candidates),
            compression_applied=any(c.compressed for c in candidates if c.included),
            candidates=candidates,
        )

    @staticmethod
    def quality_score(candidates: list[ContextCandidate]) -> float:
        """Fraction of offered score mass that survived selection and compression."""
        offered = sum(c.score for c in candidates)
        if offered <= 0:
            return 1.0
        retained = 0.0
        for c in candidates:
            if not c.included:
                continue
            kept = c.tokens / c.original_tokens if c.original_tokens else 1.0
            retained += c.score * min(kept, 1.0)
        return round(retained / offered, 4)
