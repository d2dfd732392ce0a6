"""External knowledge sources consulted by the retriever."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from dataclasses import field
from typing import Protocol
from typing import runtime_checkable

from neo4j import AsyncDriver

from chatcontext.text import query_overlap
from chatcontext.text import tokenize


@dataclass(frozen=True)
class KnowledgeSnippet:
    content: str
    score: float
    id: str = field(default_factory=lambda: f"kn_{uuid.uuid4().hex}")
    timestamp: float = field(default_factory=time.time)
    title: str | None = None


@runtime_checkable
class KnowledgeSource(Protocol):
    """Search backend for documents outside the conversation."""

    async def search(self, query: str, *, limit: int = 10) -> list[KnowledgeSnippet]: ...


class StaticKnowledgeSource:
    """Keyword search over a fixed in-process document list."""

    def __init__(self, snippets: list[KnowledgeSnippet] | None = None) -> None:
        self._snippets = list(snippets or [])

    def add(self, content: str, *, title: str | None = None) -> KnowledgeSnippet:
        snippet = KnowledgeSnippet(content=content, score=0.0, title=title)
        self._snippets.append(snippet)
        return snippet

    async def search(self, query: str, *, limit: int = 10) -> list[KnowledgeSnippet]:
        terms = tokenize(query)
        scored = []
        for snippet in self._snippets:
            score = query_overlap(terms, tokenize(snippet.content))
            if score > 0:
                scored.append(
                    KnowledgeSnippet(
                        id=snippet.id,
                        content=snippet.content,
                        score=score,
                        timestamp=snippet.timestamp,
                        title=snippet.title,
                    )
                )
        scored.sort(key=lambda s: (-s.score, -s.timestamp, s.id))
        return scored[:limit]


class Neo4jKnowledgeSource:
    """Knowledge graph lookup over ``(:Knowledge {id, content, updated_at})`` nodes."""

    def __init__(self, driver: AsyncDriver, *, label: str = "Knowledge") -> None:
        if not label.isidentifier():
            raise ValueError(f"Invalid node label: {label!r}")
        self._driver = driver
        self._label = label

    async def search(self, query: str, *, limit: int = 10) -> list[KnowledgeSnippet]:
        terms = tokenize(query)
        if not terms:
            return []
        cypher = (
            f"MATCH (n:{self._label}) "
            "WHERE ANY(token IN $search_tokens WHERE toLower(n.content) CONTAINS token) "
            "RETURN n.id AS id, n.content AS content, n.title AS title, "
            "n.updated_at AS updated_at "
            "ORDER BY n.updated_at DESC "
            "LIMIT $limit"
        )
        async with self._driver.session() as session:
            result = await session.run(cypher, search_tokens=sorted(terms), limit=limit * 3)
            records = [record async for record in result]

        snippets = [
            KnowledgeSnippet(
                id=str(record["id"] or f"kn_{uuid.uuid4().hex}"),
                content=record["content"],
                title=record["title"],
                timestamp=float(record["updated_at"] or 0.0),
                score=query_overlap(terms, tokenize(record["content"])),
            )
            for record in records
        ]
        snippets.sort(key=lambda s: (-s.score, -s.timestamp, s.id))
        return snippets[:limit]

    async def add(
        self,
        content: str,
        *,
        title: str | None = None,
        snippet_id: str | None = None,
    ) -> str:
        """Upsert one knowledge node (ingestion helper)."""
        node_id = snippet_id or f"kn_{uuid.uuid4().hex}"
        cypher = (
            f"MERGE (n:{self._label} {{id: $id}}) "
            "SET n.content = $content, n.title = $title, n.updated_at = $updated_at"
        )
        async with self._driver.session() as session:
            result = await session.run(
                cypher,
                id=node_id,
                content=content,
                title=title,
                updated_at=time.time(),
            )
            await result.consume()
        return node_id
