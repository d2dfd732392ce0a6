"""Neo4j knowledge source integration tests."""

from __future__ import annotations

import pytest

from chatcontext.config import ContextConfig
from chatcontext.context import ContextEngine
from chatcontext.context import ConversationContext
from chatcontext.context import Neo4jKnowledgeSource
from chatcontext.models import ContextSource


@pytest.fixture()
def source(neo4j_driver) -> Neo4jKnowledgeSource:
    return Neo4jKnowledgeSource(neo4j_driver)


class TestNeo4jKnowledgeSource:
    async def test_search_ranks_by_overlap(self, source):
        both = await source.add("Lyon is a city in France", title="Lyon")
        one = await source.add("Paris is the capital of France")
        await source.add("Redis is an in-memory store")

        snippets = await source.search("city in France")

        assert [s.id for s in snippets] == [both, one]
        assert snippets[0].title == "Lyon"
        assert snippets[0].score == 1.0

    async def test_add_is_upsert(self, source):
        await source.add("old text about graphs", snippet_id="kn_1")
        await source.add("new text about graphs", snippet_id="kn_1")
        snippets = await source.search("graphs")
        assert [s.content for s in snippets] == ["new text about graphs"]

    async def test_limit_and_empty_query(self, source):
        for i in range(5):
            await source.add(f"note {i} about deploys")
        assert len(await source.search("deploys", limit=2)) == 2
        assert await source.search("the and of") == []

    def test_label_must_be_identifier(self, neo4j_driver):
        with pytest.raises(ValueError):
            Neo4jKnowledgeSource(neo4j_driver, label="Knowledge) DETACH DELETE (n")


class TestEngineWithGraph:
    async def test_knowledge_enters_context(self, source):
        await source.add("The release train leaves every Friday", title="Release policy")
        engine = ContextEngine(knowledge_source=source, config=ContextConfig())

        context = await engine.build_context(
            "when does the release train leave?",
            ConversationContext(scope="agent-1"),
            1000,
        )

        assert context.sources_used == [ContextSource.knowledge]
        assert "## Knowledge\n- The release train leaves every Friday" in context.render_text()
