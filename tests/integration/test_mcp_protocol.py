"""MCP protocol tests against Redis and Neo4j backends.

Exercise the tools through ``fastmcp.Client`` with the server configured
the way a deployment would configure it.
"""

from __future__ import annotations

import json

import pytest
from fastmcp import Client

from chatcontext.config import AuditConfig
from chatcontext.context import Neo4jKnowledgeSource
from chatcontext.conversation import AgentProfile
from chatcontext.server import configure
from chatcontext.server import mcp
from chatcontext.server import shutdown
from tests.helpers.fakes import request_dict


def _parse(result) -> dict:
    return json.loads(result.content[0].text)


@pytest.fixture()
async def mcp_client(redis_client, redis_container, tmp_path):
    """Yield a client for a server wired to the test Redis."""
    await configure(
        redis_url=redis_container,
        agents=[AgentProfile(id="agent-1", name="Ada", system_prompt="Be brief.")],
        audit_config=AuditConfig(file_path=str(tmp_path / "audit.jsonl")),
    )
    async with Client(mcp) as client:
        yield client
    await shutdown()


class TestChatOverRedis:
    async def test_history_persists_across_requests(self, mcp_client):
        first = _parse(await mcp_client.call_tool("chat", {"request": request_dict("My name is Ada")}))
        second = _parse(await mcp_client.call_tool("chat", {"request": request_dict("What is my name?")}))

        assert first["status"] == second["status"] == "success"
        details = second["processing_details"]
        assert details["context_operations"]["sources_used"] == ["history"]
        assert details["conversation_id"] == "conv-1"

    async def test_unknown_agent_rejected(self, mcp_client):
        payload = request_dict("hi", agent_id="agent-404")
        data = _parse(await mcp_client.call_tool("chat", {"request": payload}))
        assert data["error"]["code"] == "validation_error"
        assert data["error"]["fields"][0]["field"] == "context.agent_id"

    async def test_legacy_request_gets_agent_name(self, mcp_client):
        data = _parse(
            await mcp_client.call_tool("chat", {"request": {"agentId": "agent-1", "message": "hi"}})
        )
        assert data["agent"] == {"id": "agent-1", "name": "Ada"}

    async def test_checkpoint_in_request_then_restore(self, mcp_client):
        await mcp_client.call_tool(
            "set_state", {"scope": "session:s1", "key": "step", "value": 1, "expected_version": 0}
        )
        payload = request_dict("next", session_id="s1")
        payload["options"]["state"]["save_checkpoint"] = True
        data = _parse(await mcp_client.call_tool("chat", {"request": payload}))
        checkpoint_id = data["processing_details"]["state_operations"]["checkpoint_id"]

        await mcp_client.call_tool(
            "set_state", {"scope": "session:s1", "key": "step", "value": 2, "expected_version": 1}
        )
        restored = _parse(
            await mcp_client.call_tool("restore_checkpoint", {"checkpoint_id": checkpoint_id})
        )
        assert restored["status"] == "ok"
        read = _parse(await mcp_client.call_tool("get_state", {"scope": "session:s1", "key": "step"}))
        assert read["value"] == 1


class TestKnowledgeOverNeo4j:
    async def test_graph_knowledge_in_context(self, neo4j_driver, redis_client, redis_container):
        source = Neo4jKnowledgeSource(neo4j_driver)
        await source.add("The release train leaves every Friday")
        await configure(
            redis_url=redis_container,
            knowledge_source=source,
            audit_config=AuditConfig(enabled=False),
        )
        async with Client(mcp) as client:
            data = _parse(
                await client.call_tool("chat", {"request": request_dict("When does the release train leave?")})
            )
        await shutdown()

        assert data["processing_details"]["context_operations"]["sources_used"] == ["knowledge"]
