"""Redis conversation store integration tests."""

from __future__ import annotations

import pytest

from chatcontext.conversation import RedisConversationStore
from chatcontext.models.messages import Message
from chatcontext.models.messages import Role
from chatcontext.models.messages import StructuredContent
from chatcontext.models.messages import TextContent


@pytest.fixture()
def store(redis_client) -> RedisConversationStore:
    return RedisConversationStore(redis_client)


class TestRedisConversationStore:
    async def test_recent_window(self, store):
        for i in range(5):
            await store.append("c1", Message(role=Role.user, content=TextContent(text=f"m{i}")))
        recent = await store.recent("c1", limit=2)
        assert [m.text for m in recent] == ["m3", "m4"]
        assert recent[0].conversation_id == "c1"
        assert await store.recent("c2") == []

    async def test_content_types_survive_round_trip(self, store):
        message = Message(
            role=Role.assistant,
            content=StructuredContent(data={"status": "green"}, schema_name="status"),
        )
        await store.append("c1", message)
        (stored,) = await store.recent("c1")
        assert isinstance(stored.content, StructuredContent)
        assert stored.content.data == {"status": "green"}

    async def test_annotate_keeps_existing_keys(self, store):
        message = Message(
            role=Role.assistant,
            content=TextContent(text="reply"),
            metadata={"request_id": "r1"},
        )
        await store.append("c1", message)
        await store.annotate("c1", message.id, {"request_id": "r2", "processing_details": {}})

        (stored,) = await store.recent("c1")
        assert stored.metadata == {"request_id": "r1", "processing_details": {}}

    async def test_close(self, store):
        assert await store.is_writable("c1")
        await store.close("c1")
        assert not await store.is_writable("c1")
        assert await store.is_writable("c2")
