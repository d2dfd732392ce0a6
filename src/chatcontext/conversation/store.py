"""Conversation history persistence and the agent directory.

Messages are append-only. The only mutation allowed after persistence is
``annotate``, which adds metadata keys but never overwrites existing ones.

Redis layout:

- ``chatcontext:conversation:{id}:messages`` list of message ids, oldest first
- ``chatcontext:message:{id}`` JSON-encoded ``Message``
- ``chatcontext:conversation:closed`` set of read-only conversation ids
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from typing import Protocol
from typing import runtime_checkable

from redis.asyncio import Redis  # type: ignore[import-untyped]

from chatcontext.models.messages import Message

logger = logging.getLogger(__name__)


@runtime_checkable
class ConversationStore(Protocol):
    async def append(self, conversation_id: str, message: Message) -> None: ...

    async def recent(self, conversation_id: str, limit: int = 20) -> list[Message]: ...

    async def annotate(
        self, conversation_id: str, message_id: str, metadata: dict[str, Any]
    ) -> Message | None: ...

    async def is_writable(self, conversation_id: str) -> bool: ...

    async def close(self, conversation_id: str) -> None: ...


def _merge_metadata(message: Message, metadata: dict[str, Any]) -> Message:
    added = {k: v for k, v in metadata.items() if k not in message.metadata}
    if len(added) != len(metadata):
        logger.debug(
            "annotate ignored existing keys on message=%s: %s",
            message.id,
            sorted(set(metadata) - set(added)),
        )
    return message.model_copy(update={"metadata": {**message.metadata, **added}})


# ---------------------------------------------------------------------------
# In-process store
# ---------------------------------------------------------------------------


class InMemoryConversationStore:
    def __init__(self) -> None:
        self._messages: dict[str, list[Message]] = {}
        self._closed: set[str] = set()

    async def append(self, conversation_id: str, message: Message) -> None:
        stored = message.model_copy(update={"conversation_id": conversation_id})
        self._messages.setdefault(conversation_id, []).append(stored)

    async def recent(self, conversation_id: str, limit: int = 20) -> list[Message]:
        if limit <= 0:
            return []
        return list(self._messages.get(conversation_id, [])[-limit:])

    async def annotate(
        self, conversation_id: str, message_id: str, metadata: dict[str, Any]
    ) -> Message | None:
        messages = self._messages.get(conversation_id, [])
        for index, message in enumerate(messages):
            if message.id == message_id:
                messages[index] = _merge_metadata(message, metadata)
                return messages[index]
        return None

    async def is_writable(self, conversation_id: str) -> bool:
        return conversation_id not in self._closed

    async def close(self, conversation_id: str) -> None:
        self._closed.add(conversation_id)


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------

_PREFIX = "chatcontext"
_CLOSED_KEY = f"{_PREFIX}:conversation:closed"


def _list_key(conversation_id: str) -> str:
    return f"{_PREFIX}:conversation:{conversation_id}:messages"


def _message_key(message_id: str) -> str:
    return f"{_PREFIX}:message:{message_id}"


class RedisConversationStore:
    def __init__(self, redis: Redis, *, ttl: int | None = None) -> None:
        self._redis = redis
        self._ttl = ttl

    async def append(self, conversation_id: str, message: Message) -> None:
        stored = message.model_copy(update={"conversation_id": conversation_id})
        pipe = self._redis.pipeline(transaction=True)
        pipe.set(_message_key(stored.id), stored.model_dump_json(), ex=self._ttl)
        pipe.rpush(_list_key(conversation_id), stored.id)
        if self._ttl:
            pipe.expire(_list_key(conversation_id), self._ttl)
        await pipe.execute()

    async def recent(self, conversation_id: str, limit: int = 20) -> list[Message]:
        if limit <= 0:
            return []
        ids = await self._redis.lrange(_list_key(conversation_id), -limit, -1)
        if not ids:
            return []
        pipe = self._redis.pipeline()
        for raw_id in ids:
            message_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            pipe.get(_message_key(message_id))
        raw_results = await pipe.execute()
        return [Message.model_validate_json(raw) for raw in raw_results if raw]

    async def annotate(
        self, conversation_id: str, message_id: str, metadata: dict[str, Any]
    ) -> Message | None:
        raw = await self._redis.get(_message_key(message_id))
        if raw is None:
            return None
        updated = _merge_metadata(Message.model_validate_json(raw), metadata)
        await self._redis.set(
            _message_key(message_id), updated.model_dump_json(), ex=self._ttl
        )
        return updated

    async def is_writable(self, conversation_id: str) -> bool:
        return not await self._redis.sismember(_CLOSED_KEY, conversation_id)

    async def close(self, conversation_id: str) -> None:
        await self._redis.sadd(_CLOSED_KEY, conversation_id)


# ---------------------------------------------------------------------------
# Agent directory
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentProfile:
    id: str
    name: str | None = None
    system_prompt: str | None = None


@runtime_checkable
class AgentDirectory(Protocol):
    async def get_agent(self, agent_id: str) -> AgentProfile | None: ...


class StaticAgentDirectory:
    """Fixed set of known agents."""

    def __init__(self, agents: list[AgentProfile] | None = None) -> None:
        self._agents = {agent.id: agent for agent in agents or []}

    def register(self, agent: AgentProfile) -> None:
        self._agents[agent.id] = agent

    async def get_agent(self, agent_id: str) -> AgentProfile | None:
        return self._agents.get(agent_id)
