"""Conversation domain: append-only history and the agent directory."""

from chatcontext.conversation.store import AgentDirectory
from chatcontext.conversation.store import AgentProfile
from chatcontext.conversation.store import ConversationStore
from chatcontext.conversation.store import InMemoryConversationStore
from chatcontext.conversation.store import RedisConversationStore
from chatcontext.conversation.store import StaticAgentDirectory

__all__ = [
    "AgentDirectory",
    "AgentProfile",
    "ConversationStore",
    "InMemoryConversationStore",
    "RedisConversationStore",
    "StaticAgentDirectory",
]
