"""State domain: versioned session/shared variables and checkpoints."""

from chatcontext.state.manager import CheckpointNotFound
from chatcontext.state.manager import session_scope
from chatcontext.state.manager import shared_scope
from chatcontext.state.manager import StateManager
from chatcontext.state.schemas import Checkpoint
from chatcontext.state.schemas import StateChange
from chatcontext.state.schemas import StateValue
from chatcontext.state.store import InMemoryStateStore
from chatcontext.state.store import RedisStateStore
from chatcontext.state.store import StateStore

__all__ = [
    "Checkpoint",
    "CheckpointNotFound",
    "InMemoryStateStore",
    "RedisStateStore",
    "StateChange",
    "StateManager",
    "StateStore",
    "StateValue",
    "session_scope",
    "shared_scope",
]
