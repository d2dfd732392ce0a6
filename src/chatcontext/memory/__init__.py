"""Memory domain: episodic/semantic items, backends and the manager."""

from chatcontext.memory.manager import ExtractiveSummarizer
from chatcontext.memory.manager import LLMSummarizer
from chatcontext.memory.manager import MemoryManager
from chatcontext.memory.manager import Summarizer
from chatcontext.memory.schemas import ConsolidationResult
from chatcontext.memory.schemas import MemoryItem
from chatcontext.memory.schemas import MemoryRetrieval
from chatcontext.memory.schemas import ScoredMemory
from chatcontext.memory.store import InMemoryMemoryBackend
from chatcontext.memory.store import MemoryBackend
from chatcontext.memory.store import RedisMemoryBackend

__all__ = [
    "ConsolidationResult",
    "ExtractiveSummarizer",
    "InMemoryMemoryBackend",
    "LLMSummarizer",
    "MemoryBackend",
    "MemoryItem",
    "MemoryManager",
    "MemoryRetrieval",
    "RedisMemoryBackend",
    "ScoredMemory",
    "Summarizer",
]
