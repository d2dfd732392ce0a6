"""Context domain: retrieval, budgeted optimization, compression, structuring."""

from chatcontext.context.compressor import ContextCompressor
from chatcontext.context.engine import ContextEngine
from chatcontext.context.knowledge import KnowledgeSnippet
from chatcontext.context.knowledge import KnowledgeSource
from chatcontext.context.knowledge import Neo4jKnowledgeSource
from chatcontext.context.knowledge import StaticKnowledgeSource
from chatcontext.context.optimizer import ContextOptimizer
from chatcontext.context.optimizer import ordering_key
from chatcontext.context.optimizer import SOURCE_WEIGHTS
from chatcontext.context.retriever import ContextRetriever
from chatcontext.context.retriever import RetrievalOutcome
from chatcontext.context.schemas import CandidateReason
from chatcontext.context.schemas import ContextCandidate
from chatcontext.context.schemas import ContextFragment
from chatcontext.context.schemas import ContextSection
from chatcontext.context.schemas import ConversationContext
from chatcontext.context.schemas import OptimizedContext
from chatcontext.context.structurer import ContextStructurer

__all__ = [
    "CandidateReason",
    "ContextCandidate",
    "ContextCompressor",
    "ContextEngine",
    "ContextFragment",
    "ContextOptimizer",
    "ContextRetriever",
    "ContextSection",
    "ContextStructurer",
    "ConversationContext",
    "KnowledgeSnippet",
    "KnowledgeSource",
    "Neo4jKnowledgeSource",
    "OptimizedContext",
    "RetrievalOutcome",
    "SOURCE_WEIGHTS",
    "StaticKnowledgeSource",
    "ordering_key",
]
