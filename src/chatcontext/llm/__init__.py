"""LLM domain: provider adapters and retry policy."""

from chatcontext.llm.adapters import build_llm_adapter
from chatcontext.llm.adapters import Completion
from chatcontext.llm.adapters import EchoLLMAdapter
from chatcontext.llm.adapters import LLMAdapter
from chatcontext.llm.adapters import OpenAICompatibleLLMAdapter
from chatcontext.llm.adapters import parse_chat_completion
from chatcontext.llm.adapters import StreamingLLMAdapter
from chatcontext.llm.retry import call_with_retry
from chatcontext.llm.retry import RetryPolicy

__all__ = [
    "Completion",
    "EchoLLMAdapter",
    "LLMAdapter",
    "OpenAICompatibleLLMAdapter",
    "RetryPolicy",
    "StreamingLLMAdapter",
    "build_llm_adapter",
    "call_with_retry",
    "parse_chat_completion",
]
