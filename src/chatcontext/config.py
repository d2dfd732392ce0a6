"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No env-var loading or YAML parsing, just plain defaults that can
be overridden at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LLMConfig:
    """LLM provider settings used by the main processing stage."""

    provider: str = "openai"
    model: str = "gpt-4"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.2
    max_tokens: int = 4096
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class ContextConfig:
    """Tuneable parameters for the context engine."""

    max_candidates: int = 100
    relevance_threshold: float = 0.3
    source_timeout_seconds: float = 2.0
    min_compressed_tokens: int = 50
    history_window: int = 20
    knowledge_limit: int = 10
    # Composite score weights (must sum to 1.0)
    relevance_weight: float = 0.6
    recency_weight: float = 0.25
    source_weight: float = 0.15
    recency_half_life_hours: float = 24.0


@dataclass(frozen=True)
class MemoryConfig:
    """Scoring and lifecycle thresholds for episodic/semantic memory."""

    default_importance: float = 0.5
    default_decay_rate: float = 0.1
    promotion_threshold: float = 0.7
    merge_similarity: float = 0.6
    prune_threshold: float = 0.1
    consolidate_every_turns: int = 10
    max_write_retries: int = 3
    # Retrieval score weights (must sum to 1.0)
    similarity_weight: float = 0.7
    importance_weight: float = 0.3


@dataclass(frozen=True)
class StateConfig:
    """Checkpoint retention and change-history limits."""

    max_checkpoints: int = 10
    history_limit: int = 100


@dataclass(frozen=True)
class PipelineConfig:
    """Budgets, deadlines and retry policy for the message processor."""

    model_context_window: int = 8192
    reserved_completion_tokens: int = 1024
    # Headings, separators and handler instructions added around the context
    prompt_overhead_tokens: int = 64
    request_timeout_seconds: float = 60.0
    max_tool_depth: int = 3
    max_message_chars: int = 32000
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 8.0

    @property
    def token_budget(self) -> int:
        """Context budget: model window minus the completion allowance."""
        return max(self.model_context_window - self.reserved_completion_tokens, 0)


@dataclass(frozen=True)
class FeatureFlags:
    """Per-deployment switches for new behaviours.

    Loaded once per process and passed explicitly; never mutated.
    """

    enable_memory: bool = True
    enable_state_checkpoints: bool = True
    enable_tool_calls: bool = True
    enable_metrics: bool = True
    enable_processing_details: bool = True
    enable_streaming: bool = True
    rollback_active: bool = False


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit logger."""

    file_path: str = "chatcontext_audit.jsonl"
    enabled: bool = True
