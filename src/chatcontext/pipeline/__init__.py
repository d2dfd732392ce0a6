"""Message processing pipeline: stages, handlers, driver and front door."""

from chatcontext.pipeline.context import PipelineState
from chatcontext.pipeline.context import ProcessingContext
from chatcontext.pipeline.context import StageRecord
from chatcontext.pipeline.handlers import default_handlers
from chatcontext.pipeline.handlers import MessageHandler
from chatcontext.pipeline.handlers import ProviderClient
from chatcontext.pipeline.handlers import StructuredHandler
from chatcontext.pipeline.handlers import TextHandler
from chatcontext.pipeline.handlers import ToolCallHandler
from chatcontext.pipeline.processor import MessageProcessor
from chatcontext.pipeline.prompt import build_prompt
from chatcontext.pipeline.service import ChatService
from chatcontext.pipeline.stages import build_details
from chatcontext.pipeline.stages import EnrichingStage
from chatcontext.pipeline.stages import MainProcessingStage
from chatcontext.pipeline.stages import ParsingStage
from chatcontext.pipeline.stages import PipelineStage
from chatcontext.pipeline.stages import RespondingStage
from chatcontext.pipeline.stages import ValidatingStage
from chatcontext.pipeline.tools import ToolRegistry
from chatcontext.pipeline.tools import ToolSpec

__all__ = [
    "ChatService",
    "EnrichingStage",
    "MainProcessingStage",
    "MessageHandler",
    "MessageProcessor",
    "ParsingStage",
    "PipelineStage",
    "PipelineState",
    "ProcessingContext",
    "ProviderClient",
    "RespondingStage",
    "StageRecord",
    "StructuredHandler",
    "TextHandler",
    "ToolCallHandler",
    "ToolRegistry",
    "ToolSpec",
    "ValidatingStage",
    "build_details",
    "build_prompt",
    "default_handlers",
]
