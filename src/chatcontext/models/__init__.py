"""Models domain: conversation messages and wire contracts."""

from chatcontext.models.messages import content_text
from chatcontext.models.messages import Message
from chatcontext.models.messages import MessageContent
from chatcontext.models.messages import Role
from chatcontext.models.messages import StructuredContent
from chatcontext.models.messages import TextContent
from chatcontext.models.messages import ToolCall
from chatcontext.models.messages import ToolCallContent
from chatcontext.models.messages import ToolResultContent
from chatcontext.models.schemas import CheckpointRetention
from chatcontext.models.schemas import ContextSource
from chatcontext.models.schemas import CURRENT_VERSION
from chatcontext.models.schemas import default_options
from chatcontext.models.schemas import ErrorInfo
from chatcontext.models.schemas import LegacyAgent
from chatcontext.models.schemas import LegacyRequest
from chatcontext.models.schemas import LegacyResponse
from chatcontext.models.schemas import MemoryKind
from chatcontext.models.schemas import MemoryOptions
from chatcontext.models.schemas import MessageInput
from chatcontext.models.schemas import ProcessingMetrics
from chatcontext.models.schemas import ProtocolVersion
from chatcontext.models.schemas import RequestContext
from chatcontext.models.schemas import RequestOptions
from chatcontext.models.schemas import ResponseData
from chatcontext.models.schemas import SOURCE_PRIORITY
from chatcontext.models.schemas import StreamChunk
from chatcontext.models.schemas import StructuredRequest
from chatcontext.models.schemas import StructuredResponse

__all__ = [
    "CURRENT_VERSION",
    "CheckpointRetention",
    "ContextSource",
    "ErrorInfo",
    "LegacyAgent",
    "LegacyRequest",
    "LegacyResponse",
    "MemoryKind",
    "MemoryOptions",
    "Message",
    "MessageContent",
    "MessageInput",
    "ProcessingMetrics",
    "ProtocolVersion",
    "RequestContext",
    "RequestOptions",
    "ResponseData",
    "Role",
    "SOURCE_PRIORITY",
    "StreamChunk",
    "StructuredContent",
    "StructuredRequest",
    "StructuredResponse",
    "TextContent",
    "ToolCall",
    "ToolCallContent",
    "ToolResultContent",
    "content_text",
    "default_options",
]
