"""Conversation message model.

Message content is a tagged union discriminated on ``type``; handlers
dispatch on that tag.
"""

from __future__ import annotations

import json
import time
import uuid
from enum import Enum
from typing import Annotated
from typing import Any
from typing import Literal
from typing import Union

from pydantic import BaseModel
from pydantic import Field


class Role(str, Enum):
    """Author of a conversation turn."""

    user = "user"
    assistant = "assistant"
    system = "system"
    tool = "tool"


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str = Field(description="Plain text body.")


class StructuredContent(BaseModel):
    type: Literal["structured"] = "structured"
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary JSON object payload.",
    )
    schema_name: str | None = Field(
        default=None,
        description="Optional name of the schema the payload follows.",
    )


class ToolCall(BaseModel):
    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
    name: str = Field(description="Registered tool name.")
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolCallContent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    calls: list[ToolCall] = Field(description="Tool invocations requested.")
    text: str | None = Field(
        default=None,
        description="Optional text accompanying the calls.",
    )


class ToolResultContent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    call_id: str = Field(description="Id of the ToolCall this answers.")
    name: str = Field(description="Tool that produced the output.")
    output: str = Field(default="", description="Serialized tool output.")
    is_error: bool = Field(default=False)


MessageContent = Annotated[
    Union[TextContent, StructuredContent, ToolCallContent, ToolResultContent],
    Field(discriminator="type"),
]


class Message(BaseModel):
    """One turn in a conversation.

    Immutable once persisted, except that new metadata keys may be
    appended (see ``ConversationStore.annotate``).
    """

    id: str = Field(
        default_factory=lambda: f"msg_{uuid.uuid4().hex}",
        description="Unique identifier, auto-generated as msg_{uuid4_hex}.",
    )
    role: Role = Field(description="Author of the turn.")
    content: MessageContent = Field(description="Tagged message body.")
    conversation_id: str | None = Field(default=None)
    created_at: float = Field(
        default_factory=time.time,
        description="Unix epoch when the message was created.",
    )
    tokens: int = Field(default=0, description="Estimated token cost.")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        return content_text(self.content)


def content_text(content: MessageContent) -> str:
    """Flatten any content variant into plain text."""
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, StructuredContent):
        return json.dumps(content.data, sort_keys=True)
    if isinstance(content, ToolCallContent):
        if content.text:
            return content.text
        return ", ".join(
            f"{call.name}({json.dumps(call.arguments, sort_keys=True)})"
            for call in content.calls
        )
    return content.output
