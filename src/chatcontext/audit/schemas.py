"""Audit trail records and the filters used to read them back."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class AuditEventType(str, Enum):
    """Chat turns, state writes and memory/rollback changes worth tracing."""

    MESSAGE_PROCESSED = "MESSAGE_PROCESSED"
    STATE_SET = "STATE_SET"
    STATE_CONFLICT = "STATE_CONFLICT"
    CHECKPOINT_CREATED = "CHECKPOINT_CREATED"
    CHECKPOINT_RESTORED = "CHECKPOINT_RESTORED"
    MEMORY_CONSOLIDATED = "MEMORY_CONSOLIDATED"
    ROLLBACK_ACTIVATED = "ROLLBACK_ACTIVATED"


class AuditEvent(BaseModel):
    """One line of the trail.

    ``request_id`` and ``conversation_id`` are the correlation keys: a chat
    turn and every state or memory write it caused share the request id.
    """

    model_config = {"frozen": True}

    timestamp: float = Field(default_factory=time.time)
    event_type: AuditEventType
    request_id: str | None = None
    conversation_id: str | None = None
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific fields, e.g. scope/key/version for STATE_SET.",
    )


class AuditQuery(BaseModel):
    """Filters for reading the trail; unset fields match every event."""

    model_config = {"frozen": True}

    request_id: str | None = None
    conversation_id: str | None = None
    event_type: AuditEventType | None = None
    since: float | None = None
    limit: int | None = Field(
        default=None,
        ge=1,
        description="Keep only the most recent matches.",
    )

    def matches(self, event: AuditEvent) -> bool:
        if self.request_id is not None and event.request_id != self.request_id:
            return False
        if self.conversation_id is not None and event.conversation_id != self.conversation_id:
            return False
        if self.event_type is not None and event.event_type is not self.event_type:
            return False
        return self.since is None or event.timestamp >= self.since
