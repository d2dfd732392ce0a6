"""Audit trail: JSONL event log with request/conversation correlation."""

from chatcontext.audit.schemas import AuditEvent
from chatcontext.audit.schemas import AuditEventType
from chatcontext.audit.schemas import AuditQuery
from chatcontext.audit.store import AuditLogger

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "AuditQuery",
]
