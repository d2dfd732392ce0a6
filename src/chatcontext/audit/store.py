"""Audit trail for chat turns and the state/memory writes they cause.

Events are appended to a JSONL file in arrival order. Reads filter on the
request and conversation ids so one turn can be traced end to end.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from chatcontext.audit.schemas import AuditEvent
from chatcontext.audit.schemas import AuditEventType
from chatcontext.audit.schemas import AuditQuery
from chatcontext.config import AuditConfig

logger = logging.getLogger(__name__)


class AuditLogger:
    """Writes audit events and answers correlation queries over them.

    File access runs in ``asyncio.to_thread`` under a single
    ``asyncio.Lock``, so a query never observes a half-written line.
    """

    def __init__(self, config: AuditConfig) -> None:
        self.config = config
        self._path = Path(config.file_path)
        self._lock = asyncio.Lock()

    async def emit(
        self,
        event_type: AuditEventType,
        *,
        request_id: str | None = None,
        conversation_id: str | None = None,
        **payload: Any,
    ) -> None:
        """Record one event built from keyword payload."""
        await self.log(
            AuditEvent(
                event_type=event_type,
                request_id=request_id,
                conversation_id=conversation_id,
                payload=payload,
            )
        )

    async def log(self, event: AuditEvent) -> None:
        if not self.config.enabled:
            return
        record = event.model_dump_json(exclude_none=True)
        async with self._lock:
            await asyncio.to_thread(self._write_line, record)

    async def read_events(
        self,
        *,
        request_id: str | None = None,
        conversation_id: str | None = None,
        event_type: AuditEventType | None = None,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[AuditEvent]:
        """Events matching every given filter, oldest first.

        With *limit*, only the most recent *limit* matches are returned.
        """
        query = AuditQuery(
            request_id=request_id,
            conversation_id=conversation_id,
            event_type=event_type,
            since=since,
            limit=limit,
        )
        async with self._lock:
            return await asyncio.to_thread(self._scan, query)

    # ------------------------------------------------------------------
    # File access (worker thread)
    # ------------------------------------------------------------------

    def _write_line(self, record: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(record + "\n")

    def _scan(self, query: AuditQuery) -> list[AuditEvent]:
        if not self._path.exists():
            return []
        matches: deque[AuditEvent] = deque(maxlen=query.limit)
        with self._path.open(encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    event = AuditEvent.model_validate_json(line)
                except ValidationError:
                    logger.warning(
                        "skipping malformed audit line %d in %s", line_no, self._path
                    )
                    continue
                if query.matches(event):
                    matches.append(event)
        return list(matches)
