"""Unit tests for the audit logger."""

from __future__ import annotations

import json
from pathlib import Path

from chatcontext.audit import AuditEvent
from chatcontext.audit import AuditEventType
from chatcontext.audit import AuditLogger
from chatcontext.config import AuditConfig


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    event_type: AuditEventType = AuditEventType.MESSAGE_PROCESSED,
    timestamp: float = 1000.0,
    payload: dict | None = None,
) -> AuditEvent:
    return AuditEvent(
        timestamp=timestamp,
        event_type=event_type,
        payload=payload or {},
    )


def _config(tmp_path: Path, *, enabled: bool = True) -> AuditConfig:
    return AuditConfig(file_path=str(tmp_path / "test_audit.jsonl"), enabled=enabled)


# ---------------------------------------------------------------------------
# Write
# ---------------------------------------------------------------------------


class TestAuditLogWrite:
    async def test_log_event_writes_jsonl_line(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.log(_make_event())

        lines = Path(logger.config.file_path).read_text().strip().splitlines()
        assert len(lines) == 1
        data = json.loads(lines[0])
        assert data["event_type"] == "MESSAGE_PROCESSED"

    async def test_emit_carries_request_id_and_payload(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.emit(
            AuditEventType.STATE_SET,
            request_id="req_1",
            scope="session:s1",
            key="step",
            version=2,
        )
        events = await logger.read_events()
        assert events[0].request_id == "req_1"
        assert events[0].payload == {"scope": "session:s1", "key": "step", "version": 2}

    async def test_disabled_logger_writes_nothing(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path, enabled=False))
        await logger.log(_make_event())
        assert not Path(logger.config.file_path).exists()


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


class TestAuditLogRead:
    async def test_missing_file_reads_empty(self, tmp_path: Path):
        assert await AuditLogger(_config(tmp_path)).read_events() == []

    async def test_filter_by_type_and_since(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.log(_make_event(AuditEventType.STATE_SET, timestamp=10.0))
        await logger.log(_make_event(AuditEventType.CHECKPOINT_CREATED, timestamp=20.0))
        await logger.log(_make_event(AuditEventType.STATE_SET, timestamp=30.0))

        state_events = await logger.read_events(event_type=AuditEventType.STATE_SET)
        assert [e.timestamp for e in state_events] == [10.0, 30.0]

        recent = await logger.read_events(since=15.0)
        assert [e.timestamp for e in recent] == [20.0, 30.0]

    async def test_malformed_lines_are_skipped(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.log(_make_event())
        with open(logger.config.file_path, "a") as fh:
            fh.write("not json\n")
        await logger.log(_make_event(AuditEventType.ROLLBACK_ACTIVATED))

        events = await logger.read_events()
        assert [e.event_type for e in events] == [
            AuditEventType.MESSAGE_PROCESSED,
            AuditEventType.ROLLBACK_ACTIVATED,
        ]

    async def test_filter_by_request_and_conversation(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.emit(AuditEventType.STATE_SET, request_id="req_1", key="plan")
        await logger.emit(
            AuditEventType.MESSAGE_PROCESSED, request_id="req_1", conversation_id="conv-1"
        )
        await logger.emit(
            AuditEventType.MESSAGE_PROCESSED, request_id="req_2", conversation_id="conv-2"
        )

        turn = await logger.read_events(request_id="req_1")
        assert [e.event_type for e in turn] == [
            AuditEventType.STATE_SET,
            AuditEventType.MESSAGE_PROCESSED,
        ]
        conversation = await logger.read_events(conversation_id="conv-2")
        assert [e.request_id for e in conversation] == ["req_2"]
        assert await logger.read_events(request_id="req_1", conversation_id="conv-2") == []

    async def test_limit_keeps_most_recent(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        for ts in (10.0, 20.0, 30.0, 40.0):
            await logger.log(_make_event(timestamp=ts))

        events = await logger.read_events(limit=2)
        assert [e.timestamp for e in events] == [30.0, 40.0]

    async def test_unset_ids_are_not_written(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.log(_make_event())
        data = json.loads(Path(logger.config.file_path).read_text())
        assert "request_id" not in data
        assert "conversation_id" not in data
