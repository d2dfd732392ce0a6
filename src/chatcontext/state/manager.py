"""Session and shared state with optimistic versioning and checkpoints."""

from __future__ import annotations

import inspect
import logging
import uuid
from collections import deque
from collections.abc import Awaitable
from collections.abc import Callable
from time import perf_counter
from typing import Any

from chatcontext.audit import AuditEventType
from chatcontext.audit import AuditLogger
from chatcontext.config import StateConfig
from chatcontext.errors import ConflictError
from chatcontext.models.schemas import CheckpointRetention
from chatcontext.observability import increment_counter
from chatcontext.observability import record_latency
from chatcontext.state.schemas import Checkpoint
from chatcontext.state.schemas import content_hash
from chatcontext.state.schemas import StateChange
from chatcontext.state.store import StateStore

logger = logging.getLogger(__name__)

StateCallback = Callable[[StateChange], Awaitable[None] | None]


def session_scope(session_id: str | None, conversation_id: str | None = None) -> str:
    """Scope name for per-session variables."""
    if session_id:
        return f"session:{session_id}"
    return f"conversation:{conversation_id or 'anonymous'}"


def shared_scope(agent_id: str) -> str:
    """Scope name for variables shared by every session of an agent."""
    return f"shared:{agent_id}"


class CheckpointNotFound(KeyError):
    """Restore was asked for a checkpoint id that does not exist."""


class StateManager:
    """Versioned get/set, immutable checkpoints and change notification.

    ``set`` never merges: a stale ``expected_version`` raises
    ``ConflictError`` and the caller decides whether to re-read and retry.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        config: StateConfig | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._store = store
        self._config = config or StateConfig()
        self._audit = audit_logger
        self._subscribers: dict[str, tuple[str, StateCallback]] = {}
        self._history: dict[str, deque[StateChange]] = {}

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    async def get(self, scope: str, key: str) -> tuple[Any, int]:
        """Return ``(value, version)``; missing or deleted keys have value None."""
        current = await self._store.get(scope, key)
        if current is None:
            return None, 0
        return (None if current.deleted else current.value), current.version

    async def set(
        self,
        scope: str,
        key: str,
        value: Any,
        expected_version: int,
        *,
        request_id: str | None = None,
    ) -> int:
        """Write *value* if *expected_version* is current; return the new version."""
        start = perf_counter()
        ok = False
        try:
            written = await self._store.compare_and_set(scope, key, value, expected_version)
            ok = True
        except ConflictError as exc:
            exc.request_id = exc.request_id or request_id
            increment_counter("state.conflicts")
            logger.info(
                "state conflict scope=%s key=%s expected=%d actual=%d request_id=%s",
                scope,
                key,
                exc.expected_version,
                exc.actual_version,
                request_id,
            )
            if self._audit is not None:
                await self._audit.emit(
                    AuditEventType.STATE_CONFLICT,
                    request_id=request_id,
                    scope=scope,
                    key=key,
                    expected_version=exc.expected_version,
                    actual_version=exc.actual_version,
                )
            raise
        finally:
            record_latency(
                operation="state.set",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
                request_id=request_id,
            )

        change = StateChange(
            scope=scope,
            key=key,
            old_version=expected_version,
            new_version=written.version,
        )
        if self._audit is not None:
            await self._audit.emit(
                AuditEventType.STATE_SET,
                request_id=request_id,
                scope=scope,
                key=key,
                version=written.version,
            )
        await self._publish([change])
        return written.version

    async def snapshot(self, scope: str) -> dict[str, Any]:
        """Live ``key -> value`` map for *scope* (tombstones omitted)."""
        values = await self._store.snapshot(scope)
        return {key: v.value for key, v in sorted(values.items()) if not v.deleted}

    async def versions(self, scope: str) -> dict[str, int]:
        values = await self._store.snapshot(scope)
        return {key: v.version for key, v in sorted(values.items())}

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def checkpoint(
        self,
        scope: str,
        *,
        description: str = "",
        retention: CheckpointRetention = CheckpointRetention.temporary,
        request_id: str | None = None,
    ) -> str:
        """Freeze the live variables of *scope*; return the checkpoint id."""
        live = await self._store.snapshot(scope)
        values = {k: v.value for k, v in sorted(live.items()) if not v.deleted}
        checkpoint = Checkpoint(
            scope=scope,
            description=description,
            retention=retention,
            values=values,
            versions={k: v.version for k, v in sorted(live.items())},
            content_hash=content_hash(values),
        )
        await self._store.save_checkpoint(checkpoint)
        await self._prune_checkpoints(scope)

        logger.info(
            "checkpoint created id=%s scope=%s keys=%d request_id=%s",
            checkpoint.id,
            scope,
            len(values),
            request_id,
        )
        if self._audit is not None:
            await self._audit.emit(
                AuditEventType.CHECKPOINT_CREATED,
                request_id=request_id,
                checkpoint_id=checkpoint.id,
                scope=scope,
                retention=retention.value,
            )
        return checkpoint.id

    async def restore(
        self,
        checkpoint_id: str,
        *,
        preserve_current: bool = False,
        request_id: str | None = None,
    ) -> None:
        """Atomically replace the live scope with the checkpoint's variables.

        Every touched key gets a fresh version, so writers still holding a
        pre-restore version conflict instead of overwriting restored data.
        """
        checkpoint = await self._store.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFound(checkpoint_id)
        if checkpoint.content_hash and content_hash(checkpoint.values) != checkpoint.content_hash:
            raise ValueError(f"checkpoint {checkpoint_id} failed integrity check")

        if preserve_current:
            await self.checkpoint(
                checkpoint.scope,
                description=f"pre-restore backup before {checkpoint_id}",
                request_id=request_id,
            )

        replacements = await self._store.replace_scope(checkpoint.scope, dict(checkpoint.values))
        changes = [
            StateChange(
                scope=checkpoint.scope,
                key=written.key,
                old_version=old.version if old else 0,
                new_version=written.version,
                trigger="restore",
                deleted=written.deleted,
            )
            for old, written in replacements
        ]
        logger.info(
            "checkpoint restored id=%s scope=%s keys=%d request_id=%s",
            checkpoint_id,
            checkpoint.scope,
            len(changes),
            request_id,
        )
        if self._audit is not None:
            await self._audit.emit(
                AuditEventType.CHECKPOINT_RESTORED,
                request_id=request_id,
                checkpoint_id=checkpoint_id,
                scope=checkpoint.scope,
                keys=[c.key for c in changes],
            )
        await self._publish(changes)

    async def list_checkpoints(self, scope: str) -> list[Checkpoint]:
        return await self._store.list_checkpoints(scope)

    async def _prune_checkpoints(self, scope: str) -> None:
        temporary = [
            c
            for c in await self._store.list_checkpoints(scope)
            if c.retention is CheckpointRetention.temporary
        ]
        excess = len(temporary) - self._config.max_checkpoints
        for checkpoint in temporary[: max(excess, 0)]:
            await self._store.delete_checkpoint(checkpoint.id)
            logger.debug("pruned checkpoint id=%s scope=%s", checkpoint.id, scope)

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, scope: str, callback: StateCallback) -> str:
        subscription_id = f"sub_{uuid.uuid4().hex}"
        self._subscribers[subscription_id] = (scope, callback)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscribers.pop(subscription_id, None) is not None

    def history(self, scope: str) -> list[StateChange]:
        """Recent changes for *scope*, oldest first (bounded)."""
        return list(self._history.get(scope, ()))

    async def _publish(self, changes: list[StateChange]) -> None:
        for change in changes:
            log = self._history.setdefault(
                change.scope, deque(maxlen=self._config.history_limit)
            )
            log.append(change)
            for scope, callback in list(self._subscribers.values()):
                if scope != change.scope:
                    continue
                try:
                    outcome = callback(change)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception:
                    logger.exception(
                        "state subscriber failed scope=%s key=%s", change.scope, change.key
                    )
