"""Versioned state backends: in-process and Redis.

Both backends make ``compare_and_set`` linearizable per ``(scope, key)``
and ``replace_scope`` all-or-nothing. The in-process store serializes
writers per scope with an ``asyncio.Lock``; the Redis store keeps a scope
in a single hash and uses ``WATCH``/``MULTI``/``EXEC``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any
from typing import Protocol
from typing import runtime_checkable

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import WatchError  # type: ignore[import-untyped]

from chatcontext.errors import ConflictError
from chatcontext.errors import StateContentionError
from chatcontext.observability import increment_counter
from chatcontext.state.schemas import Checkpoint
from chatcontext.state.schemas import StateValue

logger = logging.getLogger(__name__)

# (previous value or None, value written)
Replacement = tuple[StateValue | None, StateValue]


@runtime_checkable
class StateStore(Protocol):
    async def get(self, scope: str, key: str) -> StateValue | None: ...

    async def compare_and_set(
        self, scope: str, key: str, value: Any, expected_version: int
    ) -> StateValue: ...

    async def snapshot(self, scope: str) -> dict[str, StateValue]: ...

    async def replace_scope(
        self, scope: str, values: dict[str, Any]
    ) -> list[Replacement]: ...

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None: ...

    async def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None: ...

    async def list_checkpoints(self, scope: str) -> list[Checkpoint]: ...

    async def delete_checkpoint(self, checkpoint_id: str) -> None: ...


def _next_value(
    scope: str,
    key: str,
    current: StateValue | None,
    value: Any,
    expected_version: int,
) -> StateValue:
    actual = current.version if current is not None else 0
    if actual != expected_version:
        raise ConflictError(
            scope,
            key,
            expected_version=expected_version,
            actual_version=actual,
        )
    return StateValue(
        scope=scope,
        key=key,
        value=value,
        version=actual + 1,
        updated_at=time.time(),
    )


def _replacements(
    scope: str,
    current: dict[str, StateValue],
    values: dict[str, Any],
) -> list[Replacement]:
    """Bump every touched key; tombstone keys absent from *values*."""
    now = time.time()
    out: list[Replacement] = []
    for key in sorted(set(current) | set(values)):
        old = current.get(key)
        if key not in values and (old is None or old.deleted):
            continue
        out.append(
            (
                old,
                StateValue(
                    scope=scope,
                    key=key,
                    value=values.get(key),
                    version=(old.version if old else 0) + 1,
                    updated_at=now,
                    deleted=key not in values,
                ),
            )
        )
    return out


# ---------------------------------------------------------------------------
# In-process store
# ---------------------------------------------------------------------------


class InMemoryStateStore:
    """Dict-backed state store with one writer lock per scope."""

    def __init__(self) -> None:
        self._values: dict[str, dict[str, StateValue]] = {}
        self._checkpoints: dict[str, Checkpoint] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, scope: str) -> asyncio.Lock:
        return self._locks.setdefault(scope, asyncio.Lock())

    async def get(self, scope: str, key: str) -> StateValue | None:
        return self._values.get(scope, {}).get(key)

    async def compare_and_set(
        self, scope: str, key: str, value: Any, expected_version: int
    ) -> StateValue:
        async with self._lock(scope):
            scoped = self._values.setdefault(scope, {})
            written = _next_value(scope, key, scoped.get(key), value, expected_version)
            scoped[key] = written
            return written

    async def snapshot(self, scope: str) -> dict[str, StateValue]:
        return dict(self._values.get(scope, {}))

    async def replace_scope(
        self, scope: str, values: dict[str, Any]
    ) -> list[Replacement]:
        async with self._lock(scope):
            scoped = self._values.setdefault(scope, {})
            replacements = _replacements(scope, scoped, values)
            for _, written in replacements:
                scoped[written.key] = written
            return replacements

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        self._checkpoints[checkpoint.id] = checkpoint

    async def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        return self._checkpoints.get(checkpoint_id)

    async def list_checkpoints(self, scope: str) -> list[Checkpoint]:
        found = [c for c in self._checkpoints.values() if c.scope == scope]
        found.sort(key=lambda c: (c.created_at, c.id))
        return found

    async def delete_checkpoint(self, checkpoint_id: str) -> None:
        self._checkpoints.pop(checkpoint_id, None)


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------

_PREFIX = "chatcontext"
# Each lost transaction means another writer committed, so N concurrent
# writers on one scope need at most N - 1 retries.
_MAX_WATCH_RETRIES = 64


def _scope_key(scope: str) -> str:
    return f"{_PREFIX}:state:{scope}"


def _checkpoint_key(checkpoint_id: str) -> str:
    return f"{_PREFIX}:checkpoint:{checkpoint_id}"


def _checkpoint_index_key(scope: str) -> str:
    return f"{_PREFIX}:checkpoints:{scope}"


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


class RedisStateStore:
    """Redis state store: one hash per scope, optimistic transactions."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def get(self, scope: str, key: str) -> StateValue | None:
        raw = await self._redis.hget(_scope_key(scope), key)
        if raw is None:
            return None
        return StateValue.model_validate_json(raw)

    async def compare_and_set(
        self, scope: str, key: str, value: Any, expected_version: int
    ) -> StateValue:
        hash_key = _scope_key(scope)
        for _ in range(_MAX_WATCH_RETRIES):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(hash_key)
                    raw = await pipe.hget(hash_key, key)
                    current = StateValue.model_validate_json(raw) if raw else None
                    written = _next_value(scope, key, current, value, expected_version)
                    pipe.multi()
                    pipe.hset(hash_key, key, written.model_dump_json())
                    await pipe.execute()
                    return written
                except WatchError:
                    # Another key in the same scope changed; the version
                    # check above re-runs against the fresh value.
                    increment_counter("state.watch_retries")
                    continue
        logger.warning(
            "giving up on state write scope=%s key=%s after %d attempts",
            scope,
            key,
            _MAX_WATCH_RETRIES,
        )
        raise StateContentionError(scope, attempts=_MAX_WATCH_RETRIES)

    async def snapshot(self, scope: str) -> dict[str, StateValue]:
        raw = await self._redis.hgetall(_scope_key(scope))
        return {
            _decode(field): StateValue.model_validate_json(value)
            for field, value in raw.items()
        }

    async def replace_scope(
        self, scope: str, values: dict[str, Any]
    ) -> list[Replacement]:
        hash_key = _scope_key(scope)
        for _ in range(_MAX_WATCH_RETRIES):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(hash_key)
                    raw = await pipe.hgetall(hash_key)
                    current = {
                        _decode(field): StateValue.model_validate_json(value)
                        for field, value in raw.items()
                    }
                    replacements = _replacements(scope, current, values)
                    if not replacements:
                        await pipe.unwatch()
                        return []
                    pipe.multi()
                    pipe.hset(
                        hash_key,
                        mapping={w.key: w.model_dump_json() for _, w in replacements},
                    )
                    await pipe.execute()
                    return replacements
                except WatchError:
                    increment_counter("state.watch_retries")
                    continue
        raise StateContentionError(scope, attempts=_MAX_WATCH_RETRIES)

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        pipe = self._redis.pipeline(transaction=True)
        pipe.set(_checkpoint_key(checkpoint.id), checkpoint.model_dump_json())
        pipe.zadd(
            _checkpoint_index_key(checkpoint.scope),
            {checkpoint.id: checkpoint.created_at},
        )
        await pipe.execute()

    async def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        raw = await self._redis.get(_checkpoint_key(checkpoint_id))
        if raw is None:
            return None
        return Checkpoint.model_validate_json(raw)

    async def list_checkpoints(self, scope: str) -> list[Checkpoint]:
        ids = await self._redis.zrange(_checkpoint_index_key(scope), 0, -1)
        if not ids:
            return []
        pipe = self._redis.pipeline()
        for raw_id in ids:
            pipe.get(_checkpoint_key(_decode(raw_id)))
        raw_results = await pipe.execute()
        return [Checkpoint.model_validate_json(raw) for raw in raw_results if raw]

    async def delete_checkpoint(self, checkpoint_id: str) -> None:
        checkpoint = await self.get_checkpoint(checkpoint_id)
        pipe = self._redis.pipeline(transaction=True)
        pipe.delete(_checkpoint_key(checkpoint_id))
        if checkpoint is not None:
            pipe.zrem(_checkpoint_index_key(checkpoint.scope), checkpoint_id)
        await pipe.execute()
