"""Memory item backends: in-process and Redis.

Redis layout (all keys carry the item's scope):

- ``chatcontext:memory:{scope}:item:{id}`` JSON-encoded ``MemoryItem``
- ``chatcontext:memory:{scope}:recency`` sorted set, score = created_at
- ``chatcontext:memory:{scope}:kw:{word}`` keyword index sets

Writes are versioned: ``put`` with ``expected_version=None`` creates a new
item, otherwise the stored version must match or ``ConflictError`` is
raised. Every successful write stores ``version + 1``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol
from typing import runtime_checkable

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import WatchError  # type: ignore[import-untyped]

from chatcontext.errors import ConflictError
from chatcontext.memory.schemas import MemoryItem
from chatcontext.models.schemas import MemoryKind

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Backend protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class MemoryBackend(Protocol):
    """Storage and similarity-search backend for memory items."""

    async def put(
        self, item: MemoryItem, *, expected_version: int | None = None
    ) -> MemoryItem: ...

    async def get(self, scope: str, item_id: str) -> MemoryItem | None: ...

    async def search(
        self,
        scope: str,
        keywords: set[str],
        kinds: Iterable[MemoryKind],
    ) -> list[MemoryItem]: ...

    async def list_items(
        self, scope: str, kinds: Iterable[MemoryKind] | None = None
    ) -> list[MemoryItem]: ...

    async def delete(self, scope: str, item_id: str) -> None: ...


def _check_version(
    item: MemoryItem, current: MemoryItem | None, expected_version: int | None
) -> int:
    """Return the version the write will store, or raise on mismatch."""
    actual = current.version if current is not None else 0
    expected = 0 if expected_version is None else expected_version
    if actual != expected:
        raise ConflictError(
            item.scope,
            item.id,
            expected_version=expected,
            actual_version=actual,
        )
    return actual + 1


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class InMemoryMemoryBackend:
    """Dict-backed backend for tests and single-process deployments."""

    def __init__(self) -> None:
        self._items: dict[str, dict[str, MemoryItem]] = {}

    async def put(
        self, item: MemoryItem, *, expected_version: int | None = None
    ) -> MemoryItem:
        scoped = self._items.setdefault(item.scope, {})
        new_version = _check_version(item, scoped.get(item.id), expected_version)
        stored = item.model_copy(update={"version": new_version})
        scoped[item.id] = stored
        return stored

    async def get(self, scope: str, item_id: str) -> MemoryItem | None:
        return self._items.get(scope, {}).get(item_id)

    async def search(
        self,
        scope: str,
        keywords: set[str],
        kinds: Iterable[MemoryKind],
    ) -> list[MemoryItem]:
        wanted = set(kinds)
        return [
            item
            for item in self._items.get(scope, {}).values()
            if item.kind in wanted and keywords & set(item.keywords)
        ]

    async def list_items(
        self, scope: str, kinds: Iterable[MemoryKind] | None = None
    ) -> list[MemoryItem]:
        wanted = set(kinds) if kinds is not None else set(MemoryKind)
        items = [i for i in self._items.get(scope, {}).values() if i.kind in wanted]
        items.sort(key=lambda i: (i.created_at, i.id))
        return items

    async def delete(self, scope: str, item_id: str) -> None:
        self._items.get(scope, {}).pop(item_id, None)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

_PREFIX = "chatcontext:memory"
_CLEAR_BATCH_SIZE = 100


def _item_key(scope: str, item_id: str) -> str:
    return f"{_PREFIX}:{scope}:item:{item_id}"


def _recency_key(scope: str) -> str:
    return f"{_PREFIX}:{scope}:recency"


def _keyword_key(scope: str, word: str) -> str:
    return f"{_PREFIX}:{scope}:kw:{word}"


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


class RedisMemoryBackend:
    """Redis-backed memory store with keyword index and optimistic writes."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    # -- write --

    async def put(
        self, item: MemoryItem, *, expected_version: int | None = None
    ) -> MemoryItem:
        key = _item_key(item.scope, item.id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                current = MemoryItem.model_validate_json(raw) if raw else None
                new_version = _check_version(item, current, expected_version)
                stored = item.model_copy(update={"version": new_version})

                old_words = set(current.keywords) if current else set()
                new_words = set(stored.keywords)

                pipe.multi()
                pipe.set(key, stored.model_dump_json())
                pipe.zadd(_recency_key(item.scope), {item.id: stored.created_at})
                for word in new_words - old_words:
                    pipe.sadd(_keyword_key(item.scope, word), item.id)
                for word in old_words - new_words:
                    pipe.srem(_keyword_key(item.scope, word), item.id)
                await pipe.execute()
            except WatchError as exc:
                latest = await self.get(item.scope, item.id)
                raise ConflictError(
                    item.scope,
                    item.id,
                    expected_version=expected_version or 0,
                    actual_version=latest.version if latest else 0,
                ) from exc
        return stored

    async def delete(self, scope: str, item_id: str) -> None:
        item = await self.get(scope, item_id)
        pipe = self._redis.pipeline()
        pipe.delete(_item_key(scope, item_id))
        pipe.zrem(_recency_key(scope), item_id)
        for word in item.keywords if item else []:
            pipe.srem(_keyword_key(scope, word), item_id)
        await pipe.execute()

    # -- read --

    async def get(self, scope: str, item_id: str) -> MemoryItem | None:
        raw = await self._redis.get(_item_key(scope, item_id))
        if raw is None:
            return None
        return MemoryItem.model_validate_json(raw)

    async def search(
        self,
        scope: str,
        keywords: set[str],
        kinds: Iterable[MemoryKind],
    ) -> list[MemoryItem]:
        """Return items sharing at least one keyword, filtered by kind."""
        if not keywords:
            return []
        keys = [_keyword_key(scope, word) for word in sorted(keywords)]
        candidate_ids = await self._redis.sunion(*keys)
        if not candidate_ids:
            return []
        wanted = set(kinds)
        return [
            item
            for item in await self._fetch(scope, sorted(_decode(c) for c in candidate_ids))
            if item.kind in wanted
        ]

    async def list_items(
        self, scope: str, kinds: Iterable[MemoryKind] | None = None
    ) -> list[MemoryItem]:
        ids = await self._redis.zrange(_recency_key(scope), 0, -1)
        wanted = set(kinds) if kinds is not None else set(MemoryKind)
        items = await self._fetch(scope, [_decode(raw_id) for raw_id in ids])
        return [item for item in items if item.kind in wanted]

    async def clear(self) -> None:
        """Remove every memory key, in batches."""
        batch: list = []
        async for key in self._redis.scan_iter(match=f"{_PREFIX}:*"):
            batch.append(key)
            if len(batch) >= _CLEAR_BATCH_SIZE:
                await self._redis.delete(*batch)
                batch.clear()
        if batch:
            await self._redis.delete(*batch)

    # -- internal --

    async def _fetch(self, scope: str, ids: list[str]) -> list[MemoryItem]:
        if not ids:
            return []
        pipe = self._redis.pipeline()
        for item_id in ids:
            pipe.get(_item_key(scope, item_id))
        raw_results = await pipe.execute()

        stale_ids: list[str] = []
        items: list[MemoryItem] = []
        for item_id, raw in zip(ids, raw_results):
            if raw is None:
                stale_ids.append(item_id)
            else:
                items.append(MemoryItem.model_validate_json(raw))

        if stale_ids:
            logger.debug("pruning %d stale memory ids scope=%s", len(stale_ids), scope)
            cleanup = self._redis.pipeline()
            for item_id in stale_ids:
                cleanup.zrem(_recency_key(scope), item_id)
            await cleanup.execute()
        return items
