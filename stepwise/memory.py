"""
Tiered memory manager for cross-session agent knowledge.

Stores task summaries, user preferences, cached tool results, context
snapshots and learned facts as ``MemoryEntry`` records. Each entry carries an
importance tier (critical > useful > ambient) that drives both retrieval
ranking and eviction order.

Key responsibilities:
- Keep an in-memory cache that mirrors storage (write-through on every change)
- Score entries for a query by keyword overlap, recency, frequency and tier
- Assemble a token-budgeted memory block for prompt injection
- Prune expired, aged-out and excess entries after every store

Storage is optional. When the backend is unavailable the manager logs a
warning once and keeps working from its cache.
"""

from __future__ import annotations

import asyncio
import json
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from .capabilities import Capabilities
from .logging_utils import log_planner, log_warning
from .schemas import (
    ContextSnapshotMetadata,
    Importance,
    LearnedFactMetadata,
    MemoryEntry,
    MemoryMetadata,
    MemoryType,
    TaskSummaryMetadata,
    ToolCacheMetadata,
    UserPreferenceMetadata,
    generate_id,
    utcnow,
)
from .storage import KeyValueStorage

MAX_ENTRIES = 500
MAX_AGE = timedelta(days=30)
RECENCY_WINDOW = timedelta(days=7)
TOOL_CACHE_TTL = timedelta(hours=24)
TOOL_CACHE_MAX_CHARS = 1000
MAX_CONTEXT_TOKENS = 2048
CHARS_PER_TOKEN = 4
MIN_RETRIEVAL_SCORE = 1.0
MEMORY_KEY_PREFIX = "mem:"
MEMORY_CONTEXT_HEADER = "[AGENT MEMORY — Relevant past knowledge]"
CONTEXT_MEMORY_TYPES = (
    MemoryType.TASK_SUMMARY,
    MemoryType.USER_PREFERENCE,
    MemoryType.LEARNED_FACT,
)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def keyword_terms(query: str) -> List[str]:
    """Lowercased whitespace words longer than two characters, repeats kept."""

    return [word for word in query.lower().split() if len(word) > 2]


def tool_cache_key(tool_name: str, params: Any) -> str:
    """Cache key ``<tool>:<params>``; dict params are serialised with sorted keys."""

    if not isinstance(params, str):
        params = json.dumps(params, sort_keys=True, ensure_ascii=False, default=str)
    return f"{tool_name}:{params}"


class MemoryManager:
    """Importance-tiered memory with write-through persistence.

    Args:
        storage: Optional key-value backend (records keyed ``mem:<id>``)
        max_entries: Hard cap enforced after every store
        max_age: Entries older than this (by creation) are pruned
        clock: Returns the current time; tests inject a fake clock
        capabilities: Optional capability object; ``storage=False`` skips persistence
    """

    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        *,
        max_entries: int = MAX_ENTRIES,
        max_age: timedelta = MAX_AGE,
        clock: Callable[[], datetime] = utcnow,
        capabilities: Optional[Capabilities] = None,
    ) -> None:
        self.storage = storage
        self.max_entries = max_entries
        self.max_age = max_age
        self.clock = clock
        self._cache: Dict[str, MemoryEntry] = {}
        self._lock = asyncio.Lock()
        self._initialized = False
        self.storage_available = storage is not None and (
            capabilities is None or capabilities.storage
        )

    def __len__(self) -> int:
        return len(self._cache)

    def entries(self) -> List[MemoryEntry]:
        return list(self._cache.values())

    def get(self, memory_id: str) -> Optional[MemoryEntry]:
        return self._cache.get(memory_id)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _degrade(self, action: str, exc: Exception) -> None:
        if self.storage_available:
            log_warning(f"[Memory] Storage unavailable during {action}, continuing in-memory only: {exc}")
        self.storage_available = False

    async def _persist(self, entry: MemoryEntry) -> None:
        if not self.storage_available:
            return
        try:
            await self.storage.put(f"{MEMORY_KEY_PREFIX}{entry.id}", entry.model_dump(mode="json"))
        except Exception as exc:
            self._degrade("write", exc)

    async def _remove(self, memory_id: str) -> None:
        self._cache.pop(memory_id, None)
        if not self.storage_available:
            return
        try:
            await self.storage.delete(f"{MEMORY_KEY_PREFIX}{memory_id}")
        except Exception as exc:
            self._degrade("delete", exc)

    async def initialize(self) -> None:
        """Load live entries from storage into the cache (idempotent)."""

        if self._initialized:
            return
        self._initialized = True
        if not self.storage_available:
            return

        try:
            records = await self.storage.scan(MEMORY_KEY_PREFIX)
        except Exception as exc:
            self._degrade("load", exc)
            return

        now = self.clock()
        async with self._lock:
            for _, record in records:
                entry = MemoryEntry.model_validate(record)
                if entry.is_expired(now) or now - entry.created_at > self.max_age:
                    continue
                self._cache[entry.id] = entry
        log_planner(f"[Memory] Loaded {len(self._cache)} memories from storage")

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def store(
        self,
        memory_type: MemoryType,
        content: str,
        *,
        importance: Importance,
        metadata: MemoryMetadata,
        expires_at: Optional[datetime] = None,
    ) -> str:
        """Store a new memory and prune; returns its id."""

        async with self._lock:
            return await self._store_locked(memory_type, content, importance, metadata, expires_at)

    async def _store_locked(
        self,
        memory_type: MemoryType,
        content: str,
        importance: Importance,
        metadata: MemoryMetadata,
        expires_at: Optional[datetime],
    ) -> str:
        if metadata.type != memory_type.value:
            raise ValueError(
                f"Metadata variant '{metadata.type}' does not match memory type '{memory_type.value}'"
            )
        now = self.clock()
        entry = MemoryEntry(
            id=generate_id("mem"),
            type=memory_type,
            importance=importance,
            content=content,
            metadata=metadata,
            created_at=now,
            accessed_at=now,
            access_count=0,
            expires_at=expires_at,
        )
        self._cache[entry.id] = entry
        await self._persist(entry)
        await self._prune_locked()
        log_planner(f"[Memory] Stored {memory_type.value} ({importance.value}): {content[:60]}")
        return entry.id

    async def _touch(self, entry: MemoryEntry, **updates: Any) -> MemoryEntry:
        updated = entry.model_copy(
            update={
                "accessed_at": self.clock(),
                "access_count": entry.access_count + 1,
                **updates,
            }
        )
        self._cache[updated.id] = updated
        await self._persist(updated)
        return updated

    async def store_task_summary(
        self, title: str, steps: Sequence[str], result: str, duration_ms: int
    ) -> str:
        content = (
            f"Task: {title}\n"
            f"Steps: {' → '.join(steps)}\n"
            f"Result: {result}\n"
            f"Duration: {round(duration_ms / 1000)}s"
        )
        metadata = TaskSummaryMetadata(
            title=title,
            step_count=len(steps),
            duration_ms=duration_ms,
            completed_at=self.clock(),
        )
        return await self.store(
            MemoryType.TASK_SUMMARY, content, importance=Importance.USEFUL, metadata=metadata
        )

    async def store_preference(self, key: str, value: str) -> str:
        """Store a critical user preference, replacing an existing one with the same key."""

        content = f"{key}: {value}"
        async with self._lock:
            for entry in self._cache.values():
                if isinstance(entry.metadata, UserPreferenceMetadata) and entry.metadata.key == key:
                    await self._touch(
                        entry,
                        content=content,
                        metadata=UserPreferenceMetadata(key=key, value=value),
                    )
                    return entry.id
            return await self._store_locked(
                MemoryType.USER_PREFERENCE,
                content,
                Importance.CRITICAL,
                UserPreferenceMetadata(key=key, value=value),
                None,
            )

    async def cache_tool_result(self, tool_name: str, params: Any, result: str) -> str:
        """Cache a tool output for 24 hours (ambient tier, deduplicated by key).

        Re-caching a key replaces the stored output and restarts its lifetime,
        whether or not the previous entry had expired.
        """

        cache_key = tool_cache_key(tool_name, params)
        async with self._lock:
            now = self.clock()
            for entry in list(self._cache.values()):
                if isinstance(entry.metadata, ToolCacheMetadata) and entry.metadata.cache_key == cache_key:
                    await self._touch(
                        entry,
                        content=result[:TOOL_CACHE_MAX_CHARS],
                        created_at=now,
                        expires_at=now + TOOL_CACHE_TTL,
                    )
                    return entry.id
            return await self._store_locked(
                MemoryType.TOOL_CACHE,
                result[:TOOL_CACHE_MAX_CHARS],
                Importance.AMBIENT,
                ToolCacheMetadata(cache_key=cache_key, tool_name=tool_name),
                self.clock() + TOOL_CACHE_TTL,
            )

    async def get_cached_tool_result(self, tool_name: str, params: Any) -> Optional[str]:
        cache_key = tool_cache_key(tool_name, params)
        now = self.clock()
        async with self._lock:
            for entry in self._cache.values():
                if (
                    isinstance(entry.metadata, ToolCacheMetadata)
                    and entry.metadata.cache_key == cache_key
                    and not entry.is_expired(now)
                ):
                    await self._touch(entry)
                    return entry.content
        return None

    async def store_learned_fact(self, fact: str, source: str) -> str:
        return await self.store(
            MemoryType.LEARNED_FACT,
            fact,
            importance=Importance.USEFUL,
            metadata=LearnedFactMetadata(source=source, learned_at=self.clock()),
        )

    async def store_context_snapshot(self, window_id: str, content: str, **extra: Any) -> str:
        return await self.store(
            MemoryType.CONTEXT_SNAPSHOT,
            content,
            importance=Importance.AMBIENT,
            metadata=ContextSnapshotMetadata(window_id=window_id, extra=extra),
        )

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def score(self, entry: MemoryEntry, terms: Sequence[str], now: datetime) -> float:
        """Relevance score: keywords + recency + frequency + tier weight."""

        content = entry.content.lower()
        score = 2.0 * sum(1 for term in terms if term in content)
        age = (now - entry.accessed_at).total_seconds()
        score += max(0.0, 1 - age / RECENCY_WINDOW.total_seconds())
        score += min(entry.access_count * 0.1, 1.0)
        score += entry.importance.weight
        return score

    async def retrieve(
        self,
        query: str,
        *,
        types: Optional[Sequence[MemoryType]] = None,
        limit: int = 10,
        min_importance: Optional[Importance] = None,
    ) -> List[MemoryEntry]:
        """Return up to ``limit`` relevant, non-expired memories, best first.

        Every returned entry has ``accessed_at`` refreshed and ``access_count``
        incremented, written through to storage.
        """

        terms = keyword_terms(query)
        min_weight = min_importance.weight if min_importance is not None else 0
        now = self.clock()

        async with self._lock:
            scored = []
            for entry in self._cache.values():
                if types is not None and entry.type not in types:
                    continue
                if entry.importance.weight < min_weight:
                    continue
                if entry.is_expired(now):
                    continue
                score = self.score(entry, terms, now)
                if score >= MIN_RETRIEVAL_SCORE:
                    scored.append((score, entry))

            scored.sort(key=lambda item: item[0], reverse=True)
            return [await self._touch(entry) for _, entry in scored[:limit]]

    async def build_memory_context(
        self, query: str, *, max_tokens: int = MAX_CONTEXT_TOKENS
    ) -> str:
        """Render relevant memories as a bullet block within ``max_tokens``.

        Lines are added greedily; the first line that would overflow the
        budget stops the block. Returns an empty string when nothing qualifies.
        """

        if not self._cache:
            return ""

        memories = await self.retrieve(
            query,
            types=CONTEXT_MEMORY_TYPES,
            limit=5,
            min_importance=Importance.USEFUL,
        )
        if not memories:
            return ""

        lines = [MEMORY_CONTEXT_HEADER]
        budget = max_tokens - estimate_tokens(MEMORY_CONTEXT_HEADER)
        for memory in memories:
            line = f"• [{memory.type.value}] {memory.content}"
            cost = estimate_tokens(line)
            if cost > budget:
                break
            budget -= cost
            lines.append(line)

        if len(lines) == 1:
            return ""
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def prune(self) -> int:
        async with self._lock:
            return await self._prune_locked()

    async def _prune_locked(self) -> int:
        """Drop expired and aged-out entries, then evict by (tier, accessed_at)."""

        now = self.clock()
        stale = [
            entry.id
            for entry in self._cache.values()
            if entry.is_expired(now) or now - entry.created_at > self.max_age
        ]
        for memory_id in stale:
            await self._remove(memory_id)

        excess = len(self._cache) - self.max_entries
        evicted = 0
        if excess > 0:
            ordered = sorted(
                self._cache.values(),
                key=lambda entry: (entry.importance.weight, entry.accessed_at),
            )
            for entry in ordered[:excess]:
                await self._remove(entry.id)
                evicted += 1

        removed = len(stale) + evicted
        if removed:
            log_planner(f"[Memory] Pruned {len(stale)} stale and {evicted} excess memories")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        by_importance: Dict[str, int] = {}
        for entry in self._cache.values():
            by_type[entry.type.value] = by_type.get(entry.type.value, 0) + 1
            by_importance[entry.importance.value] = by_importance.get(entry.importance.value, 0) + 1
        return {
            "total": len(self._cache),
            "by_type": by_type,
            "by_importance": by_importance,
            "storage_available": self.storage_available,
        }

    async def clear(self) -> None:
        """Delete every memory from the cache and from storage."""

        async with self._lock:
            for memory_id in list(self._cache):
                await self._remove(memory_id)
            if self.storage_available:
                try:
                    await self.storage.delete_prefix(MEMORY_KEY_PREFIX)
                except Exception as exc:
                    self._degrade("clear", exc)

    def reset(self) -> None:
        """Forget the cache without touching storage (test isolation)."""

        self._cache.clear()
        self._initialized = False


__all__ = ["MemoryManager", "estimate_tokens", "tool_cache_key"]
