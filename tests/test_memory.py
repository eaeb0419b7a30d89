"""Tests for the tiered memory manager."""

from datetime import datetime, timedelta, timezone

import pytest

from stepwise.memory import MemoryManager, estimate_tokens, keyword_terms, tool_cache_key
from stepwise.schemas import (
    Importance,
    LearnedFactMetadata,
    MemoryType,
    ToolCacheMetadata,
)
from stepwise.storage import InMemoryStorage


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.mark.asyncio
async def test_retrieve_ranks_keyword_matches_and_counts_access(clock):
    storage = InMemoryStorage()
    memory = MemoryManager(storage, clock=clock)
    python_id = await memory.store_learned_fact("Python projects use pytest for tests", "chat")
    await memory.store_learned_fact("Rust compiles to native code", "chat")

    first = await memory.retrieve("python pytest")
    second = await memory.retrieve("python pytest")

    assert first[0].id == python_id
    assert second[0].access_count == 2
    stored = await storage.get(f"mem:{python_id}")
    assert stored["access_count"] == 2


@pytest.mark.asyncio
async def test_every_query_word_adds_two_points(clock):
    memory = MemoryManager(clock=clock)
    await memory.store_learned_fact("Python projects use pytest for tests", "chat")
    entry = (await memory.retrieve("python"))[0]
    baseline = memory.score(entry, [], clock.now)

    assert keyword_terms("Python python, is pytest?") == ["python", "python,", "pytest?"]
    assert memory.score(entry, keyword_terms("python python"), clock.now) - baseline == pytest.approx(4.0)
    # Punctuation stays on the word, so "pytest?" is not found
    assert memory.score(entry, keyword_terms("pytest?"), clock.now) == baseline


@pytest.mark.asyncio
async def test_retrieve_filters_by_type_and_importance(clock):
    memory = MemoryManager(clock=clock)
    await memory.store_preference("language", "English")
    await memory.store_context_snapshot("window_1", "context about language")
    await memory.store_learned_fact("The user speaks English", "chat")

    useful_or_better = await memory.retrieve("language", min_importance=Importance.USEFUL)
    facts = await memory.retrieve("english", types=[MemoryType.LEARNED_FACT])

    assert {entry.type for entry in useful_or_better} == {
        MemoryType.USER_PREFERENCE,
        MemoryType.LEARNED_FACT,
    }
    assert [entry.type for entry in facts] == [MemoryType.LEARNED_FACT]


@pytest.mark.asyncio
async def test_expired_entries_are_never_returned(clock):
    memory = MemoryManager(clock=clock)
    await memory.cache_tool_result("web_search", {"query": "weather"}, "Sunny")

    assert await memory.get_cached_tool_result("web_search", {"query": "weather"}) == "Sunny"

    clock.advance(hours=25)
    assert await memory.get_cached_tool_result("web_search", {"query": "weather"}) is None
    assert await memory.retrieve("sunny") == []


@pytest.mark.asyncio
async def test_recaching_an_expired_tool_result_stores_the_fresh_output(clock):
    memory = MemoryManager(clock=clock)
    await memory.cache_tool_result("web_search", {"query": "weather"}, "Sunny")

    clock.advance(hours=25)
    await memory.cache_tool_result("web_search", {"query": "weather"}, "Rainy")

    assert await memory.get_cached_tool_result("web_search", {"query": "weather"}) == "Rainy"
    assert len(memory) == 1
    clock.advance(hours=23)
    assert await memory.get_cached_tool_result("web_search", {"query": "weather"}) == "Rainy"


@pytest.mark.asyncio
async def test_tool_cache_dedupes_and_truncates(clock):
    memory = MemoryManager(clock=clock)
    first = await memory.cache_tool_result("execute_python", {"b": 2, "a": 1}, "old")
    second = await memory.cache_tool_result("execute_python", {"a": 1, "b": 2}, "x" * 1500)

    assert first == second
    assert len(memory) == 1
    entry = memory.get(first)
    assert len(entry.content) == 1000
    assert entry.importance == Importance.AMBIENT
    assert isinstance(entry.metadata, ToolCacheMetadata)
    assert entry.metadata.cache_key == 'execute_python:{"a": 1, "b": 2}'
    assert entry.expires_at == clock.now + timedelta(hours=24)


def test_tool_cache_key_accepts_strings():
    assert tool_cache_key("web_search", "weather") == "web_search:weather"


@pytest.mark.asyncio
async def test_preferences_are_upserted(clock):
    memory = MemoryManager(clock=clock)
    first = await memory.store_preference("theme", "dark")
    second = await memory.store_preference("theme", "light")

    assert first == second
    assert len(memory) == 1
    entry = memory.get(first)
    assert entry.content == "theme: light"
    assert entry.importance == Importance.CRITICAL


@pytest.mark.asyncio
async def test_pruning_over_cap_evicts_ambient_oldest_first(clock):
    memory = MemoryManager(clock=clock)
    preference_id = await memory.store_preference("tone", "concise")
    snapshot_ids = []
    for index in range(500):
        clock.advance(seconds=1)
        snapshot_ids.append(await memory.store_context_snapshot(f"w{index}", f"snapshot {index}"))

    assert len(memory) == 500
    assert memory.get(preference_id) is not None
    assert memory.get(snapshot_ids[0]) is None
    assert memory.get(snapshot_ids[-1]) is not None


@pytest.mark.asyncio
async def test_eviction_order_is_tier_then_access_time(clock):
    memory = MemoryManager(max_entries=2, clock=clock)
    critical = await memory.store_preference("units", "metric")
    clock.advance(seconds=1)
    useful = await memory.store_learned_fact("Likes short answers", "chat")
    clock.advance(seconds=1)
    ambient = await memory.store_context_snapshot("w", "ambient note")

    assert memory.get(ambient) is None
    clock.advance(seconds=1)
    await memory.store_learned_fact("Works in Berlin", "chat")

    remaining = {entry.id for entry in memory.entries()}
    assert critical in remaining
    assert useful not in remaining


@pytest.mark.asyncio
async def test_entries_older_than_max_age_are_pruned(clock):
    memory = MemoryManager(clock=clock)
    old = await memory.store_learned_fact("Old fact", "chat")

    clock.advance(days=31)
    await memory.store_learned_fact("New fact", "chat")

    assert memory.get(old) is None
    assert len(memory) == 1


@pytest.mark.asyncio
async def test_memory_context_respects_token_budget(clock):
    memory = MemoryManager(clock=clock)
    await memory.store_learned_fact("a" * 100, "chat")
    await memory.store_learned_fact("b" * 100, "chat")
    await memory.store_context_snapshot("w", "ambient entries are never included")

    context = await memory.build_memory_context("anything", max_tokens=60)

    assert context.startswith("[AGENT MEMORY")
    assert context.count("•") == 1
    assert estimate_tokens(context) <= 60
    assert "ambient" not in context


@pytest.mark.asyncio
async def test_memory_context_empty_when_nothing_fits(clock):
    memory = MemoryManager(clock=clock)
    assert await memory.build_memory_context("anything") == ""

    await memory.store_learned_fact("c" * 400, "chat")
    assert await memory.build_memory_context("anything", max_tokens=20) == ""


@pytest.mark.asyncio
async def test_task_summary_content(clock):
    memory = MemoryManager(clock=clock)
    memory_id = await memory.store_task_summary("Fibonacci", ["🐍 Run Python code", "📋 Summary"], "Done", 2400)

    entry = memory.get(memory_id)
    assert entry.content == (
        "Task: Fibonacci\nSteps: 🐍 Run Python code → 📋 Summary\nResult: Done\nDuration: 2s"
    )
    assert entry.metadata.step_count == 2


@pytest.mark.asyncio
async def test_metadata_must_match_type(clock):
    memory = MemoryManager(clock=clock)
    with pytest.raises(ValueError):
        await memory.store(
            MemoryType.TASK_SUMMARY,
            "mismatch",
            importance=Importance.USEFUL,
            metadata=LearnedFactMetadata(source="x", learned_at=clock.now),
        )


@pytest.mark.asyncio
async def test_storage_failure_degrades_to_in_memory(clock):
    memory = MemoryManager(InMemoryStorage(fail=True), clock=clock)

    memory_id = await memory.store_learned_fact("Still remembered", "chat")
    await memory.store_learned_fact("Also remembered", "chat")

    assert memory.storage_available is False
    assert memory.get(memory_id) is not None
    assert memory.get_stats()["storage_available"] is False
    assert (await memory.retrieve("remembered"))[0].content.endswith("remembered")


@pytest.mark.asyncio
async def test_initialize_loads_live_entries(clock):
    storage = InMemoryStorage()
    writer = MemoryManager(storage, clock=clock)
    kept = await writer.store_learned_fact("Persisted fact", "chat")
    await writer.cache_tool_result("web_search", "q", "cached")

    clock.advance(hours=30)
    reader = MemoryManager(storage, clock=clock)
    await reader.initialize()

    assert [entry.id for entry in reader.entries()] == [kept]


@pytest.mark.asyncio
async def test_stats_and_clear(clock):
    storage = InMemoryStorage()
    memory = MemoryManager(storage, clock=clock)
    await memory.store_preference("theme", "dark")
    await memory.store_learned_fact("fact", "chat")

    stats = memory.get_stats()
    assert stats["total"] == 2
    assert stats["by_importance"] == {"critical": 1, "useful": 1}

    await memory.clear()
    assert len(memory) == 0
    assert await storage.scan("mem:") == []
