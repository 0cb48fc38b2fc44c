"""MemoryStore SQL wiring against a recording pool (no database)."""

import json
from datetime import date, datetime, timezone
from types import SimpleNamespace

import pytest

from conftest import DummyPool
from margin.config import RetryConfig
from margin.memory import (
    SCHEMA_PATH,
    MemoryConnection,
    MemoryStore,
    canonical_pair,
)
from margin.spark import SparkNudge


def make_store(pool) -> MemoryStore:
    store = MemoryStore("postgresql://test/test", retry_config=RetryConfig(max_retries=0))
    store.pool = pool
    return store


def nudge() -> SparkNudge:
    return SparkNudge(
        id="nudge_abc",
        type="callback",
        hook="Back in May you said the same about Sam.",
        why_now="Same shift, same promise.",
        action_prompt="Name what changed since May.",
        paragraph_index=2,
        paragraph_hash="0123456789ab",
        evidence_memory_id="m1",
        evidence_memory_date="2026-05-03",
        evidence_memory_snippet="never again",
        scores={"overall_utility": 4.2, "model_confidence": 0.8},
    )


def test_canonical_pair():
    assert canonical_pair("b", "a") == ("a", "b")
    assert canonical_pair("a", "b") == ("a", "b")


def test_schema_ships_with_package():
    sql = SCHEMA_PATH.read_text()
    assert "CREATE EXTENSION IF NOT EXISTS vector" in sql
    assert "journal_nudge_feedback" in sql


@pytest.mark.asyncio
async def test_seed_rows_become_memories():
    pool = DummyPool(fetch_results=[[{
        "id": "m1",
        "content": "Told Sam no",
        "source": "journal",
        "source_date": date(2026, 9, 1),
        "strength": 1.2,
        "activation_count": 3,
        "contact_ids": None,
        "last_activated_at": datetime(2026, 9, 2, tzinfo=timezone.utc),
        "similarity": 0.61,
    }]])
    store = make_store(pool)
    seeds = await store.seed_memories("u1", [0.1, 0.2], 5, contact_filter="sam")

    memory, similarity = seeds[0]
    assert memory.source_date == "2026-09-01"
    assert memory.contact_ids == []
    assert similarity == pytest.approx(0.61)
    kind, sql, args = pool.queries[0]
    assert "<=> $2::halfvec" in sql
    assert args == ("u1", "[0.1, 0.2]", 5, "sam")


@pytest.mark.asyncio
async def test_empty_id_lists_skip_the_database():
    pool = DummyPool()
    store = make_store(pool)
    assert await store.get_memories("u1", []) == {}
    assert await store.connection_counts("u1", []) == {}
    assert await store.find_connections("u1", []) == []
    assert await store.find_implications("u1", []) == []
    assert pool.queries == []


@pytest.mark.asyncio
async def test_find_implications_uses_array_overlap():
    pool = DummyPool(fetch_results=[[{
        "id": "i1",
        "content": "You say yes when tired",
        "implication_type": "behavioral",
        "implication_order": None,
        "strength": 0.9,
        "source_memory_ids": ["m1", "m2"],
    }]])
    store = make_store(pool)
    [imp] = await store.find_implications("u1", ["m1"])
    assert imp.implication_order == 1
    assert imp.source_memory_ids == ["m1", "m2"]
    assert "source_memory_ids && $2::text[]" in pool.queries[0][1]


@pytest.mark.asyncio
async def test_store_connection_is_canonical_and_saturating():
    pool = DummyPool()
    store = make_store(pool)
    await store.store_connection("u1", "m9", "m2", "pattern", weight=1.7)

    _, sql, args = pool.queries[0]
    assert "ON CONFLICT (memory_a_id, memory_b_id) DO UPDATE" in sql
    assert args[2:4] == ("m2", "m9")
    assert args[5] == 1.0

    with pytest.raises(ValueError):
        await store.store_connection("u1", "a", "b", "vibes")


@pytest.mark.asyncio
async def test_store_implication_validates():
    store = make_store(DummyPool())
    with pytest.raises(ValueError):
        await store.store_implication("u1", "x", ["m1"], "horoscope")
    with pytest.raises(ValueError):
        await store.store_implication("u1", "x", ["m1"], "behavioral", implication_order=0)


@pytest.mark.asyncio
async def test_store_memory_rejects_unknown_source():
    store = make_store(DummyPool())
    with pytest.raises(ValueError):
        await store.store_memory("u1", "x", "tweet", date(2026, 1, 1))


@pytest.mark.asyncio
async def test_reinforce_runs_in_one_transaction():
    pool = DummyPool()
    store = make_store(pool)
    edges = [
        MemoryConnection("m2", "m1", weight=0.4),
        MemoryConnection("m1", "m2", weight=0.4),
        MemoryConnection("m2", "m3", weight=0.7),
    ]
    await store.reinforce("u1", ["m1", "m2", "m3"], edges, 0.05)

    kinds = [q[0] for q in pool.queries]
    assert kinds == ["executemany", "execute"]
    _, edge_sql, edge_args = pool.queries[0]
    assert "weight + $3 * (1 - weight)" in edge_sql
    assert [(a, b) for a, b, *_ in edge_args] == [("m1", "m2"), ("m2", "m3")]
    _, mem_sql, mem_args = pool.queries[1]
    assert "activation_count = activation_count + 1" in mem_sql
    assert "LOG(2.0" in mem_sql
    assert mem_args[0] == ["m1", "m2", "m3"]


@pytest.mark.asyncio
async def test_upsert_nudge_is_keyed_and_returns_existing_id():
    pool = DummyPool(fetchval_results=["nudge_original"])
    store = make_store(pool)
    nudge_id = await store.upsert_nudge("u1", date(2026, 10, 17), nudge(), 0.31, 0.2)

    assert nudge_id == "nudge_original"
    _, sql, args = pool.queries[0]
    assert "ON CONFLICT (user_id, entry_date, paragraph_hash, type) DO UPDATE" in sql
    assert "RETURNING id" in sql
    assert args[0] == "nudge_abc"
    assert args[3] == "0123456789ab"
    assert args[14] == 4.2
    assert json.loads(args[16]) == {"overall_utility": 4.2, "model_confidence": 0.8}


@pytest.mark.asyncio
async def test_history_queries_skip_current_paragraph():
    pool = DummyPool(fetch_results=[
        [{"type": "tension", "evidence_memory_id": "m1", "hook": "h"}],
        [{"type": "tension", "cnt": 2}],
    ])
    store = make_store(pool)
    history = await store.recent_nudges("u1", 20, skip_paragraph_hash="abc")
    counts = await store.nudge_type_counts("u1", date(2026, 10, 17), skip_paragraph_hash="abc")

    assert history[0].evidence_memory_id == "m1"
    assert counts == {"tension": 2}
    for _, sql, args in pool.queries:
        assert "paragraph_hash <> $3" in sql
        assert args[-1] == "abc"


@pytest.mark.asyncio
async def test_record_feedback_requires_ownership():
    pool = DummyPool(fetchval_results=[None, 1])
    store = make_store(pool)
    assert await store.record_feedback("u1", "nudge_x", "up", None) is False
    assert [q[0] for q in pool.queries] == ["fetchval"]

    assert await store.record_feedback("u1", "nudge_x", "down", "not_now") is True
    _, sql, args = pool.queries[-1]
    assert "ON CONFLICT (nudge_id, user_id) DO UPDATE" in sql
    assert args[1:] == ("nudge_x", "u1", "down", "not_now")


@pytest.mark.asyncio
async def test_embed_uses_query_task_type():
    calls = []

    async def embed_content(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(embeddings=[SimpleNamespace(values=[0.5, 0.5])])

    store = make_store(DummyPool())
    store.genai_client = SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(
        embed_content=embed_content,
    )))
    assert await store.embed("hello", task_type="RETRIEVAL_QUERY") == [0.5, 0.5]
    assert calls[0]["model"] == "gemini-embedding-001"
    assert calls[0]["config"].task_type == "RETRIEVAL_QUERY"
    assert calls[0]["config"].output_dimensionality == 768


@pytest.mark.asyncio
async def test_embed_without_client_fails():
    with pytest.raises(RuntimeError):
        await make_store(DummyPool()).embed("hello")
