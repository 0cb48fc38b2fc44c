"""Margin test fakes: in-memory graph store, scripted oracle, recording asyncpg pool."""

import asyncio
import hashlib
import re
from datetime import datetime, timezone

import numpy as np
import pytest

from margin.activation import cosine_similarity
from margin.memory import (
    Memory,
    MemoryConnection,
    MemoryImplication,
    canonical_pair,
)
from margin.spark import HistoricalNudge

EMBED_DIMS = 64


def bag_of_words(text: str) -> np.ndarray:
    """Deterministic hashed bag-of-words vector."""
    vec = np.zeros(EMBED_DIMS)
    for tok in re.findall(r"[a-z0-9']+", text.lower()):
        vec[int(hashlib.md5(tok.encode()).hexdigest(), 16) % EMBED_DIMS] += 1.0
    return vec


# ============================================================================
# In-memory graph store
# ============================================================================


class FakeGraphStore:
    """Implements the MemoryStore surface the pipeline uses, in memory.

    Seeds are ranked by cosine over bag-of-words vectors unless a memory was
    added with an explicit `similarity`, which then wins.
    """

    def __init__(self):
        self.memories: dict[str, Memory] = {}
        self.similarity: dict[str, float] = {}
        self.connections: dict[tuple[str, str], MemoryConnection] = {}
        self.implications: list[MemoryImplication] = []
        self.nudges: dict[tuple, dict] = {}
        self.feedback: list[dict] = []
        self.calls: list[str] = []
        self.reinforce_calls: list[tuple] = []
        self.reinforce_error: Exception | None = None

    # --- setup helpers ---

    def add_memory(
        self,
        memory_id: str,
        content: str,
        similarity: float | None = None,
        strength: float = 1.0,
        contact_ids: list[str] | None = None,
        source_date: str = "2026-09-01",
        last_activated_at: datetime | None = None,
    ) -> Memory:
        memory = Memory(
            id=memory_id,
            content=content,
            source="journal",
            source_date=source_date,
            strength=strength,
            contact_ids=contact_ids or [],
            last_activated_at=last_activated_at or datetime.now(timezone.utc),
        )
        self.memories[memory_id] = memory
        if similarity is not None:
            self.similarity[memory_id] = similarity
        return memory

    def connect(self, a: str, b: str, weight: float = 0.5, connection_type: str = "thematic"):
        a, b = canonical_pair(a, b)
        self.connections[(a, b)] = MemoryConnection(
            memory_a_id=a, memory_b_id=b, weight=weight, connection_type=connection_type,
        )

    def add_implication(self, implication_id: str, content: str, sources: list[str],
                        strength: float = 1.0, implication_type: str = "behavioral"):
        self.implications.append(MemoryImplication(
            id=implication_id,
            content=content,
            source_memory_ids=sources,
            implication_type=implication_type,
            strength=strength,
        ))

    def add_history(self, nudge_type: str, hook: str, evidence_memory_id: str | None = None,
                    entry_date=None, paragraph_hash: str = "oldhash00000"):
        key = ("u1", entry_date, paragraph_hash, nudge_type)
        self.nudges[key] = {
            "id": f"nudge_hist_{len(self.nudges)}",
            "type": nudge_type,
            "hook": hook,
            "evidence_memory_id": evidence_memory_id,
            "entry_date": entry_date,
            "paragraph_hash": paragraph_hash,
            "user_id": "u1",
        }

    # --- read primitives ---

    async def embed(self, text, task_type="RETRIEVAL_DOCUMENT", title=None):
        self.calls.append("embed")
        return bag_of_words(text).tolist()

    async def seed_memories(self, user_id, embedding, limit, contact_filter=None):
        self.calls.append("seed_memories")
        query = np.array(embedding)
        scored = []
        for m in self.memories.values():
            if contact_filter and contact_filter not in m.contact_ids:
                continue
            sim = self.similarity.get(m.id)
            if sim is None:
                sim = cosine_similarity(query, bag_of_words(m.content))
            scored.append((m, sim))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    async def get_memories(self, user_id, ids):
        return {i: self.memories[i] for i in ids if i in self.memories}

    async def connection_counts(self, user_id, ids):
        counts = {}
        for a, b in self.connections:
            for end in (a, b):
                if end in ids:
                    counts[end] = counts.get(end, 0) + 1
        return counts

    async def find_connections(self, user_id, ids):
        wanted = set(ids)
        return [
            c for (a, b), c in self.connections.items()
            if a in wanted or b in wanted
        ]

    async def find_implications(self, user_id, memory_ids):
        wanted = set(memory_ids)
        return [i for i in self.implications if wanted & set(i.source_memory_ids)]

    # --- write primitives ---

    async def reinforce(self, user_id, memory_ids, connections, delta, strength_gain=0.02):
        if self.reinforce_error:
            raise self.reinforce_error
        self.reinforce_calls.append((list(memory_ids), list(connections), delta))

    async def upsert_nudge(self, user_id, entry_date, nudge, retrieval_top_score,
                           retrieval_second_score):
        self.calls.append("upsert_nudge")
        key = (user_id, entry_date, nudge.paragraph_hash, nudge.type)
        row = self.nudges.get(key)
        nudge_id = row["id"] if row else nudge.id
        self.nudges[key] = {
            "id": nudge_id,
            "type": nudge.type,
            "hook": nudge.hook,
            "evidence_memory_id": nudge.evidence_memory_id,
            "entry_date": entry_date,
            "paragraph_hash": nudge.paragraph_hash,
            "user_id": user_id,
        }
        return nudge_id

    async def recent_nudges(self, user_id, limit=20, skip_paragraph_hash=None):
        rows = [
            r for r in reversed(list(self.nudges.values()))
            if r["user_id"] == user_id and r["paragraph_hash"] != skip_paragraph_hash
        ]
        return [
            HistoricalNudge(type=r["type"], evidence_memory_id=r["evidence_memory_id"],
                            hook=r["hook"])
            for r in rows[:limit]
        ]

    async def nudge_type_counts(self, user_id, entry_date, skip_paragraph_hash=None):
        counts = {}
        for r in self.nudges.values():
            if r["user_id"] != user_id or r["entry_date"] != entry_date:
                continue
            if r["paragraph_hash"] == skip_paragraph_hash:
                continue
            counts[r["type"]] = counts.get(r["type"], 0) + 1
        return counts

    async def record_feedback(self, user_id, nudge_id, feedback, reason):
        if not any(r["id"] == nudge_id and r["user_id"] == user_id for r in self.nudges.values()):
            return False
        self.feedback = [f for f in self.feedback if f["nudge_id"] != nudge_id]
        nudge_type = next(r["type"] for r in self.nudges.values() if r["id"] == nudge_id)
        self.feedback.insert(0, {"nudge_id": nudge_id, "type": nudge_type,
                                 "feedback": feedback, "reason": reason})
        return True

    async def recent_feedback(self, user_id, limit=100):
        return [
            {"type": f["type"], "feedback": f["feedback"], "reason": f["reason"]}
            for f in self.feedback[:limit]
        ]


# ============================================================================
# Scripted oracle
# ============================================================================


class ScriptedOracle:
    """Returns queued responses. An Exception in the queue is raised; a float
    is slept before answering with the next item."""

    def __init__(self, generate=None, judge=None):
        self.generate_queue = list(generate or [])
        self.judge_queue = list(judge or [])
        self.generate_prompts: list[str] = []
        self.judge_prompts: list[str] = []

    @staticmethod
    async def _next(queue):
        item = queue.pop(0) if queue else ""
        if isinstance(item, (int, float)):
            await asyncio.sleep(item)
            item = queue.pop(0) if queue else ""
        if isinstance(item, Exception):
            raise item
        return item

    async def generate(self, prompt):
        self.generate_prompts.append(prompt)
        return await self._next(self.generate_queue)

    async def judge(self, prompt):
        self.judge_prompts.append(prompt)
        return await self._next(self.judge_queue)

    @property
    def call_count(self):
        return len(self.generate_prompts) + len(self.judge_prompts)


# ============================================================================
# Recording asyncpg pool
# ============================================================================


class DummyTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class DummyConnection:
    def __init__(self, pool):
        self.pool = pool

    def transaction(self):
        return DummyTransaction()

    async def execute(self, sql, *args):
        return await self.pool.execute(sql, *args)

    async def executemany(self, sql, args):
        self.pool.queries.append(("executemany", sql, list(args)))

    async def fetch(self, sql, *args):
        return await self.pool.fetch(sql, *args)

    async def fetchval(self, sql, *args):
        return await self.pool.fetchval(sql, *args)


class DummyAcquire:
    def __init__(self, pool):
        self.conn = DummyConnection(pool)

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


class DummyPool:
    """Records every query; fetch/fetchval answer from scripted queues."""

    def __init__(self, fetch_results=None, fetchval_results=None):
        self.queries: list[tuple] = []
        self.fetch_results = list(fetch_results or [])
        self.fetchval_results = list(fetchval_results or [])

    def acquire(self):
        return DummyAcquire(self)

    async def execute(self, sql, *args):
        self.queries.append(("execute", sql, args))
        return "OK"

    async def fetch(self, sql, *args):
        self.queries.append(("fetch", sql, args))
        return self.fetch_results.pop(0) if self.fetch_results else []

    async def fetchval(self, sql, *args):
        self.queries.append(("fetchval", sql, args))
        return self.fetchval_results.pop(0) if self.fetchval_results else None


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def store():
    return FakeGraphStore()


@pytest.fixture
def dummy_pool():
    return DummyPool()
