"""Memory Graph Store: Postgres + pgvector + Google embeddings.

Holds the per-user memory graph (memories, typed weighted connections,
implications) and the nudge/feedback rows that close the loop.

Read primitives feed the retrieval engine. Write primitives cover
ingestion (collaborators), Hebbian reinforcement, idempotent nudge
persistence and feedback. Memories are never deleted, only decayed or
strengthened.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import asyncpg
from google import genai

from .config import RetryConfig
from .llm import retry_llm_call
from .spark import HistoricalNudge, SparkNudge

logger = logging.getLogger("margin.memory")

EMBED_MODEL = "gemini-embedding-001"
EMBED_DIMENSIONS = 768
SCHEMA_PATH = Path(__file__).with_name("schema.sql")

MEMORY_SOURCES = ("journal", "calendar", "interaction")

CONNECTION_TYPES = (
    "causal",
    "thematic",
    "contradiction",
    "pattern",
    "temporal_sequence",
    "cross_domain",
    "sensory",
    "deviation",
    "escalation",
)

IMPLICATION_TYPES = (
    "predictive",
    "emotional",
    "relational",
    "identity",
    "behavioral",
    "actionable",
    "absence",
    "trajectory",
    "meta_cognitive",
    "retrograde",
    "counterfactual",
)

# Weight gain when consolidation re-discovers an existing connection
CONNECTION_REDISCOVERY_DELTA = 0.1


@dataclass
class Memory:
    id: str
    content: str
    source: str
    source_date: str
    strength: float = 1.0
    activation_count: int = 1
    contact_ids: list[str] = field(default_factory=list)
    last_activated_at: datetime | None = None
    embedding: list[float] | None = None


@dataclass
class MemoryConnection:
    """Undirected edge. memory_a_id < memory_b_id by convention."""
    memory_a_id: str
    memory_b_id: str
    weight: float = 0.5
    connection_type: str | None = None
    reason: str | None = None

    def other(self, memory_id: str) -> str:
        return self.memory_b_id if memory_id == self.memory_a_id else self.memory_a_id


@dataclass
class MemoryImplication:
    id: str
    content: str
    source_memory_ids: list[str]
    implication_type: str | None = None
    implication_order: int = 1
    strength: float = 1.0


def canonical_pair(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a < b else (b, a)


def _iso(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return str(value) if value is not None else ""


def memory_from_row(row) -> Memory:
    return Memory(
        id=row["id"],
        content=row["content"],
        source=row["source"],
        source_date=_iso(row["source_date"]),
        strength=float(row["strength"]),
        activation_count=int(row["activation_count"]),
        contact_ids=list(row["contact_ids"] or []),
        last_activated_at=row["last_activated_at"],
    )


def connection_from_row(row) -> MemoryConnection:
    return MemoryConnection(
        memory_a_id=row["memory_a_id"],
        memory_b_id=row["memory_b_id"],
        weight=float(row["weight"]),
        connection_type=row["connection_type"],
        reason=row["reason"],
    )


def implication_from_row(row) -> MemoryImplication:
    return MemoryImplication(
        id=row["id"],
        content=row["content"],
        source_memory_ids=list(row["source_memory_ids"] or []),
        implication_type=row["implication_type"],
        implication_order=int(row["implication_order"] or 1),
        strength=float(row["strength"]),
    )


class MemoryStore:
    """Async interface to the memory graph backed by Postgres + pgvector."""

    def __init__(
        self,
        database_url: str,
        google_api_key: str | None = None,
        retry_config: RetryConfig | None = None,
    ):
        self.database_url = database_url
        self.google_api_key = google_api_key
        self.pool: asyncpg.Pool | None = None
        self.genai_client: genai.Client | None = None
        self.retry_config = retry_config or RetryConfig()

    async def connect(self):
        """Initialize DB pool and embedding client."""
        self.pool = await asyncpg.create_pool(self.database_url, min_size=2, max_size=10)

        if self.google_api_key:
            self.genai_client = genai.Client(api_key=self.google_api_key)
        else:
            logger.warning("GOOGLE_API_KEY not set, embeddings unavailable")

        logger.info("Memory store connected.")

    async def close(self):
        """Close DB pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Memory store closed.")

    async def init_schema(self):
        """Apply schema.sql (idempotent)."""
        await self.pool.execute(SCHEMA_PATH.read_text())
        logger.info("Schema applied.")

    # --- EMBEDDINGS ---

    async def embed(
        self,
        text: str,
        task_type: str = "RETRIEVAL_DOCUMENT",
        title: str | None = None,
    ) -> list[float]:
        """Embed text using gemini-embedding-001 with retry.

        task_type: RETRIEVAL_DOCUMENT for stored memories, RETRIEVAL_QUERY
        for paragraphs being written.
        """
        if not self.genai_client:
            raise RuntimeError("Embedding client not initialized (missing API key?)")

        async def _call():
            embed_config = genai.types.EmbedContentConfig(
                output_dimensionality=EMBED_DIMENSIONS,
                task_type=task_type,
            )
            if title:
                embed_config.title = title
            result = await self.genai_client.aio.models.embed_content(
                model=EMBED_MODEL,
                contents=text,
                config=embed_config,
            )
            return result.embeddings[0].values

        return await retry_llm_call(_call, config=self.retry_config, label="embed")

    async def embed_batch(
        self,
        texts: list[str],
        task_type: str = "RETRIEVAL_DOCUMENT",
    ) -> list[list[float]]:
        """Batch embed, 100 texts per API call."""
        if not self.genai_client:
            raise RuntimeError("Embedding client not initialized (missing API key?)")
        if not texts:
            return []

        results = []
        for i in range(0, len(texts), 100):
            batch = texts[i:i + 100]

            async def _call(b=batch):
                result = await self.genai_client.aio.models.embed_content(
                    model=EMBED_MODEL,
                    contents=b,
                    config=genai.types.EmbedContentConfig(
                        output_dimensionality=EMBED_DIMENSIONS,
                        task_type=task_type,
                    ),
                )
                return [e.values for e in result.embeddings]

            results.extend(
                await retry_llm_call(_call, config=self.retry_config, label="embed_batch")
            )
        return results

    # --- GRAPH READS ---

    async def seed_memories(
        self,
        user_id: str,
        embedding: list[float],
        limit: int,
        contact_filter: str | None = None,
    ) -> list[tuple[Memory, float]]:
        """Top `limit` memories by cosine similarity to `embedding`."""
        rows = await self.pool.fetch(
            """
            SELECT id, content, source, source_date, strength, activation_count,
                   contact_ids, last_activated_at,
                   1 - (embedding <=> $2::halfvec) AS similarity
            FROM memories
            WHERE user_id = $1
              AND embedding IS NOT NULL
              AND ($4::text IS NULL OR $4 = ANY(contact_ids))
            ORDER BY embedding <=> $2::halfvec
            LIMIT $3
            """,
            user_id,
            str(embedding),
            limit,
            contact_filter,
        )
        return [(memory_from_row(r), float(r["similarity"])) for r in rows]

    async def get_memories(self, user_id: str, ids: list[str]) -> dict[str, Memory]:
        if not ids:
            return {}
        rows = await self.pool.fetch(
            """
            SELECT id, content, source, source_date, strength, activation_count,
                   contact_ids, last_activated_at
            FROM memories
            WHERE user_id = $1 AND id = ANY($2)
            """,
            user_id,
            ids,
        )
        return {r["id"]: memory_from_row(r) for r in rows}

    async def connection_counts(self, user_id: str, ids: list[str]) -> dict[str, int]:
        if not ids:
            return {}
        rows = await self.pool.fetch(
            """
            SELECT memory_id, COUNT(*) AS cnt FROM (
                SELECT memory_a_id AS memory_id FROM memory_connections
                WHERE user_id = $1 AND memory_a_id = ANY($2)
                UNION ALL
                SELECT memory_b_id AS memory_id FROM memory_connections
                WHERE user_id = $1 AND memory_b_id = ANY($2)
            ) sub
            GROUP BY memory_id
            """,
            user_id,
            ids,
        )
        return {r["memory_id"]: int(r["cnt"]) for r in rows}

    async def find_connections(self, user_id: str, ids: list[str]) -> list[MemoryConnection]:
        """All edges with at least one endpoint in `ids`."""
        if not ids:
            return []
        rows = await self.pool.fetch(
            """
            SELECT memory_a_id, memory_b_id, weight, connection_type, reason
            FROM memory_connections
            WHERE user_id = $1
              AND (memory_a_id = ANY($2) OR memory_b_id = ANY($2))
            """,
            user_id,
            ids,
        )
        return [connection_from_row(r) for r in rows]

    async def find_implications(
        self, user_id: str, memory_ids: list[str],
    ) -> list[MemoryImplication]:
        """Implications sharing at least one source memory with `memory_ids`."""
        if not memory_ids:
            return []
        rows = await self.pool.fetch(
            """
            SELECT id, content, implication_type, implication_order, strength,
                   source_memory_ids
            FROM memory_implications
            WHERE user_id = $1 AND source_memory_ids && $2::text[]
            """,
            user_id,
            memory_ids,
        )
        return [implication_from_row(r) for r in rows]

    # --- GRAPH WRITES ---

    async def store_memory(
        self,
        user_id: str,
        content: str,
        source: str,
        source_date: date,
        contact_ids: list[str] | None = None,
        strength: float = 1.0,
    ) -> str:
        """Embed and store a memory. Returns the memory ID."""
        if source not in MEMORY_SOURCES:
            raise ValueError(f"Unknown memory source: {source}")
        memory_id = f"mem_{uuid.uuid4().hex[:12]}"
        embedding = await self.embed(content, task_type="RETRIEVAL_DOCUMENT", title=source)
        now = datetime.now(timezone.utc)

        await self.pool.execute(
            """
            INSERT INTO memories (id, user_id, content, embedding, source, source_date,
                                  contact_ids, strength, activation_count,
                                  last_activated_at, created_at)
            VALUES ($1, $2, $3, $4::halfvec, $5, $6, $7, $8, 1, $9, $9)
            """,
            memory_id,
            user_id,
            content,
            str(embedding),
            source,
            source_date,
            contact_ids or [],
            strength,
            now,
        )
        logger.info(f"Stored memory {memory_id}: {content[:80]}...")
        return memory_id

    async def store_connection(
        self,
        user_id: str,
        memory_a_id: str,
        memory_b_id: str,
        connection_type: str,
        weight: float = 0.5,
        reason: str | None = None,
    ) -> None:
        """Create an edge, or strengthen it if the pair is already connected."""
        if connection_type not in CONNECTION_TYPES:
            raise ValueError(f"Unknown connection type: {connection_type}")
        a, b = canonical_pair(memory_a_id, memory_b_id)
        await self.pool.execute(
            """
            INSERT INTO memory_connections (id, user_id, memory_a_id, memory_b_id,
                                            connection_type, weight, reason)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (memory_a_id, memory_b_id) DO UPDATE
            SET weight = memory_connections.weight + $8 * (1 - memory_connections.weight),
                last_co_activated_at = NOW()
            """,
            f"conn_{uuid.uuid4().hex[:12]}",
            user_id,
            a,
            b,
            connection_type,
            min(1.0, max(0.0, weight)),
            reason,
            CONNECTION_REDISCOVERY_DELTA,
        )

    async def store_implication(
        self,
        user_id: str,
        content: str,
        source_memory_ids: list[str],
        implication_type: str,
        implication_order: int = 1,
        strength: float = 1.0,
    ) -> str:
        if implication_type not in IMPLICATION_TYPES:
            raise ValueError(f"Unknown implication type: {implication_type}")
        if implication_order < 1:
            raise ValueError("implication_order must be >= 1")
        implication_id = f"impl_{uuid.uuid4().hex[:12]}"
        embedding = await self.embed(content, task_type="RETRIEVAL_DOCUMENT")
        await self.pool.execute(
            """
            INSERT INTO memory_implications (id, user_id, content, embedding,
                                             implication_type, implication_order,
                                             source_memory_ids, strength)
            VALUES ($1, $2, $3, $4::halfvec, $5, $6, $7, $8)
            """,
            implication_id,
            user_id,
            content,
            str(embedding),
            implication_type,
            implication_order,
            source_memory_ids,
            strength,
        )
        return implication_id

    async def reinforce(
        self,
        user_id: str,
        memory_ids: list[str],
        connections: list[MemoryConnection],
        delta: float,
        strength_gain: float = 0.02,
    ) -> None:
        """Hebbian co-activation: fire together, wire together.

        Connection weight saturates toward 1 (w += delta * (1 - w)).
        Memory strength gains diminish with activation count
        (gain / max(1, log2(activation_count + 1))).
        """
        now = datetime.now(timezone.utc)
        pairs = {canonical_pair(c.memory_a_id, c.memory_b_id) for c in connections}

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                if pairs:
                    await conn.executemany(
                        """
                        UPDATE memory_connections
                        SET weight = weight + $3 * (1 - weight),
                            last_co_activated_at = $4
                        WHERE user_id = $5 AND memory_a_id = $1 AND memory_b_id = $2
                        """,
                        [(a, b, delta, now, user_id) for a, b in sorted(pairs)],
                    )
                if memory_ids:
                    await conn.execute(
                        """
                        UPDATE memories
                        SET activation_count = activation_count + 1,
                            strength = strength + $3::float8
                                / GREATEST(1.0, LOG(2.0, (activation_count + 1)::numeric)::float8),
                            last_activated_at = $2
                        WHERE user_id = $4 AND id = ANY($1)
                        """,
                        memory_ids,
                        now,
                        strength_gain,
                        user_id,
                    )
        logger.debug(f"Reinforced {len(memory_ids)} memories, {len(pairs)} connections")

    # --- NUDGES ---

    async def upsert_nudge(
        self,
        user_id: str,
        entry_date: date,
        nudge: SparkNudge,
        retrieval_top_score: float,
        retrieval_second_score: float,
    ) -> str:
        """Persist an accepted nudge. Keyed by (user, entry_date, paragraph_hash, type).

        Re-processing the same paragraph updates the row in place and
        returns the original id.
        """
        now = datetime.now(timezone.utc)
        nudge_id = await self.pool.fetchval(
            """
            INSERT INTO journal_nudges (id, user_id, entry_date, paragraph_hash,
                                        paragraph_index, type, hook, why_now,
                                        action_prompt, evidence_memory_id,
                                        evidence_memory_date, evidence_memory_snippet,
                                        retrieval_top_score, retrieval_second_score,
                                        utility_score, model_confidence, scores,
                                        created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
                    $15, $16, $17::jsonb, $18, $18)
            ON CONFLICT (user_id, entry_date, paragraph_hash, type) DO UPDATE
            SET paragraph_index = EXCLUDED.paragraph_index,
                hook = EXCLUDED.hook,
                why_now = EXCLUDED.why_now,
                action_prompt = EXCLUDED.action_prompt,
                evidence_memory_id = EXCLUDED.evidence_memory_id,
                evidence_memory_date = EXCLUDED.evidence_memory_date,
                evidence_memory_snippet = EXCLUDED.evidence_memory_snippet,
                retrieval_top_score = EXCLUDED.retrieval_top_score,
                retrieval_second_score = EXCLUDED.retrieval_second_score,
                utility_score = EXCLUDED.utility_score,
                model_confidence = EXCLUDED.model_confidence,
                scores = EXCLUDED.scores,
                updated_at = EXCLUDED.updated_at
            RETURNING id
            """,
            nudge.id or f"nudge_{uuid.uuid4().hex[:12]}",
            user_id,
            entry_date,
            nudge.paragraph_hash,
            nudge.paragraph_index,
            nudge.type,
            nudge.hook,
            nudge.why_now,
            nudge.action_prompt,
            nudge.evidence_memory_id,
            nudge.evidence_memory_date,
            nudge.evidence_memory_snippet,
            retrieval_top_score,
            retrieval_second_score,
            nudge.scores.get("overall_utility", 0.0),
            nudge.scores.get("model_confidence", 0.0),
            json.dumps(nudge.scores),
            now,
        )
        logger.info(f"Upserted nudge {nudge_id} ({nudge.type}) for paragraph {nudge.paragraph_hash}")
        return nudge_id

    async def recent_nudges(
        self, user_id: str, limit: int = 20, skip_paragraph_hash: str | None = None,
    ) -> list[HistoricalNudge]:
        """Newest-first history. Rows for `skip_paragraph_hash` are left out so
        re-processing a paragraph is not deduplicated against itself."""
        rows = await self.pool.fetch(
            """
            SELECT type, evidence_memory_id, hook
            FROM journal_nudges
            WHERE user_id = $1
              AND ($3::text IS NULL OR paragraph_hash <> $3)
            ORDER BY created_at DESC
            LIMIT $2
            """,
            user_id,
            limit,
            skip_paragraph_hash,
        )
        return [
            HistoricalNudge(
                type=r["type"], evidence_memory_id=r["evidence_memory_id"], hook=r["hook"],
            )
            for r in rows
        ]

    async def nudge_type_counts(
        self, user_id: str, entry_date: date, skip_paragraph_hash: str | None = None,
    ) -> dict[str, int]:
        rows = await self.pool.fetch(
            """
            SELECT type, COUNT(*) AS cnt
            FROM journal_nudges
            WHERE user_id = $1 AND entry_date = $2
              AND ($3::text IS NULL OR paragraph_hash <> $3)
            GROUP BY type
            """,
            user_id,
            entry_date,
            skip_paragraph_hash,
        )
        return {r["type"]: int(r["cnt"]) for r in rows}

    # --- FEEDBACK ---

    async def record_feedback(
        self, user_id: str, nudge_id: str, feedback: str, reason: str | None,
    ) -> bool:
        """Upsert feedback on (nudge_id, user_id). False if the nudge isn't the user's."""
        async with self.pool.acquire() as conn:
            owned = await conn.fetchval(
                "SELECT 1 FROM journal_nudges WHERE id = $1 AND user_id = $2",
                nudge_id,
                user_id,
            )
            if not owned:
                return False
            await conn.execute(
                """
                INSERT INTO journal_nudge_feedback (id, nudge_id, user_id, feedback, reason)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (nudge_id, user_id) DO UPDATE
                SET feedback = EXCLUDED.feedback,
                    reason = EXCLUDED.reason,
                    created_at = NOW()
                """,
                f"fb_{uuid.uuid4().hex[:12]}",
                nudge_id,
                user_id,
                feedback,
                reason,
            )
        return True

    async def recent_feedback(self, user_id: str, limit: int = 100) -> list[dict]:
        """Newest-first {type, feedback, reason} rows for personalization."""
        rows = await self.pool.fetch(
            """
            SELECT n.type, f.feedback, f.reason
            FROM journal_nudge_feedback f
            JOIN journal_nudges n ON n.id = f.nudge_id
            WHERE f.user_id = $1
            ORDER BY f.created_at DESC
            LIMIT $2
            """,
            user_id,
            limit,
        )
        return [dict(r) for r in rows]
