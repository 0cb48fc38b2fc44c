"""Retrieval Engine: seed scoring, spreading activation, implication surfacing.

Pipeline per query:
  1. Embed the query, take the top-N memories by cosine similarity as hop-0
     seeds, weighted by decayed effective strength.
  2. Spread activation along weighted connections, hop by hop.
  3. Rank, cap, optionally diversify.
  4. Attach implications whose source memories were retrieved.
  5. Optionally reinforce what fired together (Hebbian, best-effort).

The store does all I/O; formulas live in activation.py.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .activation import (
    MAX_PER_ENTITY,
    MIN_PROPAGATED,
    diversify_by_entity,
    effective_strength,
    propagate,
    seed_activation,
    suppress_near_duplicates,
)
from .memory import Memory, MemoryConnection, canonical_pair

logger = logging.getLogger("margin.retrieval")

HEBBIAN_DELTA = 0.05
MAX_IMPLICATIONS = 10


@dataclass
class RetrievalOptions:
    max_memories: int = 20
    max_hops: int = 2
    contact_filter: str | None = None
    skip_hebbian: bool = False
    diversify: bool = True
    min_strength: float = 0.1
    seed_count: int = 10

    def __post_init__(self):
        self.max_hops = max(0, min(2, int(self.max_hops)))
        self.max_memories = max(1, int(self.max_memories))
        # Filtering to one contact already narrows the set; entity reranking would fight it
        if self.contact_filter:
            self.diversify = False


@dataclass
class RetrievedMemory:
    id: str
    content: str
    source: str
    source_date: str
    activation_score: float
    hop: int
    strength: float = 1.0
    activation_count: int = 0
    contact_ids: list[str] = field(default_factory=list)
    via_connection_type: str | None = None


@dataclass
class RetrievedImplication:
    id: str
    content: str
    strength: float
    relevance: float
    implication_type: str | None = None
    implication_order: int = 1
    source_memory_ids: list[str] = field(default_factory=list)


@dataclass
class RetrievedConnection:
    memory_a_id: str
    memory_b_id: str
    weight: float
    connection_type: str | None = None


@dataclass
class RetrievalResult:
    memories: list[RetrievedMemory] = field(default_factory=list)
    implications: list[RetrievedImplication] = field(default_factory=list)
    connections: list[RetrievedConnection] = field(default_factory=list)
    query: str = ""


def _node(memory: Memory, activation: float, hop: int, via: str | None = None) -> dict:
    return {
        "memory": memory,
        "content": memory.content,
        "contact_ids": memory.contact_ids,
        "activation_score": activation,
        "hop": hop,
        "via_connection_type": via,
    }


def _to_retrieved(node: dict) -> RetrievedMemory:
    m: Memory = node["memory"]
    return RetrievedMemory(
        id=m.id,
        content=m.content,
        source=m.source,
        source_date=m.source_date,
        activation_score=node["activation_score"],
        hop=node["hop"],
        strength=m.strength,
        activation_count=m.activation_count,
        contact_ids=list(m.contact_ids),
        via_connection_type=node["via_connection_type"],
    )


class RetrievalEngine:
    """Activation-based retrieval over one user's memory graph."""

    def __init__(self, store):
        self.store = store

    async def retrieve(
        self,
        user_id: str,
        query: str,
        options: RetrievalOptions | None = None,
    ) -> RetrievalResult:
        options = options or RetrievalOptions()
        now = datetime.now(timezone.utc)

        embedding = await self.store.embed(query, task_type="RETRIEVAL_QUERY")
        seeds = await self.store.seed_memories(
            user_id, embedding, options.seed_count, options.contact_filter,
        )
        if not seeds:
            logger.info(f"No seed memories for user {user_id}")
            return RetrievalResult(query=query)

        # ── Seeds (hop 0) ──
        counts = await self.store.connection_counts(user_id, [m.id for m, _ in seeds])
        nodes: dict[str, dict] = {}
        for memory, similarity in seeds:
            s_eff = effective_strength(
                memory.strength, memory.last_activated_at, counts.get(memory.id, 0), now,
            )
            if s_eff < options.min_strength:
                continue
            nodes[memory.id] = _node(memory, seed_activation(similarity, s_eff), 0)

        # ── Spreading activation ──
        traversed = await self._spread(user_id, nodes, options, now)

        ranked = sorted(nodes.values(), key=lambda n: n["activation_score"], reverse=True)
        if options.diversify:
            ranked = suppress_near_duplicates(ranked)
            ranked = diversify_by_entity(ranked, options.max_memories)
        ranked = ranked[:options.max_memories]

        memories = [_to_retrieved(n) for n in ranked]
        kept_ids = {m.id for m in memories}

        implications = await self._implications(user_id, memories, options.diversify)

        connections = [
            RetrievedConnection(
                memory_a_id=e.memory_a_id,
                memory_b_id=e.memory_b_id,
                weight=e.weight,
                connection_type=e.connection_type,
            )
            for e in traversed.values()
            if e.memory_a_id in kept_ids and e.memory_b_id in kept_ids
        ]

        logger.info(
            f"Retrieved {len(memories)} memories "
            f"({sum(1 for m in memories if m.hop > 0)} via spreading), "
            f"{len(implications)} implications, {len(connections)} connections"
        )

        if not options.skip_hebbian and len(memories) >= 2:
            await self._reinforce(user_id, memories, traversed, kept_ids)

        return RetrievalResult(
            memories=memories,
            implications=implications,
            connections=connections,
            query=query,
        )

    async def _spread(
        self,
        user_id: str,
        nodes: dict[str, dict],
        options: RetrievalOptions,
        now: datetime,
    ) -> dict[tuple[str, str], MemoryConnection]:
        """Propagate activation outward, mutating `nodes`. Returns traversed edges."""
        traversed: dict[tuple[str, str], MemoryConnection] = {}
        frontier = list(nodes)

        for hop in range(1, options.max_hops + 1):
            if not frontier:
                break
            frontier_set = set(frontier)
            edges = await self.store.find_connections(user_id, frontier)

            # best (activation, connection_type) reaching each neighbor this hop
            proposals: dict[str, tuple[float, str | None]] = {}
            for edge in edges:
                for src in (edge.memory_a_id, edge.memory_b_id):
                    if src not in frontier_set:
                        continue
                    dst = edge.other(src)
                    activation = propagate(nodes[src]["activation_score"], edge.weight, hop)
                    if activation < MIN_PROPAGATED:
                        continue
                    traversed[canonical_pair(edge.memory_a_id, edge.memory_b_id)] = edge
                    if activation > proposals.get(dst, (0.0, None))[0]:
                        proposals[dst] = (activation, edge.connection_type)

            new_ids = [i for i in proposals if i not in nodes]
            loaded = await self.store.get_memories(user_id, new_ids) if new_ids else {}
            new_counts = await self.store.connection_counts(user_id, list(loaded)) if loaded else {}

            next_frontier = []
            for dst, (activation, via) in proposals.items():
                existing = nodes.get(dst)
                if existing is not None:
                    # Multi-path: keep the max activation, the earlier hop stays
                    if activation > existing["activation_score"]:
                        existing["activation_score"] = activation
                    continue
                memory = loaded.get(dst)
                if memory is None:
                    continue
                if options.contact_filter and options.contact_filter not in memory.contact_ids:
                    continue
                s_eff = effective_strength(
                    memory.strength, memory.last_activated_at, new_counts.get(dst, 0), now,
                )
                if s_eff < options.min_strength:
                    continue
                nodes[dst] = _node(memory, activation, hop, via)
                next_frontier.append(dst)

            logger.debug(f"Hop {hop}: {len(edges)} edges, {len(next_frontier)} new memories")
            frontier = next_frontier

        return traversed

    async def _implications(
        self,
        user_id: str,
        memories: list[RetrievedMemory],
        diversify: bool,
    ) -> list[RetrievedImplication]:
        if not memories:
            return []
        by_id = {m.id: m for m in memories}
        rows = await self.store.find_implications(user_id, list(by_id))

        scored = []
        for imp in rows:
            sources = imp.source_memory_ids or []
            hits = [s for s in sources if s in by_id]
            if not hits:
                continue
            scored.append(RetrievedImplication(
                id=imp.id,
                content=imp.content,
                strength=imp.strength,
                relevance=len(hits) / len(sources),
                implication_type=imp.implication_type,
                implication_order=imp.implication_order,
                source_memory_ids=list(sources),
            ))
        scored.sort(key=lambda i: (i.strength, i.relevance), reverse=True)

        if diversify:
            scored = self._diversify_implications(scored, by_id)
        return scored[:MAX_IMPLICATIONS]

    @staticmethod
    def _diversify_implications(
        implications: list[RetrievedImplication],
        by_id: dict[str, RetrievedMemory],
    ) -> list[RetrievedImplication]:
        """Cap implications sharing the same set of people behind their sources."""
        kept = []
        per_signature: dict[frozenset, int] = {}
        for imp in implications:
            signature = frozenset(
                cid
                for sid in imp.source_memory_ids if sid in by_id
                for cid in by_id[sid].contact_ids
            )
            if signature:
                if per_signature.get(signature, 0) >= MAX_PER_ENTITY:
                    continue
                per_signature[signature] = per_signature.get(signature, 0) + 1
            kept.append(imp)
        return kept

    async def _reinforce(
        self,
        user_id: str,
        memories: list[RetrievedMemory],
        traversed: dict[tuple[str, str], MemoryConnection],
        kept_ids: set[str],
    ):
        edges = [
            e for e in traversed.values()
            if e.memory_a_id in kept_ids and e.memory_b_id in kept_ids
        ]
        try:
            await self.store.reinforce(
                user_id, [m.id for m in memories], edges, HEBBIAN_DELTA,
            )
        except Exception as e:
            logger.warning(f"Hebbian reinforcement failed for user {user_id}: {e}")
