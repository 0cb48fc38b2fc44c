"""Spreading activation: seed scoring, decay, hop propagation, diversity.

Seed activation:      A_seed = sim(query, memory) * S_eff
Effective strength:   S_eff  = strength * exp(-ln2 * days_since_activation / half_life)
Hop propagation:      A_n    = A_source * w_edge * HOP_DECAY^hop

half_life is 30 days, 60 for memories with at least one connection
(connected memories are part of a pattern and fade slower).
HOP_DECAY = 0.5, so hop-2 neighbors contribute a quarter of a hop-1 edge.

Pure functions only. The retrieval engine does the I/O.
"""

import math
import logging
from datetime import datetime, timezone

import numpy as np

from .text import token_jaccard

logger = logging.getLogger("margin.activation")

HALF_LIFE_DAYS = 30.0
CONNECTED_HALF_LIFE_DAYS = 60.0
HOP_DECAY = 0.5
MIN_PROPAGATED = 0.01

# Entity diversity (MMR)
MAX_PER_ENTITY = 3
OVER_REP_THRESHOLD = 0.3
DIVERSITY_WEIGHT = 0.3

# Near-duplicate suppression
DUPLICATE_JACCARD = 0.8
MAX_PER_CONNECTION_TYPE = 3


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity between two vectors."""
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def effective_strength(
    strength: float,
    last_activated_at: datetime | None,
    connection_count: int = 0,
    now: datetime | None = None,
) -> float:
    """Strength after exponential decay since last activation."""
    if last_activated_at is None:
        return strength
    if now is None:
        now = datetime.now(timezone.utc)
    if last_activated_at.tzinfo is None:
        last_activated_at = last_activated_at.replace(tzinfo=timezone.utc)

    days_since = max(0.0, (now - last_activated_at).total_seconds() / 86400.0)
    half_life = CONNECTED_HALF_LIFE_DAYS if connection_count > 0 else HALF_LIFE_DAYS
    return strength * math.exp(-math.log(2) / half_life * days_since)


def seed_activation(similarity: float, strength: float) -> float:
    return max(0.0, similarity) * strength


def hop_discount(hop: int) -> float:
    return HOP_DECAY ** hop


def propagate(source_activation: float, edge_weight: float, hop: int) -> float:
    """Activation reaching a neighbor `hop` steps from the seeds."""
    weight = min(1.0, max(0.0, edge_weight))
    return source_activation * weight * hop_discount(hop)


def suppress_near_duplicates(candidates: list[dict]) -> list[dict]:
    """Drop memories that repeat an already-kept one.

    Candidates must be sorted by activation_score descending. A memory is
    a near-duplicate if its content overlaps a kept memory (token Jaccard
    >= 0.8), or if it was reached through a connection type that already
    supplied MAX_PER_CONNECTION_TYPE kept memories.
    """
    kept: list[dict] = []
    per_type: dict[str, int] = {}
    for cand in candidates:
        if any(
            token_jaccard(cand["content"], k["content"]) >= DUPLICATE_JACCARD
            for k in kept
        ):
            continue
        via = cand.get("via_connection_type")
        if via and cand.get("hop", 0) > 0:
            if per_type.get(via, 0) >= MAX_PER_CONNECTION_TYPE:
                continue
            per_type[via] = per_type.get(via, 0) + 1
        kept.append(cand)
    return kept


def diversify_by_entity(candidates: list[dict], max_results: int) -> list[dict]:
    """MMR-style greedy rerank so no single contact dominates.

    Score = (1 - w) * normalized_activation + w * diversity_bonus.
    Memories without contact ids (personal reflections) are never penalized.
    Candidates must be sorted by activation_score descending.
    """
    if len(candidates) <= max_results:
        return candidates

    entity_freq: dict[str, int] = {}
    for c in candidates:
        for cid in c.get("contact_ids", []):
            entity_freq[cid] = entity_freq.get(cid, 0) + 1

    threshold = OVER_REP_THRESHOLD * len(candidates)
    over_rep = {e for e, count in entity_freq.items() if count > threshold}
    if not over_rep:
        return candidates[:max_results]

    max_activation = candidates[0]["activation_score"] or 1.0
    selected: list[dict] = []
    remaining = list(range(len(candidates)))
    entity_counts: dict[str, int] = {}

    while len(selected) < max_results and remaining:
        best_idx = -1
        best_score = -math.inf
        for idx in remaining:
            cand = candidates[idx]
            normalized = cand["activation_score"] / max_activation if max_activation > 0 else 0.0
            bonus = 1.0
            for cid in cand.get("contact_ids", []):
                if cid in over_rep:
                    current = entity_counts.get(cid, 0)
                    if current >= MAX_PER_ENTITY:
                        bonus = 0.0
                        break
                    bonus = min(bonus, 1.0 - current / MAX_PER_ENTITY)
            score = (1 - DIVERSITY_WEIGHT) * normalized + DIVERSITY_WEIGHT * bonus
            if score > best_score:
                best_score = score
                best_idx = idx

        chosen = candidates[best_idx]
        selected.append(chosen)
        remaining.remove(best_idx)
        for cid in chosen.get("contact_ids", []):
            entity_counts[cid] = entity_counts.get(cid, 0) + 1

    return selected
