"""Personalization: per-type weights learned from thumbs up/down.

Rebuilt from recent feedback rows on every request; nothing is cached
between requests.

    type_weight[t]     = clamp(2.5 + 0.06 * ups[t] - 0.09 * downs[t], 0.5, 5)
    reason_penalty[r]  = min(2, 0.15 * downs_with_reason[r])
    weight_for(t)      = max(0, type_weight[t] - reason_penalty[last_down_reason[t]])
"""

import logging
from dataclasses import dataclass, field

from .errors import MarginRequestError, NudgeNotFoundError
from .spark import DOWNVOTE_REASONS, FEEDBACK_DOWN, FEEDBACK_UP, SPARK_TYPES

logger = logging.getLogger("margin.personalization")

DEFAULT_TYPE_WEIGHT = 2.5
UP_STEP = 0.06
DOWN_STEP = 0.09
MIN_TYPE_WEIGHT = 0.5
MAX_TYPE_WEIGHT = 5.0
REASON_STEP = 0.15
MAX_REASON_PENALTY = 2.0
FEEDBACK_HISTORY_LIMIT = 100


@dataclass
class PersonalizationContext:
    type_weights: dict[str, float] = field(
        default_factory=lambda: {t: DEFAULT_TYPE_WEIGHT for t in SPARK_TYPES}
    )
    reason_penalties: dict[str, float] = field(default_factory=dict)
    last_reason_by_type: dict[str, str] = field(default_factory=dict)

    def weight_for(self, nudge_type: str) -> float:
        weight = self.type_weights.get(nudge_type, DEFAULT_TYPE_WEIGHT)
        reason = self.last_reason_by_type.get(nudge_type)
        if reason:
            weight -= self.reason_penalties.get(reason, 0.0)
        return max(0.0, weight)


def build_personalization(feedback_rows: list[dict]) -> PersonalizationContext:
    """Fold newest-first {type, feedback, reason} rows into a context."""
    ctx = PersonalizationContext()
    for row in feedback_rows:
        t = row.get("type")
        if t not in ctx.type_weights:
            continue
        if row.get("feedback") == FEEDBACK_UP:
            ctx.type_weights[t] += UP_STEP
        elif row.get("feedback") == FEEDBACK_DOWN:
            ctx.type_weights[t] -= DOWN_STEP
            reason = row.get("reason")
            if reason:
                ctx.reason_penalties[reason] = min(
                    MAX_REASON_PENALTY, ctx.reason_penalties.get(reason, 0.0) + REASON_STEP,
                )
                # rows are newest first: the first reason seen is the latest
                ctx.last_reason_by_type.setdefault(t, reason)

    for t, w in ctx.type_weights.items():
        ctx.type_weights[t] = min(MAX_TYPE_WEIGHT, max(MIN_TYPE_WEIGHT, w))
    return ctx


async def load_personalization(store, user_id: str) -> PersonalizationContext:
    rows = await store.recent_feedback(user_id, limit=FEEDBACK_HISTORY_LIMIT)
    return build_personalization(rows)


async def record_feedback(
    store,
    user_id: str,
    nudge_id: str,
    feedback: str,
    reason: str | None = None,
) -> None:
    """Validate and store a thumbs up/down on one nudge."""
    if not nudge_id:
        raise MarginRequestError("nudgeId is required")
    if feedback not in (FEEDBACK_UP, FEEDBACK_DOWN):
        raise MarginRequestError(f"feedback must be 'up' or 'down', got {feedback!r}")
    if feedback == FEEDBACK_DOWN:
        if reason not in DOWNVOTE_REASONS:
            raise MarginRequestError(
                f"downvote reason must be one of {', '.join(DOWNVOTE_REASONS)}"
            )
    else:
        reason = None

    stored = await store.record_feedback(user_id, nudge_id, feedback, reason)
    if not stored:
        raise NudgeNotFoundError(f"Nudge {nudge_id} not found")
    logger.info(f"Feedback {feedback} on {nudge_id}" + (f" ({reason})" if reason else ""))
