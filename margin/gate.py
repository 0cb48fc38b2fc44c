"""Margin gates: the input clear-signal gate and the output nudge gate.

Signal gate: decides from retrieval scores alone whether a paragraph is
worth spending two oracle calls on. Most paragraphs stop here.

Nudge gate: personalize → quality gates → history dedup → recent-hook
penalty → type balance → rank → accept at most one. Every rejection reason
is counted for the trace.

Both gates are stateless. History, feedback and type distributions are
read from the store per request and passed in.
"""

import logging
from dataclasses import dataclass, field

from .config import ServerTuning
from .personalization import PersonalizationContext
from .spark import SPARK_TYPE_TARGET_MIX, HistoricalNudge, JudgedCandidate
from .text import hook_prefix, token_jaccard

logger = logging.getLogger("margin.gate")

NO_STRONG_MEMORIES = "no sufficiently strong memories"
NO_CLEAR_SIGNAL = "no clear signal"

# rejection reasons
MISSING_EVIDENCE_ANCHOR = "missing_evidence_anchor"
OVERALL_UTILITY = "overall_utility"
SPECIFICITY = "specificity"
ACTIONABILITY = "actionability"
STALE_REPEAT = "stale_repeat"
TYPE_OVERREPRESENTED = "type_overrepresented"
NOT_SELECTED = "not_selected"

MIX_WEIGHT = 0.2
HOOK_DUPLICATE_JACCARD = 0.8
REPETITION_PENALTY = 0.45
RECENT_REPEAT_WINDOW = 3
MAX_ACCEPTED = 1


# ── SIGNAL GATE ─────────────────────────────────────────────────────────────


@dataclass
class SignalAssessment:
    strong_memories: list = field(default_factory=list)
    top_score: float = 0.0
    second_score: float = 0.0
    has_clear_signal: bool = False
    skip_reason: str | None = None

    @property
    def proceed(self) -> bool:
        return self.skip_reason is None


class SignalGate:
    """Clear-signal test over a retrieval result."""

    def __init__(self, server: ServerTuning):
        self.server = server

    def assess(self, memories: list, implications: list) -> SignalAssessment:
        s = self.server
        scores = sorted((m.activation_score for m in memories), reverse=True)
        top = scores[0] if scores else 0.0
        second = scores[1] if len(scores) > 1 else 0.0
        strong = [m for m in memories if m.activation_score >= s.min_activation_score]

        clear = top >= s.strong_top_override or (
            top >= s.min_top_activation
            and (top - second >= s.min_top_gap or len(strong) >= 2)
        )

        reason = None
        if not strong and not implications:
            reason = NO_STRONG_MEMORIES
        elif not clear:
            reason = NO_CLEAR_SIGNAL if strong else NO_STRONG_MEMORIES

        logger.debug(
            f"Signal: top={top:.3f} second={second:.3f} strong={len(strong)} "
            f"clear={clear} → {reason or 'proceed'}"
        )
        return SignalAssessment(
            strong_memories=strong,
            top_score=top,
            second_score=second,
            has_clear_signal=clear,
            skip_reason=reason,
        )


# ── NUDGE GATE ──────────────────────────────────────────────────────────────


@dataclass
class GateResult:
    accepted: list[JudgedCandidate] = field(default_factory=list)
    rejection_counts: dict[str, int] = field(default_factory=dict)


def combine_type_counts(*distributions: dict[str, int]) -> dict[str, int]:
    """Per-type max across distributions.

    Today's persisted nudges and the client's session list usually describe
    the same nudges, so they are merged by max rather than summed.
    """
    combined = {t: 0 for t in SPARK_TYPE_TARGET_MIX}
    for dist in distributions:
        for t, n in (dist or {}).items():
            if t in combined:
                combined[t] = max(combined[t], n)
    return combined


def mix_deficit(nudge_type: str, counts: dict[str, int]) -> float:
    """How far below its target share a type is (negative when above)."""
    total = sum(counts.values())
    expected = SPARK_TYPE_TARGET_MIX[nudge_type] * max(total, 1)
    return expected - counts.get(nudge_type, 0)


def is_stale_repeat(candidate: JudgedCandidate, history: list[HistoricalNudge]) -> bool:
    """Same type and either the same evidence memory or a near-identical hook."""
    for past in history:
        if past.type != candidate.type:
            continue
        if candidate.draft.evidence_memory_id and (
            past.evidence_memory_id == candidate.draft.evidence_memory_id
        ):
            return True
        if token_jaccard(past.hook, candidate.draft.hook) >= HOOK_DUPLICATE_JACCARD:
            return True
    return False


def repeats_recent_hook(candidate: JudgedCandidate, history: list[HistoricalNudge]) -> bool:
    """Hook opens with the same four words as one of the latest nudges.

    History is newest first. A match only lowers rank.
    """
    prefix = hook_prefix(candidate.draft.hook)
    return any(
        hook_prefix(past.hook) == prefix for past in history[:RECENT_REPEAT_WINDOW]
    )


class NudgeGate:
    def __init__(self, server: ServerTuning):
        self.server = server

    def _quality_failures(self, c: JudgedCandidate) -> list[str]:
        s = self.server
        failures = []
        if not c.draft.has_evidence_anchor:
            failures.append(MISSING_EVIDENCE_ANCHOR)
        if c.overall_utility < s.min_overall_utility:
            failures.append(OVERALL_UTILITY)
        if c.specificity_score < s.min_specificity_score:
            failures.append(SPECIFICITY)
        if c.actionability_score < s.min_actionability_score:
            failures.append(ACTIONABILITY)
        return failures

    def apply(
        self,
        candidates: list[JudgedCandidate],
        history: list[HistoricalNudge],
        personalization: PersonalizationContext,
        today_counts: dict[str, int] | None = None,
        session_counts: dict[str, int] | None = None,
    ) -> GateResult:
        rejections: dict[str, int] = {}

        def reject(reason: str):
            rejections[reason] = rejections.get(reason, 0) + 1

        counts = combine_type_counts(today_counts or {}, session_counts or {})
        total = sum(counts.values())

        survivors = []
        for c in candidates:
            c.personalization_weight = personalization.weight_for(c.type)
            c.rank_score = max(0.0, c.overall_utility * c.personalization_weight)

            failures = self._quality_failures(c)
            if failures:
                for f in failures:
                    reject(f)
                continue

            if is_stale_repeat(c, history):
                reject(STALE_REPEAT)
                continue

            if repeats_recent_hook(c, history):
                c.rank_score = max(0.0, c.rank_score - REPETITION_PENALTY)

            if c.type in SPARK_TYPE_TARGET_MIX:
                if total >= self.server.type_balance_min_sample:
                    share = counts[c.type] / total
                    limit = SPARK_TYPE_TARGET_MIX[c.type] + self.server.max_type_share_excess
                    if share > limit:
                        reject(TYPE_OVERREPRESENTED)
                        continue
                c.rank_score = max(0.0, c.rank_score + MIX_WEIGHT * mix_deficit(c.type, counts))

            survivors.append(c)

        survivors.sort(key=lambda c: c.rank_score, reverse=True)
        accepted = survivors[:MAX_ACCEPTED]
        for _ in survivors[MAX_ACCEPTED:]:
            reject(NOT_SELECTED)

        logger.info(
            f"Gate: {len(candidates)} in → {len(accepted)} accepted, rejections={rejections}"
        )
        return GateResult(accepted=accepted, rejection_counts=rejections)
