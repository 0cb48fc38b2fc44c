"""Spark nudges: types, drafts, judged candidates, history rows.

A spark is one short, evidence-linked observation shown in the journal
margin. Three kinds:
  tension      : what the writer just said rubs against something past
  callback     : a past moment that this paragraph quietly repeats
  eyebrow_raise: a detail a friend would raise an eyebrow at
"""

from dataclasses import asdict, dataclass, field

TENSION = "tension"
CALLBACK = "callback"
EYEBROW_RAISE = "eyebrow_raise"
SPARK_TYPES = (TENSION, CALLBACK, EYEBROW_RAISE)

SPARK_TYPE_TARGET_MIX = {
    TENSION: 0.6,
    CALLBACK: 0.25,
    EYEBROW_RAISE: 0.15,
}

FEEDBACK_UP = "up"
FEEDBACK_DOWN = "down"

DOWNVOTE_REASONS = (
    "too_vague",
    "wrong_connection",
    "already_obvious",
    "bad_tone",
    "not_now",
)


@dataclass
class CandidateDraft:
    type: str
    hook: str
    why_now: str
    action_prompt: str
    model_confidence: float
    evidence_memory_id: str | None = None
    evidence_memory_date: str | None = None
    evidence_memory_snippet: str | None = None

    @property
    def has_evidence_anchor(self) -> bool:
        return bool(
            (self.evidence_memory_id or self.evidence_memory_date)
            and self.evidence_memory_snippet
        )


@dataclass
class JudgedCandidate:
    draft: CandidateDraft
    tension_score: float = 0.0
    actionability_score: float = 0.0
    novelty_score: float = 0.0
    specificity_score: float = 0.0
    overall_utility: float = 0.0
    personalization_weight: float = 0.0
    rank_score: float = 0.0

    @property
    def type(self) -> str:
        return self.draft.type

    def scores(self) -> dict[str, float]:
        return {
            "overall_utility": self.overall_utility,
            "tension": self.tension_score,
            "actionability": self.actionability_score,
            "novelty": self.novelty_score,
            "specificity": self.specificity_score,
            "model_confidence": self.draft.model_confidence,
        }


@dataclass(frozen=True)
class HistoricalNudge:
    type: str
    evidence_memory_id: str | None
    hook: str


@dataclass
class SparkNudge:
    id: str
    type: str
    hook: str
    why_now: str
    action_prompt: str
    paragraph_index: int
    paragraph_hash: str
    evidence_memory_id: str | None = None
    evidence_memory_date: str | None = None
    evidence_memory_snippet: str | None = None
    scores: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def empty_type_counts() -> dict[str, int]:
    return {t: 0 for t in SPARK_TYPES}


def type_distribution(types) -> dict[str, int]:
    """Count nudge types; unknown types are ignored."""
    counts = empty_type_counts()
    for t in types:
        if t in counts:
            counts[t] += 1
    return counts
