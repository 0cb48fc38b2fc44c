"""Trace/Funnel recorder: one mutable diagnostic record per request.

Sections are filled in as the request advances:
  Idle → Retrieved → Generated → Judged → Gated
and the trace is returned on every exit path. A section the request
never reached stays None and is left out of to_dict().
"""

import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field

from .spark import SPARK_TYPE_TARGET_MIX, empty_type_counts

TOP_SAMPLE_COUNT = 3


@dataclass
class RetrievalStats:
    total_memories: int = 0
    strong_memories: int = 0
    top_score: float = 0.0
    second_score: float = 0.0
    has_clear_signal: bool = False
    implications: int = 0
    top_samples: list[dict] = field(default_factory=list)


@dataclass
class LlmStats:
    raw_candidates: int = 0
    judged_candidates: int = 0
    accepted: int = 0
    failure_mode: str | None = None
    min_model_confidence: float = 0.0


@dataclass
class FunnelStats:
    generated: int = 0
    judged: int = 0
    accepted: int = 0
    rejection_counts: dict[str, int] = field(default_factory=dict)
    target_mix: dict[str, float] = field(default_factory=lambda: dict(SPARK_TYPE_TARGET_MIX))
    today_type_distribution: dict[str, int] = field(default_factory=empty_type_counts)
    session_type_distribution: dict[str, int] = field(default_factory=empty_type_counts)


@dataclass
class StageTimings:
    retrieve: float = 0.0
    generate: float = 0.0
    judge: float = 0.0
    total: float = 0.0


@dataclass
class MarginTrace:
    reason: str = ""
    retrieval: RetrievalStats | None = None
    llm: LlmStats | None = None
    funnel: FunnelStats | None = None
    timings_ms: StageTimings = field(default_factory=StageTimings)

    def record_retrieval(self, memories: list, implications: list, assessment) -> None:
        samples = sorted(memories, key=lambda m: m.activation_score, reverse=True)
        self.retrieval = RetrievalStats(
            total_memories=len(memories),
            strong_memories=len(assessment.strong_memories),
            top_score=round(assessment.top_score, 4),
            second_score=round(assessment.second_score, 4),
            has_clear_signal=assessment.has_clear_signal,
            implications=len(implications),
            top_samples=[
                {
                    "id": m.id,
                    "score": round(m.activation_score, 4),
                    "hop": m.hop,
                    "date": m.source_date,
                    "snippet": m.content[:80],
                }
                for m in samples[:TOP_SAMPLE_COUNT]
            ],
        )

    def to_dict(self) -> dict:
        data = {"reason": self.reason}
        for name in ("retrieval", "llm", "funnel"):
            section = getattr(self, name)
            if section is not None:
                data[name] = asdict(section)
        data["timings_ms"] = asdict(self.timings_ms)
        return data


@contextmanager
def stage_timer(timings: StageTimings, stage: str):
    """Record the wall time of a block, in ms, onto `timings.<stage>`."""
    start = time.perf_counter()
    try:
        yield
    finally:
        setattr(timings, stage, round((time.perf_counter() - start) * 1000, 1))
