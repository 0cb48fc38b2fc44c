"""Margin pipeline: paragraph in, at most one nudge out, trace always.

    retrieve → signal gate → generate → judge → nudge gate → persist

Business outcomes (too short, no signal, model empty, gate rejected, ...)
end the request with an empty nudge list and a reason on the trace.
Only a missing user or an invalid request raises.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from .config import (
    ROLLOUT_OFF,
    ROLLOUT_SHADOW,
    MarginTuning,
    OracleConfig,
    RolloutPolicy,
    resolve_tuning,
)
from .errors import MarginAuthError, MarginRequestError
from .gate import NudgeGate, SignalGate, combine_type_counts
from .generator import CandidateGenerator
from .judge import UtilityJudge
from .personalization import load_personalization
from .retrieval import RetrievalEngine, RetrievalOptions
from .spark import SPARK_TYPES, SparkNudge, type_distribution
from .text import paragraph_hash, word_count
from .trace import FunnelStats, LlmStats, MarginTrace, stage_timer

logger = logging.getLogger("margin.pipeline")

REASON_DISABLED = "disabled"
REASON_TOO_SHORT = "too short"
REASON_GATE_REJECTED = "gate_rejected"
REASON_SHADOW = "shadow"
REASON_ACCEPTED = "accepted"
REASON_BUDGET = "request budget exceeded"
REASON_ERROR = "error"


@dataclass
class MarginRequest:
    paragraph: str
    full_entry: str = ""
    entry_date: date = field(default_factory=date.today)
    paragraph_index: int = 0
    tuning: MarginTuning = field(default_factory=MarginTuning)
    session_nudge_types: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(
        cls, payload: Any, default_tuning: MarginTuning | None = None,
    ) -> "MarginRequest":
        """Validate an untrusted request body."""
        if not isinstance(payload, dict):
            raise MarginRequestError("Request body must be an object")

        paragraph = payload.get("paragraph")
        if not isinstance(paragraph, str) or not paragraph.strip():
            raise MarginRequestError("paragraph is required")

        full_entry = payload.get("fullEntry", "")
        if not isinstance(full_entry, str):
            raise MarginRequestError("fullEntry must be a string")

        raw_date = payload.get("entryDate")
        if raw_date is None:
            entry_date = date.today()
        else:
            try:
                entry_date = date.fromisoformat(str(raw_date)[:10])
            except ValueError:
                raise MarginRequestError(f"entryDate is not an ISO date: {raw_date!r}")

        index = payload.get("paragraphIndex", 0)
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise MarginRequestError("paragraphIndex must be a non-negative integer")

        raw_tuning = payload.get("tuning")
        try:
            tuning = resolve_tuning(default_tuning if raw_tuning is None else raw_tuning)
        except KeyError as e:
            raise MarginRequestError(e.args[0])

        session = payload.get("sessionNudgeTypes") or []
        if not isinstance(session, list):
            raise MarginRequestError("sessionNudgeTypes must be a list")

        return cls(
            paragraph=paragraph.strip(),
            full_entry=full_entry,
            entry_date=entry_date,
            paragraph_index=index,
            tuning=tuning,
            session_nudge_types=[t for t in session if t in SPARK_TYPES],
        )


@dataclass
class MarginResponse:
    nudges: list[SparkNudge]
    paragraph_hash: str
    trace: MarginTrace

    def to_dict(self) -> dict:
        return {
            "nudges": [n.to_dict() for n in self.nudges],
            "paragraph_hash": self.paragraph_hash,
            "trace": self.trace.to_dict(),
        }


class MarginPipeline:
    """Stateless per request; safe to share across concurrent requests."""

    def __init__(
        self,
        store,
        oracle,
        rollout: RolloutPolicy | None = None,
        oracle_config: OracleConfig | None = None,
    ):
        self.store = store
        self.rollout = rollout or RolloutPolicy()
        self.retrieval = RetrievalEngine(store)
        self.generator = CandidateGenerator(oracle, oracle_config)
        self.judge = UtilityJudge(oracle, oracle_config)

    async def evaluate(self, user_id: str, request: MarginRequest) -> MarginResponse:
        if not user_id:
            raise MarginAuthError("Unauthorized")

        trace = MarginTrace()
        p_hash = paragraph_hash(request.paragraph)
        response = MarginResponse(nudges=[], paragraph_hash=p_hash, trace=trace)

        mode = self.rollout.resolve(user_id)
        if mode == ROLLOUT_OFF:
            trace.reason = REASON_DISABLED
            return response

        server = request.tuning.server
        if word_count(request.paragraph) < server.min_paragraph_words:
            trace.reason = REASON_TOO_SHORT
            return response

        start = time.perf_counter()
        try:
            response.nudges = await asyncio.wait_for(
                self._run(user_id, request, mode, trace, p_hash),
                timeout=server.request_budget_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Request budget of {server.request_budget_seconds}s exceeded "
                f"for paragraph {p_hash}"
            )
            trace.reason = REASON_BUDGET
        except Exception:
            logger.exception(f"Margin pipeline failed for paragraph {p_hash}")
            trace.reason = REASON_ERROR
        finally:
            trace.timings_ms.total = round((time.perf_counter() - start) * 1000, 1)

        logger.info(
            f"Paragraph {p_hash}: {trace.reason} "
            f"({len(response.nudges)} nudge(s), {trace.timings_ms.total}ms)"
        )
        return response

    async def _run(
        self,
        user_id: str,
        request: MarginRequest,
        mode: str,
        trace: MarginTrace,
        p_hash: str,
    ) -> list[SparkNudge]:
        tuning = request.tuning
        server = tuning.server

        # ── Retrieve + signal gate ──
        with stage_timer(trace.timings_ms, "retrieve"):
            result = await self.retrieval.retrieve(
                user_id,
                request.paragraph,
                RetrievalOptions(
                    max_memories=server.max_memories,
                    max_hops=server.max_hops,
                    skip_hebbian=True,
                    diversify=True,
                ),
            )

        assessment = SignalGate(server).assess(result.memories, result.implications)
        trace.record_retrieval(result.memories, result.implications, assessment)
        if not assessment.proceed:
            trace.reason = assessment.skip_reason
            return []

        trace.llm = LlmStats(min_model_confidence=server.min_model_confidence)
        trace.funnel = FunnelStats()

        # ── Generate ──
        with stage_timer(trace.timings_ms, "generate"):
            generation = await self.generator.generate(
                paragraph=request.paragraph,
                full_entry=request.full_entry,
                entry_date=request.entry_date.isoformat(),
                memories=assessment.strong_memories,
                implications=result.implications,
                server=server,
                prompt_addendum=tuning.prompt_addendum,
                prompt_override=tuning.prompt_override,
            )
        trace.llm.raw_candidates = generation.raw_count
        trace.funnel.generated = len(generation.drafts)
        if generation.failure_mode:
            trace.llm.failure_mode = generation.failure_mode
            trace.reason = generation.failure_mode
            return []

        # ── Judge ──
        with stage_timer(trace.timings_ms, "judge"):
            judgement = await self.judge.judge(request.paragraph, generation.drafts)
        trace.llm.judged_candidates = len(judgement.judged)
        trace.funnel.judged = len(judgement.judged)
        if judgement.failure_mode:
            trace.llm.failure_mode = judgement.failure_mode
            trace.reason = judgement.failure_mode
            return []

        # ── Gate ──
        history, today_counts, personalization = await asyncio.gather(
            self.store.recent_nudges(
                user_id, limit=server.history_limit, skip_paragraph_hash=p_hash,
            ),
            self.store.nudge_type_counts(
                user_id, request.entry_date, skip_paragraph_hash=p_hash,
            ),
            load_personalization(self.store, user_id),
        )
        today = combine_type_counts(today_counts)
        session = type_distribution(request.session_nudge_types)
        trace.funnel.today_type_distribution = today
        trace.funnel.session_type_distribution = session

        gated = NudgeGate(server).apply(
            judgement.judged, history, personalization, today, session,
        )
        trace.funnel.rejection_counts = gated.rejection_counts
        trace.funnel.accepted = len(gated.accepted)
        trace.llm.accepted = len(gated.accepted)
        if not gated.accepted:
            trace.llm.failure_mode = REASON_GATE_REJECTED
            trace.reason = REASON_GATE_REJECTED
            return []

        winner = gated.accepted[0]
        nudge = SparkNudge(
            id=f"nudge_{uuid.uuid4().hex[:12]}",
            type=winner.type,
            hook=winner.draft.hook,
            why_now=winner.draft.why_now,
            action_prompt=winner.draft.action_prompt,
            paragraph_index=request.paragraph_index,
            paragraph_hash=p_hash,
            evidence_memory_id=winner.draft.evidence_memory_id,
            evidence_memory_date=winner.draft.evidence_memory_date,
            evidence_memory_snippet=winner.draft.evidence_memory_snippet,
            scores=winner.scores(),
        )

        if mode == ROLLOUT_SHADOW:
            logger.info(f"Shadow nudge ({nudge.type}) for {p_hash}: {nudge.hook}")
            trace.reason = REASON_SHADOW
            return []

        nudge.id = await self.store.upsert_nudge(
            user_id,
            request.entry_date,
            nudge,
            assessment.top_score,
            assessment.second_score,
        )
        trace.reason = REASON_ACCEPTED
        return [nudge]
