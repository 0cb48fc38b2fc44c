"""Utility Judge: second oracle call, per-axis scores for each draft."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from .config import OracleConfig
from .context_assembly import render_judge_prompt
from .parsing import EmptyArray, MalformedJson, NoJson, parse_structured
from .spark import CandidateDraft, JudgedCandidate

logger = logging.getLogger("margin.judge")

MAX_SCORE = 5.0

JUDGE_NO_JSON = "judge_no_json"
JUDGE_PARSE_ERROR = "judge_parse_error"
JUDGE_EMPTY = "judge_empty"
JUDGE_TIMEOUT = "judge_timeout"
JUDGE_ERROR = "judge_error"


@dataclass
class JudgeResult:
    judged: list[JudgedCandidate] = field(default_factory=list)
    failure_mode: str | None = None


def clamp_score(value: Any) -> float:
    """Clamp to [0, 5]; missing, non-numeric, bool or NaN → 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if value != value:
        return 0.0
    return min(MAX_SCORE, max(0.0, float(value)))


def apply_judgments(drafts: list[CandidateDraft], items: list[dict]) -> list[JudgedCandidate]:
    """Attach scores to drafts by index. Drafts nobody judged are dropped."""
    by_index: dict[int, dict] = {}
    for item in items:
        idx = item.get("index")
        if isinstance(idx, bool) or not isinstance(idx, int):
            continue
        if idx < 0 or idx >= len(drafts) or idx in by_index:
            continue
        by_index[idx] = item

    judged = []
    for idx in sorted(by_index):
        item = by_index[idx]
        judged.append(JudgedCandidate(
            draft=drafts[idx],
            tension_score=clamp_score(item.get("tension")),
            actionability_score=clamp_score(item.get("actionability")),
            novelty_score=clamp_score(item.get("novelty")),
            specificity_score=clamp_score(item.get("specificity")),
            overall_utility=clamp_score(item.get("overallUtility")),
        ))
    return judged


class UtilityJudge:
    def __init__(self, oracle, config: OracleConfig | None = None):
        self.oracle = oracle
        self.config = config or OracleConfig()

    async def judge(self, paragraph: str, drafts: list[CandidateDraft]) -> JudgeResult:
        prompt = render_judge_prompt(paragraph, drafts)
        try:
            text = await asyncio.wait_for(
                self.oracle.judge(prompt), timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Judge timed out after {self.config.timeout_seconds}s")
            return JudgeResult(failure_mode=JUDGE_TIMEOUT)
        except Exception as e:
            logger.warning(f"Judge call failed: {e}")
            return JudgeResult(failure_mode=JUDGE_ERROR)

        parsed = parse_structured(text, "judgments")
        if isinstance(parsed, NoJson):
            return JudgeResult(failure_mode=JUDGE_NO_JSON)
        if isinstance(parsed, MalformedJson):
            logger.debug(f"Malformed judge output: {parsed.error}")
            return JudgeResult(failure_mode=JUDGE_PARSE_ERROR)
        if isinstance(parsed, EmptyArray):
            return JudgeResult(failure_mode=JUDGE_EMPTY)

        judged = apply_judgments(drafts, parsed.items)
        if not judged:
            return JudgeResult(failure_mode=JUDGE_EMPTY)
        logger.info(f"Judged {len(judged)}/{len(drafts)} drafts")
        return JudgeResult(judged=judged)
