"""Candidate Generator: one oracle call, 0–3 typed drafts.

Drafts pass three filters in order; the failure mode names the filter
that removed the last survivors:
  type       : supported type
  text       : non-empty fields, hook long enough, no therapy-speak;
               the first passing draft per type wins
  confidence : modelConfidence at or above the configured floor
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from .config import OracleConfig, ServerTuning
from .context_assembly import (
    build_implications_context,
    build_memories_context,
    render_generation_prompt,
)
from .parsing import EmptyArray, MalformedJson, NoJson, parse_structured
from .spark import SPARK_TYPES, CandidateDraft
from .text import has_generic_phrasing, normalize_whitespace, trim_to_words, word_count

logger = logging.getLogger("margin.generator")

MIN_HOOK_WORDS = 4
MIN_HOOK_CHARS = 12
MAX_HOOK_WORDS = 22
MAX_WHY_NOW_WORDS = 16
MAX_ACTION_WORDS = 12
MAX_SNIPPET_WORDS = 18

# failure modes
NO_JSON = "no_json"
JSON_PARSE_ERROR = "json_parse_error"
MODEL_EMPTY = "model_empty"
FILTERED_TYPE = "filtered_type"
FILTERED_TEXT = "filtered_text"
FILTERED_CONFIDENCE = "filtered_confidence"
MODEL_TIMEOUT = "model_timeout"
MODEL_ERROR = "model_error"


@dataclass
class GenerationResult:
    drafts: list[CandidateDraft] = field(default_factory=list)
    raw_count: int = 0
    failure_mode: str | None = None


def _clamp_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if value != value:
        return 0.0
    return min(1.0, max(0.0, float(value)))


def _text(value: Any) -> str:
    return normalize_whitespace(value) if isinstance(value, str) else ""


def _optional(value: Any) -> str | None:
    text = _text(value)
    return text or None


def _draft_from_item(item: dict) -> CandidateDraft | None:
    """Apply text rules; None if the item fails them."""
    hook = _text(item.get("hook"))
    why_now = _text(item.get("whyNow"))
    action = _text(item.get("actionPrompt"))
    if not hook or not why_now or not action:
        return None
    if word_count(hook) < MIN_HOOK_WORDS or len(hook) < MIN_HOOK_CHARS:
        return None
    if has_generic_phrasing(hook):
        return None

    snippet = _optional(item.get("evidenceMemorySnippet"))
    return CandidateDraft(
        type=item["type"],
        hook=trim_to_words(hook, MAX_HOOK_WORDS),
        why_now=trim_to_words(why_now, MAX_WHY_NOW_WORDS),
        action_prompt=trim_to_words(action, MAX_ACTION_WORDS),
        model_confidence=_clamp_confidence(item.get("modelConfidence")),
        evidence_memory_id=_optional(item.get("evidenceMemoryId")),
        evidence_memory_date=_optional(item.get("evidenceMemoryDate")),
        evidence_memory_snippet=trim_to_words(snippet, MAX_SNIPPET_WORDS) if snippet else None,
    )


def normalize_candidates(items: list[dict], min_confidence: float) -> GenerationResult:
    """Filter parsed candidate objects into drafts."""
    typed = [item for item in items if item.get("type") in SPARK_TYPES]
    if not typed:
        return GenerationResult(raw_count=len(items), failure_mode=FILTERED_TYPE)

    # first draft per type that survives the text rules wins
    texted = []
    seen_types: set[str] = set()
    for item in typed:
        if item["type"] in seen_types:
            continue
        draft = _draft_from_item(item)
        if draft is None:
            continue
        seen_types.add(draft.type)
        texted.append(draft)
    if not texted:
        return GenerationResult(raw_count=len(items), failure_mode=FILTERED_TEXT)

    confident = [d for d in texted if d.model_confidence >= min_confidence]
    if not confident:
        return GenerationResult(raw_count=len(items), failure_mode=FILTERED_CONFIDENCE)

    return GenerationResult(drafts=confident, raw_count=len(items))


class CandidateGenerator:
    def __init__(self, oracle, config: OracleConfig | None = None):
        self.oracle = oracle
        self.config = config or OracleConfig()

    async def generate(
        self,
        paragraph: str,
        full_entry: str,
        entry_date: str,
        memories: list,
        implications: list,
        server: ServerTuning,
        prompt_addendum: str = "",
        prompt_override: str = "",
    ) -> GenerationResult:
        prompt = render_generation_prompt(
            entry_date=entry_date,
            full_entry=full_entry,
            paragraph=paragraph,
            memories_context=build_memories_context(memories, server.max_memories_context),
            implications_context=build_implications_context(
                implications, server.max_implications_context,
            ),
            prompt_addendum=prompt_addendum,
            prompt_override=prompt_override,
        )

        try:
            text = await asyncio.wait_for(
                self.oracle.generate(prompt), timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Generation timed out after {self.config.timeout_seconds}s")
            return GenerationResult(failure_mode=MODEL_TIMEOUT)
        except Exception as e:
            logger.warning(f"Generation call failed: {e}")
            return GenerationResult(failure_mode=MODEL_ERROR)

        parsed = parse_structured(text, "candidates")
        if isinstance(parsed, NoJson):
            return GenerationResult(failure_mode=NO_JSON)
        if isinstance(parsed, MalformedJson):
            logger.debug(f"Malformed generation output: {parsed.error}")
            return GenerationResult(failure_mode=JSON_PARSE_ERROR)
        if isinstance(parsed, EmptyArray):
            return GenerationResult(failure_mode=MODEL_EMPTY)

        result = normalize_candidates(parsed.items, server.min_model_confidence)
        logger.info(
            f"Generated {result.raw_count} raw → {len(result.drafts)} drafts"
            + (f" ({result.failure_mode})" if result.failure_mode else "")
        )
        return result
