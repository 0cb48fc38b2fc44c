"""Context Assembly: memory/implication context and oracle prompts.

Two prompts per request:
  generate: paragraph + strongest memories + patterns → 0–3 typed drafts
  judge   : paragraph + numbered drafts → per-axis utility scores

A user-supplied override template replaces the generation prompt wholesale
(placeholders below); an addendum is appended as an extra directive.
"""

import logging

from .spark import CandidateDraft, SPARK_TYPES

logger = logging.getLogger("margin.context")

ENTRY_MAX_CHARS = 1500
EMPTY_SECTION = "(none)"

PLACEHOLDERS = ("{{entryDate}}", "{{entry}}", "{{paragraph}}", "{{memories}}", "{{implications}}")


def build_memories_context(memories: list, limit: int) -> str:
    """Strongest `limit` memories as `[YYYY-MM-DD] (id) content` lines."""
    ranked = sorted(memories, key=lambda m: m.activation_score, reverse=True)[:limit]
    return "\n".join(f"[{m.source_date}] ({m.id}) {m.content}" for m in ranked)


def build_implications_context(implications: list, limit: int) -> str:
    lines = []
    for imp in implications[:limit]:
        label = imp.implication_type or "pattern"
        lines.append(f"- ({label}) {imp.content}")
    return "\n".join(lines)


def truncate_entry(entry: str) -> str:
    if len(entry) <= ENTRY_MAX_CHARS:
        return entry
    return entry[:ENTRY_MAX_CHARS] + "..."


def render_generation_prompt(
    entry_date: str,
    full_entry: str,
    paragraph: str,
    memories_context: str,
    implications_context: str,
    prompt_addendum: str = "",
    prompt_override: str = "",
) -> str:
    """Render the draft-generation prompt (or the user's override template)."""
    entry = truncate_entry(full_entry or paragraph)
    memories_context = memories_context or EMPTY_SECTION
    implications_context = implications_context or EMPTY_SECTION

    if prompt_override.strip():
        logger.debug("Using prompt override template")
        return (
            prompt_override
            .replace("{{entryDate}}", entry_date)
            .replace("{{entry}}", entry)
            .replace("{{paragraph}}", paragraph)
            .replace("{{memories}}", memories_context)
            .replace("{{implications}}", implications_context)
        )

    sections = [
        "You write margin notes for a personal journal. You can see the writer's "
        "past memories. Produce at most one note per type, and usually none.",
        "",
        f"TODAY: {entry_date}",
        "",
        "[ENTRY SO FAR]",
        entry,
        "",
        "[PARAGRAPH JUST WRITTEN]",
        f'"{paragraph}"',
        "",
        "[PAST MEMORIES]",
        memories_context,
        "",
        "[PATTERNS]",
        implications_context,
        "",
        "[NOTE TYPES]",
        "tension: what they just wrote contradicts or complicates a specific past memory.",
        "callback: the paragraph quietly repeats a specific past moment.",
        "eyebrow_raise: a concrete detail a friend who remembers would raise an eyebrow at.",
        "",
        "[RULES]",
        "- The memory must directly relate to the paragraph's actual point, not just share a person or topic.",
        "- Anchor every note to one memory: its id, its date and a short snippet.",
        "- hook: one sentence, under 22 words. whyNow: under 16 words. actionPrompt: under 12 words.",
        "- No therapy-speak. No \"perhaps\". No \"have you considered\". No \"what does that tell you\".",
        "- When in doubt, return nothing. Empty is always better than forced.",
    ]

    if prompt_addendum.strip():
        sections += ["", "[EXTRA DIRECTIVE FROM USER]", prompt_addendum.strip()]

    types = " | ".join(f'"{t}"' for t in SPARK_TYPES)
    sections += [
        "",
        "JSON only:",
        '{"candidates": [{"type": ' + types + ', "hook": "...", "whyNow": "...", '
        '"actionPrompt": "...", "evidenceMemoryId": "...", "evidenceMemoryDate": "YYYY-MM-DD", '
        '"evidenceMemorySnippet": "...", "modelConfidence": 0.0}]}',
        "",
        'Nothing worth saying? {"candidates": []}',
    ]
    return "\n".join(sections)


def render_judge_prompt(paragraph: str, drafts: list[CandidateDraft]) -> str:
    """Render the utility-judging prompt; drafts are referenced by index."""
    lines = []
    for i, d in enumerate(drafts):
        evidence = d.evidence_memory_snippet or EMPTY_SECTION
        lines.append(
            f"{i}. [{d.type}] {d.hook}\n"
            f"   why now: {d.why_now}\n"
            f"   action: {d.action_prompt}\n"
            f"   evidence ({d.evidence_memory_date or 'undated'}): {evidence}"
        )

    sections = [
        "You grade margin notes written for someone's journal. Be harsh: most notes "
        "are not worth interrupting the writer for.",
        "",
        "[PARAGRAPH]",
        f'"{paragraph}"',
        "",
        "[CANDIDATE NOTES]",
        "\n".join(lines),
        "",
        "Score each note from 0 to 5 on:",
        "- tension: does it surface a real contradiction or pull?",
        "- actionability: could the writer do something with it right now?",
        "- novelty: would the writer not have noticed this alone?",
        "- specificity: is it anchored to concrete people, dates or events?",
        "- overallUtility: would a thoughtful friend actually say this?",
        "",
        "JSON only:",
        '{"judgments": [{"index": 0, "tension": 0, "actionability": 0, "novelty": 0, '
        '"specificity": 0, "overallUtility": 0}]}',
    ]
    return "\n".join(sections)
