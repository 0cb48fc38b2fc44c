"""Text helpers: word counts, trimming, hashing, overlap, generic phrasing.

Whitespace-split word counts are good enough for paragraph thresholds
and hook length caps. No tokenizer dependency.
"""

import hashlib
import re

# Phrases that make a hook read like a therapist, not a friend who remembers
GENERIC_PHRASES = [
    r"\bperhaps\b",
    r"\bhave you considered\b",
    r"\bwhat does that tell you\b",
    r"\bhow did that (?:make you )?feel\b",
    r"\bit might be worth\b",
    r"\bit sounds like\b",
    r"\bremember to be kind to yourself\b",
]

_WORD_RE = re.compile(r"[a-z0-9']+")


def normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def word_count(text: str) -> int:
    if not text:
        return 0
    return len(text.split())


def trim_to_words(text: str, max_words: int) -> str:
    """Cap text at max_words, ending the cut version with a period."""
    words = text.split()
    if len(words) <= max_words:
        return text.strip()
    return " ".join(words[:max_words]).rstrip(".,;:") + "."


def paragraph_hash(paragraph: str) -> str:
    """Stable 12-char id for a paragraph (trimmed text, md5)."""
    return hashlib.md5(paragraph.strip().encode()).hexdigest()[:12]


def content_tokens(text: str) -> set[str]:
    return set(_WORD_RE.findall((text or "").lower()))


def token_jaccard(a: str, b: str) -> float:
    ta, tb = content_tokens(a), content_tokens(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


def hook_prefix(hook: str, n_words: int = 4) -> str:
    return " ".join(normalize_whitespace(hook).lower().split()[:n_words])


def has_generic_phrasing(text: str) -> bool:
    lowered = text.lower()
    return any(re.search(p, lowered) for p in GENERIC_PHRASES)
