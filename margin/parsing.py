"""Structured-output parsing for oracle text.

Model output is untrusted: it may wrap JSON in prose or code fences, cut
off mid-object, or return the right key with the wrong shape. The parser
never raises; it returns one of four tagged results and the caller maps
the tag to a failure mode.
"""

import json
import re
from dataclasses import dataclass, field

_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class Parsed:
    items: list[dict] = field(default_factory=list)


@dataclass
class NoJson:
    pass


@dataclass
class MalformedJson:
    error: str = ""


@dataclass
class EmptyArray:
    pass


ParseResult = Parsed | NoJson | MalformedJson | EmptyArray


def parse_structured(text: str | None, key: str) -> ParseResult:
    """Pull `{key: [...]}` out of raw model text.

    Non-object list items are dropped; if nothing survives the result is
    EmptyArray.
    """
    if not text or not text.strip():
        return NoJson()

    match = _OBJECT_RE.search(text)
    if not match:
        return NoJson()

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        return MalformedJson(error=str(e))

    if not isinstance(data, dict):
        return MalformedJson(error="top-level JSON is not an object")

    items = data.get(key)
    if not isinstance(items, list):
        return MalformedJson(error=f"missing or non-list key {key!r}")

    objects = [item for item in items if isinstance(item, dict)]
    if not objects:
        return EmptyArray()
    return Parsed(items=objects)
