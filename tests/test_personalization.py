"""Tests for feedback-driven personalization."""

import pytest

from margin.errors import MarginRequestError, NudgeNotFoundError
from margin.personalization import (
    DEFAULT_TYPE_WEIGHT,
    MAX_REASON_PENALTY,
    MIN_TYPE_WEIGHT,
    PersonalizationContext,
    build_personalization,
    load_personalization,
    record_feedback,
)


def test_defaults_without_feedback():
    ctx = build_personalization([])
    assert ctx.type_weights == {
        "tension": DEFAULT_TYPE_WEIGHT,
        "callback": DEFAULT_TYPE_WEIGHT,
        "eyebrow_raise": DEFAULT_TYPE_WEIGHT,
    }
    assert ctx.weight_for("tension") == DEFAULT_TYPE_WEIGHT


def test_up_and_down_steps():
    rows = [
        {"type": "tension", "feedback": "up", "reason": None},
        {"type": "tension", "feedback": "up", "reason": None},
        {"type": "callback", "feedback": "down", "reason": None},
    ]
    ctx = build_personalization(rows)
    assert ctx.type_weights["tension"] == pytest.approx(2.62)
    assert ctx.type_weights["callback"] == pytest.approx(2.41)
    assert ctx.type_weights["eyebrow_raise"] == pytest.approx(2.5)


def test_weights_and_penalties_are_clamped():
    rows = [{"type": "tension", "feedback": "down", "reason": "too_vague"}] * 40
    ctx = build_personalization(rows)
    assert ctx.type_weights["tension"] == MIN_TYPE_WEIGHT
    assert ctx.reason_penalties["too_vague"] == MAX_REASON_PENALTY
    assert ctx.weight_for("tension") == 0.0


def test_last_reason_is_the_newest():
    rows = [
        {"type": "callback", "feedback": "down", "reason": "not_now"},
        {"type": "callback", "feedback": "down", "reason": "bad_tone"},
    ]
    ctx = build_personalization(rows)
    assert ctx.last_reason_by_type == {"callback": "not_now"}
    assert ctx.weight_for("callback") == pytest.approx(2.5 - 0.18 - 0.15)


def test_unknown_types_are_ignored():
    ctx = build_personalization([{"type": "ghost_question", "feedback": "up", "reason": None}])
    assert "ghost_question" not in ctx.type_weights


def test_weight_for_unknown_type_uses_default():
    assert PersonalizationContext().weight_for("unknown") == DEFAULT_TYPE_WEIGHT


async def _persist_nudge(store):
    from margin.spark import SparkNudge

    nudge = SparkNudge(id="nudge_1", type="tension", hook="h", why_now="w",
                       action_prompt="a", paragraph_index=0, paragraph_hash="abc123abc123")
    return await store.upsert_nudge("u1", None, nudge, 0.5, 0.1)


@pytest.mark.asyncio
async def test_record_feedback_validation(store):
    nudge_id = await _persist_nudge(store)

    with pytest.raises(MarginRequestError):
        await record_feedback(store, "u1", nudge_id, "meh")
    with pytest.raises(MarginRequestError):
        await record_feedback(store, "u1", nudge_id, "down")
    with pytest.raises(MarginRequestError):
        await record_feedback(store, "u1", nudge_id, "down", "boring")
    with pytest.raises(MarginRequestError):
        await record_feedback(store, "u1", "", "up")
    with pytest.raises(NudgeNotFoundError):
        await record_feedback(store, "u1", "nudge_missing", "up")
    with pytest.raises(NudgeNotFoundError):
        await record_feedback(store, "someone_else", nudge_id, "up")


@pytest.mark.asyncio
async def test_record_feedback_feeds_personalization(store):
    nudge_id = await _persist_nudge(store)

    await record_feedback(store, "u1", nudge_id, "down", "too_vague")
    ctx = await load_personalization(store, "u1")
    assert ctx.type_weights["tension"] == pytest.approx(2.41)
    assert ctx.last_reason_by_type["tension"] == "too_vague"

    # a later upvote replaces the downvote and clears its reason
    await record_feedback(store, "u1", nudge_id, "up", "too_vague")
    ctx = await load_personalization(store, "u1")
    assert ctx.type_weights["tension"] == pytest.approx(2.56)
    assert ctx.last_reason_by_type == {}
    assert store.feedback[0]["reason"] is None
