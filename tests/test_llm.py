"""Tests for retry logic and the Gemini oracle wrapper."""

from types import SimpleNamespace

import pytest

from margin.config import OracleConfig, RetryConfig
from margin.llm import (
    GeminiJudgmentOracle,
    _compute_delay,
    _get_retry_after,
    _is_transient,
    retry_llm_call,
)

FAST = RetryConfig(max_retries=2, base_delay_seconds=0.01, max_delay_seconds=0.01, jitter=0.0)


class StatusError(Exception):
    def __init__(self, message, status_code=None, headers=None):
        super().__init__(message)
        self.status_code = status_code
        self.response = SimpleNamespace(headers=headers or {})


class Flaky:
    """Fails with the given errors in order, then returns `result`."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.mark.parametrize("exc,expected", [
    (Exception("429 Too Many Requests"), True),
    (Exception("503 Service Unavailable"), True),
    (Exception("request timeout"), True),
    (StatusError("boom", status_code=502), True),
    (ConnectionError("reset by peer"), True),
    (Exception("401 Unauthorized"), False),
    (ValueError("400 invalid argument"), False),
    (StatusError("nope", status_code=404), False),
])
def test_is_transient(exc, expected):
    assert _is_transient(exc) is expected


def test_retry_after_hint_is_capped():
    exc = StatusError("429", headers={"retry-after": "30"})
    assert _get_retry_after(exc) == 30.0
    config = RetryConfig(max_delay_seconds=4.0, jitter=0.0)
    assert _compute_delay(0, config, exc) == 4.0
    assert _get_retry_after(StatusError("429", headers={"Retry-After": "soon"})) is None


def test_backoff_grows_and_has_floor():
    config = RetryConfig(base_delay_seconds=0.5, max_delay_seconds=4.0, jitter=0.0)
    delays = [_compute_delay(a, config, Exception("503")) for a in range(5)]
    assert delays == [0.5, 1.0, 2.0, 4.0, 4.0]
    tiny = RetryConfig(base_delay_seconds=0.001, jitter=0.0)
    assert _compute_delay(0, tiny, Exception("503")) == 0.05


@pytest.mark.asyncio
async def test_transient_then_success():
    fn = Flaky([Exception("503 unavailable")])
    assert await retry_llm_call(fn, config=FAST, label="t") == "ok"
    assert fn.calls == 2


@pytest.mark.asyncio
async def test_permanent_error_raises_immediately():
    fn = Flaky([ValueError("400 bad request")])
    with pytest.raises(ValueError):
        await retry_llm_call(fn, config=FAST)
    assert fn.calls == 1


@pytest.mark.asyncio
async def test_retries_exhausted():
    fn = Flaky([Exception("503")] * 5)
    with pytest.raises(Exception, match="503"):
        await retry_llm_call(fn, config=FAST)
    assert fn.calls == 3


def fake_client(responses):
    calls = []

    async def generate_content(**kwargs):
        calls.append(kwargs)
        item = responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return SimpleNamespace(text=item)

    client = SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(
        generate_content=generate_content,
    )))
    return client, calls


@pytest.mark.asyncio
async def test_oracle_generate_and_judge_settings():
    client, calls = fake_client(['{"candidates": []}', None])
    oracle = GeminiJudgmentOracle(
        None, OracleConfig(model="test-model", temperature=0.4), FAST, client=client,
    )
    assert await oracle.generate("prompt one") == '{"candidates": []}'
    assert await oracle.judge("prompt two") == ""

    assert calls[0]["model"] == "test-model"
    assert calls[0]["contents"] == "prompt one"
    assert calls[0]["config"].temperature == 0.4
    assert calls[0]["config"].response_mime_type == "application/json"
    assert calls[1]["config"].temperature == 0.0


@pytest.mark.asyncio
async def test_oracle_retries_transient_failures():
    client, calls = fake_client([Exception("429 quota"), '{"judgments": []}'])
    oracle = GeminiJudgmentOracle(None, retry_config=FAST, client=client)
    assert await oracle.judge("p") == '{"judgments": []}'
    assert len(calls) == 2


def test_oracle_requires_key_or_client():
    with pytest.raises(RuntimeError):
        GeminiJudgmentOracle(None)
