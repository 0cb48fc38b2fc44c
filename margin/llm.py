"""Judgment oracle client with retry logic.

Exponential backoff with jitter on transient failures (rate limits,
timeouts, 5xx). Permanent errors (auth, bad request) fail immediately.

The oracle is the only piece of the pipeline that talks to a generative
model. Generation and judging are separate calls so each can be given
its own prompt and its own failure mode on the trace.

Usage:
    oracle = GeminiJudgmentOracle(api_key, config.oracle, config.retry)
    text = await oracle.generate(prompt)
"""

import asyncio
import logging
import random
from typing import Any, Protocol

from google import genai

from .config import OracleConfig, RetryConfig

logger = logging.getLogger("margin.llm")


def _is_transient(exc: Exception) -> bool:
    """Decide if an error is worth retrying.

    Transient: rate limits (429), server errors (5xx), timeouts, connection drops.
    Permanent: auth errors (401/403), bad request (400), not found (404).
    """
    exc_name = type(exc).__name__
    exc_str = str(exc).lower()

    # Rate limits
    if "429" in exc_str or "ResourceExhausted" in exc_name:
        return True

    # Server errors
    if any(code in exc_str for code in ("500", "502", "503", "504")):
        return True
    if any(name in exc_name for name in ("ServiceUnavailable", "InternalServerError")):
        return True

    # Timeouts
    if "timeout" in exc_str or "DeadlineExceeded" in exc_name:
        return True

    status = getattr(exc, "status_code", None) or getattr(exc, "code", None)
    if isinstance(status, int) and not isinstance(status, bool):
        if status == 429 or status >= 500:
            return True

    # Connection errors (httpx, aiohttp)
    if any(
        t in exc_name
        for t in ("ConnectionError", "ConnectError", "ReadTimeout",
                  "ConnectTimeout", "RemoteProtocolError")
    ):
        return True

    return False


def _get_retry_after(exc: Exception) -> float | None:
    """Extract Retry-After header hint if the API sent one."""
    response = getattr(exc, "response", None)
    if response is not None:
        headers = getattr(response, "headers", {}) or {}
        val = headers.get("retry-after") or headers.get("Retry-After")
        if val is not None:
            try:
                return float(val)
            except (ValueError, TypeError):
                pass
    return None


def _compute_delay(attempt: int, config: RetryConfig, exc: Exception) -> float:
    """Exponential backoff with jitter, respecting Retry-After if present."""
    retry_after = _get_retry_after(exc)
    if retry_after is not None:
        delay = min(retry_after, config.max_delay_seconds)
    else:
        delay = min(
            config.base_delay_seconds * (2 ** attempt),
            config.max_delay_seconds,
        )

    # Jitter: ±jitter fraction
    jitter_range = delay * config.jitter
    delay += random.uniform(-jitter_range, jitter_range)
    return max(0.05, delay)


async def retry_llm_call(
    fn,
    *args,
    config: RetryConfig | None = None,
    label: str = "",
    **kwargs,
) -> Any:
    """Call an async API function with exponential backoff retry.

    Args:
        fn: async callable (the actual API call)
        config: RetryConfig from runtime.yaml (uses defaults if None)
        label: tag for log messages (e.g. "generate", "embed")

    Raises:
        Immediately on permanent errors.
        Last exception after all retries exhausted.
    """
    if config is None:
        config = RetryConfig()
    label = label or getattr(fn, "__qualname__", str(fn))

    last_exc = None
    for attempt in range(1 + config.max_retries):
        try:
            return await fn(*args, **kwargs)
        except Exception as exc:
            last_exc = exc

            if not _is_transient(exc):
                logger.error(f"[{label}] permanent error: {exc}")
                raise

            if attempt >= config.max_retries:
                logger.error(
                    f"[{label}] all {config.max_retries} retries exhausted. "
                    f"Last error: {exc}"
                )
                raise

            delay = _compute_delay(attempt, config, exc)
            logger.warning(
                f"[{label}] transient error (attempt {attempt + 1}/{config.max_retries + 1}), "
                f"retrying in {delay:.1f}s: {exc}"
            )
            await asyncio.sleep(delay)

    raise last_exc


# ── JUDGMENT ORACLE ─────────────────────────────────────────────────────────


class JudgmentOracle(Protocol):
    """Anything that turns a prompt into raw model text."""

    async def generate(self, prompt: str) -> str: ...

    async def judge(self, prompt: str) -> str: ...


class GeminiJudgmentOracle:
    """Gemini-backed oracle. Both calls ask for JSON output."""

    def __init__(
        self,
        api_key: str | None,
        config: OracleConfig | None = None,
        retry_config: RetryConfig | None = None,
        client: genai.Client | None = None,
    ):
        if client is None:
            if not api_key:
                raise RuntimeError("GOOGLE_API_KEY not set, oracle unavailable")
            client = genai.Client(api_key=api_key)
        self.client = client
        self.config = config or OracleConfig()
        self.retry_config = retry_config or RetryConfig()

    async def _complete(self, prompt: str, temperature: float, label: str) -> str:
        async def _call():
            response = await self.client.aio.models.generate_content(
                model=self.config.model,
                contents=prompt,
                config=genai.types.GenerateContentConfig(
                    temperature=temperature,
                    max_output_tokens=self.config.max_output_tokens,
                    response_mime_type="application/json",
                ),
            )
            return response.text or ""

        text = await retry_llm_call(_call, config=self.retry_config, label=label)
        logger.debug(f"[{label}] {len(text)} chars from {self.config.model}")
        return text

    async def generate(self, prompt: str) -> str:
        return await self._complete(prompt, self.config.temperature, "generate")

    async def judge(self, prompt: str) -> str:
        # Judging should be repeatable; generation gets the configured temperature
        return await self._complete(prompt, 0.0, "judge")
