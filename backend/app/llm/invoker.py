"""
AI Analysis Invoker — one unit in, one AnalysisRecord out
══════════════════════════════════════════════════════════

Retry policy:
  RateLimitedError       → wait, retry
  TransientServiceError  → wait, retry
  PermanentServiceError  → fail immediately (no retry)
  attempts exhausted     → RetriesExhaustedError

  wait(attempt) = min(base × 2^(attempt-1), max_delay) + uniform(0, jitter)
  A server retry hint (Retry-After) raises the wait to at least the hint.

Parsing:
  1. json.loads on the whole response
  2. fenced ```json block, then the outermost {...} fragment
  3. ResponseParseError (a unit failure; the service is not called again)

Pacing between units of the same document is separate from backoff;
see pacing_delay().
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from app.core.config import PipelineLimits
from app.core.exceptions import (
    AnalysisServiceError,
    ResponseParseError,
    RetriesExhaustedError,
)
from app.llm.service import AnalysisService
from app.schemas.records import AnalysisRecord

logger = logging.getLogger(__name__)

Emit = Callable[[str, dict], None]
Sleep = Callable[[float], Awaitable[Any]]

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class UnitAnalysis:
    record:        AnalysisRecord
    input_tokens:  int
    output_tokens: int
    attempts:      int = 1


def parse_record_payload(text: str) -> dict[str, Any]:
    """Return the JSON object in an AI response, tolerating fences and chatter."""
    try:
        data = json.loads(text.strip())
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        return data

    candidates: list[str] = []
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    braces = _OBJECT_RE.search(text)
    if braces:
        candidates.append(braces.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise ResponseParseError("No JSON object in AI response", raw_text=text[:500])


def pacing_delay(unit_size: int, limits: PipelineLimits) -> float:
    """Fixed gap inserted after a unit, longer after large ones."""
    if unit_size > limits.large_unit_bytes:
        return limits.large_unit_delay
    return limits.inter_unit_delay


class AnalysisInvoker:
    """
    Wraps an AnalysisService with backoff, parsing and token accounting.

    Usage:
        invoker = AnalysisInvoker(BedrockAnalysisService.from_settings())
        result  = await invoker.analyze_unit(text, "text", instructions)
    """

    def __init__(
        self,
        service:      AnalysisService,
        max_attempts: int   = 5,
        base_delay:   float = 2.0,
        max_delay:    float = 60.0,
        jitter:       float = 1.0,
        sleep:        Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._service = service
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self._sleep = sleep

    @classmethod
    def from_settings(cls, service: AnalysisService, sleep: Sleep = asyncio.sleep) -> "AnalysisInvoker":
        from app.core.config import settings
        return cls(
            service,
            max_attempts=settings.ai_max_attempts,
            base_delay=settings.ai_retry_base_delay,
            max_delay=settings.ai_retry_max_delay,
            jitter=settings.ai_retry_jitter,
            sleep=sleep,
        )

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Wait before retrying after failed attempt number `attempt` (1-based)."""
        delay = min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay + random.uniform(0, self._jitter)

    async def analyze_unit(
        self,
        content:             str | bytes,
        content_kind:        str,
        system_instructions: str,
        label:               str = "",
        emit:                Emit | None = None,
    ) -> UnitAnalysis:
        last_error: AnalysisServiceError | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await self._service.analyze(content, content_kind, system_instructions)
            except AnalysisServiceError as exc:
                last_error = exc
                if not exc.retryable:
                    logger.error("Invoker | permanent error unit=%s: %s", label, exc)
                    raise
                if attempt == self._max_attempts:
                    break

                delay = self.backoff_delay(attempt, exc.retry_after)
                logger.warning(
                    "Invoker | retry unit=%s attempt=%d/%d delay=%.1fs error=%s %s",
                    label, attempt, self._max_attempts, delay, type(exc).__name__, exc,
                )
                if emit is not None:
                    emit("retry", {
                        "unit":     label,
                        "attempt":  attempt,
                        "delay":    round(delay, 2),
                        "error":    type(exc).__name__,
                    })
                await self._sleep(delay)
                continue

            payload = parse_record_payload(response.text)
            record = AnalysisRecord.from_payload(payload).model_copy(update={
                "tokens_input":  response.input_tokens,
                "tokens_output": response.output_tokens,
            })
            return UnitAnalysis(
                record=record,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                attempts=attempt,
            )

        logger.error(
            "Invoker | retries exhausted unit=%s attempts=%d error=%s",
            label, self._max_attempts, last_error,
        )
        raise RetriesExhaustedError(last_error, self._max_attempts)
