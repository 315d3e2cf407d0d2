from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from quadra_proxy.errors import (
    InvalidUpstreamResponse,
    RateLimited,
    RetriesExhausted,
    TransientNetworkError,
    UpstreamFailure,
)

logger = logging.getLogger("uvicorn.error")

DEFAULT_MAX_ATTEMPTS = 6
BASE_DELAY_MS = 1000.0
JITTER_MS = 1000.0
MAX_DELAY_MS = 30000.0

UpstreamCall = Callable[[], Awaitable[dict[str, Any]]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class AttemptSucceeded:
    payload: dict[str, Any]


@dataclass(slots=True)
class AttemptRetryable:
    error: RateLimited | TransientNetworkError


@dataclass(slots=True)
class AttemptFatal:
    error: UpstreamFailure


AttemptOutcome = AttemptSucceeded | AttemptRetryable | AttemptFatal


def compute_backoff_delay_ms(
    attempt: int,
    *,
    jitter: Callable[[float, float], float] = random.uniform,
) -> float:
    """Exponential backoff with jitter for a zero-based attempt index."""

    raw = (2**attempt) * BASE_DELAY_MS + jitter(0.0, JITTER_MS)
    return min(raw, MAX_DELAY_MS)


def extract_message_content(payload: Any) -> str:
    """Return ``choices[0].message.content`` or raise ``ValueError``."""

    if not isinstance(payload, dict):
        raise ValueError("response body is not a JSON object")
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ValueError("response has no choices")
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        raise ValueError("first choice has no message")
    content = message.get("content")
    if content is None:
        raise ValueError("message content is missing")
    if not isinstance(content, str):
        raise ValueError(f"message content is {type(content).__name__}, not str")
    if content == "":
        raise ValueError("message content is empty")
    return content


class BackoffRetrier:
    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: SleepFn | None = None,
        jitter: Callable[[float, float], float] | None = None,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._jitter = jitter or random.uniform

    async def execute(
        self,
        call: UpstreamCall,
        *,
        label: str = "upstream",
        request_id: str | None = None,
        max_attempts: int | None = None,
    ) -> dict[str, Any]:
        total_attempts = max(1, int(max_attempts or self.max_attempts))
        for attempt in range(total_attempts):
            logger.info(
                "upstream_attempt request_id=%s provider=%s attempt=%d/%d",
                request_id,
                label,
                attempt + 1,
                total_attempts,
            )
            outcome = await self._run_attempt(call, label=label)

            match outcome:
                case AttemptSucceeded(payload=payload):
                    return payload
                case AttemptFatal(error=error):
                    if isinstance(error, InvalidUpstreamResponse):
                        logger.error(
                            "upstream_contract_violation request_id=%s provider=%s reason=%s",
                            request_id,
                            label,
                            error.reason,
                        )
                    else:
                        logger.warning(
                            "upstream_fatal_error request_id=%s provider=%s error_type=%s status=%d",
                            request_id,
                            label,
                            error.__class__.__name__,
                            error.status_code,
                        )
                    raise error
                case AttemptRetryable(error=error):
                    if attempt + 1 >= total_attempts:
                        logger.warning(
                            "upstream_retries_exhausted request_id=%s provider=%s attempts=%d error_type=%s",
                            request_id,
                            label,
                            total_attempts,
                            error.__class__.__name__,
                        )
                        raise RetriesExhausted(total_attempts, error) from error
                    delay_ms = self._delay_ms(attempt, error)
                    logger.info(
                        "upstream_retry_scheduled request_id=%s provider=%s attempt=%d/%d error_type=%s delay_ms=%d",
                        request_id,
                        label,
                        attempt + 1,
                        total_attempts,
                        error.__class__.__name__,
                        round(delay_ms),
                    )
                    await self._sleep(delay_ms / 1000.0)

        raise AssertionError("unreachable: retry loop exited without an outcome")

    async def _run_attempt(self, call: UpstreamCall, *, label: str) -> AttemptOutcome:
        try:
            payload = await call()
        except (RateLimited, TransientNetworkError) as exc:
            return AttemptRetryable(error=exc)
        except UpstreamFailure as exc:
            return AttemptFatal(error=exc)

        try:
            content = extract_message_content(payload)
        except ValueError as exc:
            return AttemptFatal(error=InvalidUpstreamResponse(label, str(exc)))
        if not content.strip():
            logger.warning(
                "upstream_blank_reply provider=%s content_length=%d", label, len(content)
            )
        return AttemptSucceeded(payload=payload)

    def _delay_ms(self, attempt: int, error: RateLimited | TransientNetworkError) -> float:
        if isinstance(error, RateLimited) and error.retry_after_seconds is not None:
            # Server hints are honoured but never exceed the backoff ceiling.
            return min(max(0.0, error.retry_after_seconds * 1000.0), MAX_DELAY_MS)
        return compute_backoff_delay_ms(attempt, jitter=self._jitter)
