from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from quadra_proxy.errors import (
    InvalidUpstreamResponse,
    PaymentRequired,
    RateLimited,
    TransientNetworkError,
    UpstreamError,
)
from quadra_proxy.providers import ResolvedProvider
from quadra_proxy.retrier import UpstreamCall

logger = logging.getLogger("uvicorn.error")

MAX_ERROR_BODY_CHARS = 2000


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    details: dict[str, Any] = {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    request = getattr(exc, "_request", None)
    if isinstance(request, httpx.Request):
        details["request_url"] = str(request.url)
    return details


def parse_retry_after_seconds(headers: httpx.Headers) -> float | None:
    """Read ``Retry-After`` as delta-seconds or an HTTP date; None if absent."""

    raw = headers.get("retry-after")
    if not raw:
        return None

    value = raw.strip()
    if not value:
        return None

    try:
        seconds = float(value)
        if seconds >= 0:
            return seconds
    except (TypeError, ValueError):
        pass

    try:
        retry_dt = parsedate_to_datetime(value)
        if retry_dt.tzinfo is None:
            retry_dt = retry_dt.replace(tzinfo=UTC)
        delta = (retry_dt - datetime.now(UTC)).total_seconds()
        return max(0.0, float(delta))
    except (TypeError, ValueError, IndexError):
        return None


class UpstreamChatClient:
    """Sends one chat-completions request to a resolved provider.

    Each HTTP outcome is translated into the proxy's error taxonomy so the
    retry driver never has to inspect status codes or messages.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float,
        connect_timeout_seconds: float | None = None,
        max_tokens: int = 500,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        connect_timeout = (
            max(0.1, float(connect_timeout_seconds))
            if connect_timeout_seconds is not None
            else max(0.1, min(5.0, timeout_seconds))
        )
        self.max_tokens = max_tokens
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=max(0.1, float(timeout_seconds)),
                connect=connect_timeout,
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )

    async def close(self) -> None:
        await self.client.aclose()

    def build_payload(
        self, provider: ResolvedProvider, messages: list[dict[str, Any]]
    ) -> dict[str, Any]:
        return {
            "model": provider.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
        }

    def bind(
        self,
        provider: ResolvedProvider,
        messages: list[dict[str, Any]],
        *,
        request_id: str | None = None,
    ) -> UpstreamCall:
        payload = self.build_payload(provider, messages)

        async def _call() -> dict[str, Any]:
            return await self.send(provider, payload, request_id=request_id)

        return _call

    async def send(
        self,
        provider: ResolvedProvider,
        payload: dict[str, Any],
        *,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {provider.credential}",
            "Content-Type": "application/json",
            **provider.headers,
        }
        started = time.perf_counter()
        try:
            response = await self.client.post(
                provider.endpoint, json=payload, headers=headers
            )
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "upstream_request_error request_id=%s provider=%s error_type=%s is_timeout=%s error=%s",
                request_id,
                provider.provider_id,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            raise TransientNetworkError(
                provider.provider_id, details["error_type"], details["error"]
            ) from exc

        latency_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "upstream_response request_id=%s provider=%s model=%s status=%d latency_ms=%.2f",
            request_id,
            provider.provider_id,
            provider.model,
            response.status_code,
            latency_ms,
        )

        if response.status_code == 429:
            raise RateLimited(
                provider.provider_id, parse_retry_after_seconds(response.headers)
            )
        if response.status_code == 402:
            raise PaymentRequired(provider.provider_id)
        if response.status_code >= 400:
            raise UpstreamError(
                provider.provider_id,
                response.status_code,
                response.text[:MAX_ERROR_BODY_CHARS],
            )

        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidUpstreamResponse(
                provider.provider_id, "response body is not valid JSON"
            ) from exc
        if not isinstance(body, dict):
            raise InvalidUpstreamResponse(
                provider.provider_id, "response body is not a JSON object"
            )
        return body
