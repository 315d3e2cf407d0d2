from __future__ import annotations

from typing import Any, Callable

import httpx
from fastapi.testclient import TestClient

from quadra_proxy.main import app
from quadra_proxy.retrier import BackoffRetrier
from quadra_proxy.settings import get_settings

UpstreamHandler = Callable[[httpx.Request], httpx.Response]


def set_default_test_env(monkeypatch: Any) -> None:
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-openrouter-key")
    monkeypatch.setenv("OPENAI_GPT5_NANO_KEY", "test-nano-key")
    monkeypatch.setenv("USAGE_AUDIT_LOG_ENABLED", "false")
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("RAZORPAY_KEY_ID", raising=False)
    monkeypatch.delenv("RAZORPAY_KEY_SECRET", raising=False)
    monkeypatch.delenv("PROVIDERS_CONFIG_PATH", raising=False)


def build_test_client(monkeypatch: Any, **env: Any) -> TestClient:
    set_default_test_env(monkeypatch)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app)


def install_upstream(handler: UpstreamHandler) -> list[float]:
    """Route upstream chat calls to ``handler`` and record retry delays."""

    delays: list[float] = []

    async def _record_sleep(seconds: float) -> None:
        delays.append(seconds)

    forwarder = app.state.chat_forwarder
    forwarder.upstream.client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler)
    )
    forwarder.retrier = BackoffRetrier(
        max_attempts=forwarder.retrier.max_attempts,
        sleep=_record_sleep,
    )
    return delays


def completion(content: Any, **extra: Any) -> dict[str, Any]:
    return {
        "id": "gen-123",
        "object": "chat.completion",
        "model": "openai/gpt-3.5-turbo",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        **extra,
    }
