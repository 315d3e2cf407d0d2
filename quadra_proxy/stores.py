from __future__ import annotations

import copy
import json
import logging
from typing import Any, Protocol

_redis_from_url: Any | None

try:
    from redis.asyncio import from_url as _redis_from_url
except ImportError:  # pragma: no cover - optional dependency.
    _redis_from_url = None


class LedgerStore(Protocol):
    """Document store holding ledger records as JSON-compatible dicts."""

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def set(self, key: str, value: dict[str, Any]) -> None: ...

    async def upsert(self, key: str, default: dict[str, Any]) -> dict[str, Any]: ...

    async def values(self, prefix: str) -> list[dict[str, Any]]: ...


class InMemoryLedgerStore:
    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: dict[str, Any]) -> None:
        self._data[key] = copy.deepcopy(value)

    async def upsert(self, key: str, default: dict[str, Any]) -> dict[str, Any]:
        current = self._data.setdefault(key, copy.deepcopy(default))
        return copy.deepcopy(current)

    async def values(self, prefix: str) -> list[dict[str, Any]]:
        # Insertion order doubles as creation order.
        return [
            copy.deepcopy(value)
            for key, value in self._data.items()
            if key.startswith(prefix)
        ]


class RedisLedgerStore:
    def __init__(self, redis_client: Any, *, namespace: str = "quadra:ledger:") -> None:
        self._redis = redis_client
        self._namespace = namespace

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._redis.get(self._namespace + key)
        return _decode_document(raw)

    async def set(self, key: str, value: dict[str, Any]) -> None:
        await self._redis.set(self._namespace + key, _encode_document(value))

    async def upsert(self, key: str, default: dict[str, Any]) -> dict[str, Any]:
        await self._redis.set(
            self._namespace + key, _encode_document(default), nx=True
        )
        current = await self.get(key)
        return current if current is not None else copy.deepcopy(default)

    async def values(self, prefix: str) -> list[dict[str, Any]]:
        output: list[dict[str, Any]] = []
        async for raw_key in self._redis.scan_iter(match=f"{self._namespace}{prefix}*"):
            document = _decode_document(await self._redis.get(raw_key))
            if document is not None:
                output.append(document)
        return output

    async def close(self) -> None:
        await self._redis.aclose()


def build_ledger_store(
    redis_url: str | None = None,
    logger: logging.Logger | None = None,
) -> LedgerStore:
    if not redis_url:
        return InMemoryLedgerStore()
    if _redis_from_url is None:
        if logger is not None:
            logger.warning(
                "ledger_redis_unavailable reason=%s fallback=in_memory",
                "redis package is not installed",
            )
        return InMemoryLedgerStore()
    client = _redis_from_url(redis_url, decode_responses=False)
    return RedisLedgerStore(redis_client=client)


def _encode_document(value: dict[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)


def _decode_document(raw: bytes | str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        decoded = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        payload = json.loads(decoded)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload
