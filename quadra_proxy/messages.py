"""Transcript storage contract for the hosting chat application.

The proxy never persists conversations itself; the application wires a
``MessageStore`` implementation and saves each user message and reply.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal, Protocol

MessageRole = Literal["user", "assistant"]


@dataclass(frozen=True, slots=True)
class ChatMessage:
    tile_id: str
    session_id: str
    role: MessageRole
    text: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class MessageStore(Protocol):
    """Transcript storage owned by the hosting application, not the proxy."""

    async def save(
        self, tile_id: str, session_id: str, role: MessageRole, text: str
    ) -> ChatMessage: ...

    async def load(self, tile_id: str, session_id: str) -> list[ChatMessage]: ...


class InMemoryMessageStore:
    def __init__(self) -> None:
        self._threads: dict[tuple[str, str], list[ChatMessage]] = defaultdict(list)

    async def save(
        self, tile_id: str, session_id: str, role: MessageRole, text: str
    ) -> ChatMessage:
        if role not in ("user", "assistant"):
            raise ValueError(f"Unsupported message role '{role}'.")
        message = ChatMessage(
            tile_id=tile_id, session_id=session_id, role=role, text=text
        )
        self._threads[(tile_id, session_id)].append(message)
        return message

    async def load(self, tile_id: str, session_id: str) -> list[ChatMessage]:
        return list(self._threads.get((tile_id, session_id), []))
