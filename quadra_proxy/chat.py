from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from quadra_proxy.errors import InvalidRequest, QuotaExceeded
from quadra_proxy.ledger import QuotaLedger, UserEntitlement, estimate_tokens
from quadra_proxy.providers import ProviderRegistry
from quadra_proxy.retrier import BackoffRetrier, extract_message_content
from quadra_proxy.upstream import UpstreamChatClient

logger = logging.getLogger("uvicorn.error")

DEFAULT_USER_ID = "anonymous"


@dataclass(slots=True)
class TokenInfo:
    used: int
    total_usage: int
    limit: int
    remaining: int

    @classmethod
    def from_entitlement(cls, used: int, entitlement: UserEntitlement) -> TokenInfo:
        return cls(
            used=used,
            total_usage=entitlement.token_usage,
            limit=entitlement.token_limit,
            remaining=entitlement.remaining,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "used": self.used,
            "totalUsage": self.total_usage,
            "limit": self.limit,
            "remaining": self.remaining,
        }


@dataclass(slots=True)
class ChatResult:
    payload: dict[str, Any]
    token_info: TokenInfo
    provider_id: str
    model: str

    def to_response_body(self) -> dict[str, Any]:
        return {**self.payload, "tokenInfo": self.token_info.to_dict()}


def validate_messages(messages: Any) -> list[dict[str, Any]]:
    if not isinstance(messages, list) or not messages:
        raise InvalidRequest("Messages array is required")
    for index, message in enumerate(messages):
        if not isinstance(message, dict):
            raise InvalidRequest(f"Message {index} must be an object.")
        if not isinstance(message.get("role"), str) or not message["role"].strip():
            raise InvalidRequest(f"Message {index} is missing a role.")
        if not isinstance(message.get("content"), str):
            raise InvalidRequest(f"Message {index} content must be a string.")
    return messages


class ChatForwarder:
    """Validates a chat request, gates it on quota and forwards it upstream."""

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        retrier: BackoffRetrier,
        upstream: UpstreamChatClient,
        ledger: QuotaLedger,
    ) -> None:
        self.registry = registry
        self.retrier = retrier
        self.upstream = upstream
        self.ledger = ledger

    async def handle(
        self,
        user_id: str | None,
        provider_id: str | None,
        messages: Any,
        *,
        request_id: str | None = None,
    ) -> ChatResult:
        user_id = (user_id or "").strip() or DEFAULT_USER_ID
        validated = validate_messages(messages)
        logger.info(
            "chat_request request_id=%s user_id=%s provider=%s messages=%d",
            request_id,
            user_id,
            provider_id,
            len(validated),
        )

        entitlement = await self.ledger.get_entitlement(user_id)
        if entitlement.has_exceeded:
            logger.info(
                "quota_exceeded request_id=%s user_id=%s plan=%s token_usage=%d token_limit=%d",
                request_id,
                user_id,
                entitlement.plan,
                entitlement.token_usage,
                entitlement.token_limit,
            )
            raise QuotaExceeded(user_id, entitlement.to_dict())

        provider = self.registry.resolve(provider_id)
        payload = await self.retrier.execute(
            self.upstream.bind(provider, validated, request_id=request_id),
            label=provider.provider_id,
            request_id=request_id,
        )

        reply = extract_message_content(payload)
        used = estimate_tokens(validated, reply)
        updated = await self.ledger.record_usage(user_id, used)
        logger.info(
            "chat_completed request_id=%s user_id=%s provider=%s model=%s tokens=%d total_usage=%d",
            request_id,
            user_id,
            provider.provider_id,
            provider.model,
            used,
            updated.token_usage,
        )
        return ChatResult(
            payload=payload,
            token_info=TokenInfo.from_entitlement(used, updated),
            provider_id=provider.provider_id,
            model=provider.model,
        )
