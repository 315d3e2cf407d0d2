from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Callable, Literal
from uuid import uuid4

from quadra_proxy.errors import TransactionAlreadySettled, TransactionNotFound
from quadra_proxy.plans import DEFAULT_PLAN_KEY, PLANS, get_plan
from quadra_proxy.stores import InMemoryLedgerStore, LedgerStore

logger = logging.getLogger("uvicorn.error")

TransactionStatus = Literal["pending", "completed", "failed"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

_ENTITLEMENT_PREFIX = "entitlement:"
_TRANSACTION_PREFIX = "transaction:"


@dataclass(frozen=True, slots=True)
class UserEntitlement:
    user_id: str
    plan: str
    token_usage: int
    token_limit: int
    expires_at: datetime | None = None

    @property
    def remaining(self) -> int:
        return self.token_limit - self.token_usage

    @property
    def has_exceeded(self) -> bool:
        return self.token_usage >= self.token_limit

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "plan": self.plan,
            "tokenUsage": self.token_usage,
            "tokenLimit": self.token_limit,
            "expiresAt": _format_datetime(self.expires_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> UserEntitlement:
        return cls(
            user_id=str(payload["userId"]),
            plan=str(payload["plan"]),
            token_usage=int(payload["tokenUsage"]),
            token_limit=int(payload["tokenLimit"]),
            expires_at=_parse_datetime(payload.get("expiresAt")),
        )

    @classmethod
    def initial(cls, user_id: str) -> UserEntitlement:
        plan = PLANS[DEFAULT_PLAN_KEY]
        return cls(
            user_id=user_id,
            plan=plan.key,
            token_usage=0,
            token_limit=plan.token_limit,
        )


@dataclass(frozen=True, slots=True)
class PaymentTransaction:
    id: str
    user_id: str
    plan: str
    amount: int
    status: TransactionStatus
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "plan": self.plan,
            "amount": self.amount,
            "status": self.status,
            "createdAt": _format_datetime(self.created_at),
            "updatedAt": _format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PaymentTransaction:
        created_at = _parse_datetime(payload.get("createdAt")) or _utcnow()
        return cls(
            id=str(payload["id"]),
            user_id=str(payload["userId"]),
            plan=str(payload["plan"]),
            amount=int(payload["amount"]),
            status=payload["status"],
            created_at=created_at,
            updated_at=_parse_datetime(payload.get("updatedAt")) or created_at,
        )


class QuotaLedger:
    """Per-user token usage, plan limits and payment transactions.

    Records live in an injected ``LedgerStore``. Every read-modify-write runs
    under a lock keyed by the record it touches, so concurrent requests for
    the same user never lose increments while different users never contend.
    """

    def __init__(
        self,
        store: LedgerStore | None = None,
        *,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store: LedgerStore = store if store is not None else InMemoryLedgerStore()
        self._audit_hook = audit_hook
        self._clock = clock or _utcnow
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def store(self) -> LedgerStore:
        return self._store

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    async def get_entitlement(self, user_id: str) -> UserEntitlement:
        key = _ENTITLEMENT_PREFIX + user_id
        async with self._lock_for(key):
            document = await self._store.upsert(
                key, UserEntitlement.initial(user_id).to_dict()
            )
        return UserEntitlement.from_dict(document)

    async def record_usage(self, user_id: str, token_delta: int) -> UserEntitlement:
        if token_delta < 0:
            raise ValueError("token_delta must be a non-negative integer.")
        key = _ENTITLEMENT_PREFIX + user_id
        async with self._lock_for(key):
            current = UserEntitlement.from_dict(
                await self._store.upsert(
                    key, UserEntitlement.initial(user_id).to_dict()
                )
            )
            updated = replace(current, token_usage=current.token_usage + int(token_delta))
            await self._store.set(key, updated.to_dict())

        if updated.has_exceeded:
            logger.info(
                "quota_exhausted user_id=%s token_usage=%d token_limit=%d",
                user_id,
                updated.token_usage,
                updated.token_limit,
            )
        self._audit(
            "usage_recorded",
            user_id=user_id,
            tokens=int(token_delta),
            token_usage=updated.token_usage,
            token_limit=updated.token_limit,
        )
        return updated

    async def has_exceeded(self, user_id: str) -> bool:
        entitlement = await self.get_entitlement(user_id)
        return entitlement.has_exceeded

    async def upgrade(self, user_id: str, plan_key: str) -> UserEntitlement:
        plan = get_plan(plan_key)
        key = _ENTITLEMENT_PREFIX + user_id
        async with self._lock_for(key):
            current = UserEntitlement.from_dict(
                await self._store.upsert(
                    key, UserEntitlement.initial(user_id).to_dict()
                )
            )
            # Usage carries over across upgrades.
            updated = replace(current, plan=plan.key, token_limit=plan.token_limit)
            await self._store.set(key, updated.to_dict())

        logger.info(
            "plan_upgraded user_id=%s from_plan=%s to_plan=%s token_usage=%d token_limit=%d",
            user_id,
            current.plan,
            updated.plan,
            updated.token_usage,
            updated.token_limit,
        )
        self._audit(
            "plan_upgraded",
            user_id=user_id,
            from_plan=current.plan,
            to_plan=updated.plan,
            token_limit=updated.token_limit,
        )
        return updated

    async def create_transaction(self, user_id: str, plan_key: str) -> PaymentTransaction:
        plan = get_plan(plan_key)
        now = self._clock()
        transaction = PaymentTransaction(
            id=str(uuid4()),
            user_id=user_id,
            plan=plan.key,
            amount=plan.price,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        await self._store.set(_TRANSACTION_PREFIX + transaction.id, transaction.to_dict())
        self._audit(
            "transaction_created",
            transaction_id=transaction.id,
            user_id=user_id,
            plan=plan.key,
            amount=plan.price,
        )
        return transaction

    async def settle_transaction(
        self,
        transaction_id: str,
        status: TransactionStatus,
    ) -> PaymentTransaction:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Cannot settle a transaction as '{status}'.")
        key = _TRANSACTION_PREFIX + transaction_id
        try:
            async with self._lock_for(key):
                document = await self._store.get(key)
                if document is None:
                    raise TransactionNotFound(transaction_id)
                current = PaymentTransaction.from_dict(document)
                if current.is_terminal:
                    raise TransactionAlreadySettled(transaction_id, current.status)
                settled = replace(current, status=status, updated_at=self._clock())
                await self._store.set(key, settled.to_dict())
        finally:
            # A settled or unknown transaction never needs its lock again.
            self._locks.pop(key, None)

        self._audit(
            "transaction_settled",
            transaction_id=transaction_id,
            user_id=settled.user_id,
            status=status,
        )
        return settled

    async def get_transaction(self, transaction_id: str) -> PaymentTransaction:
        document = await self._store.get(_TRANSACTION_PREFIX + transaction_id)
        if document is None:
            raise TransactionNotFound(transaction_id)
        return PaymentTransaction.from_dict(document)

    async def list_transactions(self, user_id: str) -> list[PaymentTransaction]:
        documents = await self._store.values(_TRANSACTION_PREFIX)
        transactions = [
            PaymentTransaction.from_dict(document)
            for document in documents
            if document.get("userId") == user_id
        ]
        return sorted(transactions, key=lambda item: item.created_at)


def estimate_tokens(messages: list[dict[str, Any]], reply: str) -> int:
    """Approximate token count for one exchange as a character count.

    Input message contents and the reply are counted by length; this is a
    metering unit, not a real tokenizer.
    """

    input_tokens = sum(
        len(message.get("content"))
        for message in messages
        if isinstance(message.get("content"), str)
    )
    return input_tokens + len(reply or "")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
