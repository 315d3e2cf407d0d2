from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from quadra_proxy.errors import (
    TransactionAlreadySettled,
    TransactionNotFound,
    UnknownPlan,
)
from quadra_proxy.ledger import QuotaLedger, estimate_tokens
from quadra_proxy.plans import PLANS


class _StepClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


def test_plan_token_limits_increase_with_price() -> None:
    ordered = [PLANS[key] for key in ("FREE", "COLLEGE", "LITE", "PRO")]
    prices = [plan.price for plan in ordered]
    limits = [plan.token_limit for plan in ordered]
    assert prices == sorted(prices)
    assert all(low < high for low, high in zip(limits, limits[1:]))
    assert PLANS["FREE"].token_limit == 100_000
    assert PLANS["PRO"].price_minor_units == 59_900


def test_get_entitlement_lazily_creates_free_plan_and_is_idempotent() -> None:
    ledger = QuotaLedger()

    async def _run() -> None:
        first = await ledger.get_entitlement("new-user")
        second = await ledger.get_entitlement("new-user")
        assert first == second
        assert first.plan == "FREE"
        assert first.token_usage == 0
        assert first.token_limit == 100_000
        assert first.expires_at is None

    asyncio.run(_run())


def test_record_usage_is_additive_and_not_clamped() -> None:
    ledger = QuotaLedger()

    async def _run() -> None:
        await ledger.record_usage("u1", 60_000)
        updated = await ledger.record_usage("u1", 70_000)
        assert updated.token_usage == 130_000
        assert updated.remaining == -30_000
        assert await ledger.has_exceeded("u1") is True

    asyncio.run(_run())


def test_record_usage_rejects_negative_delta() -> None:
    ledger = QuotaLedger()
    with pytest.raises(ValueError):
        asyncio.run(ledger.record_usage("u1", -1))


def test_has_exceeded_is_true_exactly_at_limit() -> None:
    ledger = QuotaLedger()

    async def _run() -> None:
        await ledger.record_usage("u1", 99_999)
        assert await ledger.has_exceeded("u1") is False
        await ledger.record_usage("u1", 1)
        assert await ledger.has_exceeded("u1") is True

    asyncio.run(_run())


def test_concurrent_usage_updates_do_not_lose_increments() -> None:
    ledger = QuotaLedger()

    async def _run() -> None:
        await asyncio.gather(*(ledger.record_usage("busy", 3) for _ in range(200)))
        entitlement = await ledger.get_entitlement("busy")
        assert entitlement.token_usage == 600

    asyncio.run(_run())


def test_upgrade_keeps_usage_and_clears_exceeded_state() -> None:
    ledger = QuotaLedger()

    async def _run() -> None:
        await ledger.record_usage("u1", 100_050)
        assert await ledger.has_exceeded("u1") is True

        upgraded = await ledger.upgrade("u1", "LITE")
        assert upgraded.plan == "LITE"
        assert upgraded.token_limit == 2_000_000
        assert upgraded.token_usage == 100_050
        assert await ledger.has_exceeded("u1") is False

    asyncio.run(_run())


def test_upgrade_rejects_unknown_plan() -> None:
    ledger = QuotaLedger()
    with pytest.raises(UnknownPlan):
        asyncio.run(ledger.upgrade("u1", "PLATINUM"))


def test_transaction_settles_once_and_advances_updated_at() -> None:
    ledger = QuotaLedger(clock=_StepClock())

    async def _run() -> None:
        created = await ledger.create_transaction("u1", "COLLEGE")
        assert created.status == "pending"
        assert created.amount == 99

        settled = await ledger.settle_transaction(created.id, "completed")
        assert settled.status == "completed"
        assert settled.updated_at > created.updated_at
        assert settled.created_at == created.created_at

        with pytest.raises(TransactionAlreadySettled):
            await ledger.settle_transaction(created.id, "failed")
        stored = await ledger.get_transaction(created.id)
        assert stored.status == "completed"

    asyncio.run(_run())


def test_settle_unknown_transaction_raises_not_found() -> None:
    ledger = QuotaLedger()
    with pytest.raises(TransactionNotFound):
        asyncio.run(ledger.settle_transaction("missing", "completed"))


def test_settled_transactions_do_not_keep_locks() -> None:
    ledger = QuotaLedger()

    async def _run() -> None:
        await ledger.get_entitlement("u1")
        transactions = [
            await ledger.create_transaction("u1", "LITE") for _ in range(20)
        ]
        results = await asyncio.gather(
            *(
                ledger.settle_transaction(transaction.id, "completed")
                for transaction in transactions
                for _ in range(2)
            ),
            return_exceptions=True,
        )
        settled = [item for item in results if not isinstance(item, Exception)]
        conflicts = [
            item for item in results if isinstance(item, TransactionAlreadySettled)
        ]
        assert len(settled) == 20
        assert len(conflicts) == 20

        with pytest.raises(TransactionNotFound):
            await ledger.settle_transaction("missing", "failed")

    asyncio.run(_run())
    assert list(ledger._locks) == ["entitlement:u1"]


def test_settle_rejects_non_terminal_status() -> None:
    ledger = QuotaLedger()

    async def _run() -> None:
        created = await ledger.create_transaction("u1", "LITE")
        with pytest.raises(ValueError):
            await ledger.settle_transaction(created.id, "pending")

    asyncio.run(_run())


def test_list_transactions_filters_by_user_in_creation_order() -> None:
    ledger = QuotaLedger(clock=_StepClock())

    async def _run() -> None:
        first = await ledger.create_transaction("u1", "COLLEGE")
        await ledger.create_transaction("u2", "PRO")
        second = await ledger.create_transaction("u1", "LITE")

        transactions = await ledger.list_transactions("u1")
        assert [item.id for item in transactions] == [first.id, second.id]
        assert await ledger.list_transactions("nobody") == []

    asyncio.run(_run())


def test_audit_hook_receives_ledger_events() -> None:
    events: list[dict] = []
    ledger = QuotaLedger(audit_hook=events.append)

    async def _run() -> None:
        await ledger.record_usage("u1", 10)
        transaction = await ledger.create_transaction("u1", "PRO")
        await ledger.settle_transaction(transaction.id, "completed")
        await ledger.upgrade("u1", "PRO")

    asyncio.run(_run())
    assert [event["event"] for event in events] == [
        "usage_recorded",
        "transaction_created",
        "transaction_settled",
        "plan_upgraded",
    ]


def test_estimate_tokens_counts_characters_of_inputs_and_reply() -> None:
    messages = [
        {"role": "system", "content": "abc"},
        {"role": "user", "content": "hello"},
        {"role": "user", "content": None},
    ]
    assert estimate_tokens(messages, "reply") == 3 + 5 + 5
    assert estimate_tokens([], "") == 0
