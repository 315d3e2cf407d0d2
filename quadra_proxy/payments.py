from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from quadra_proxy.errors import (
    InvalidRequest,
    PaymentGatewayError,
    PaymentGatewayNotConfigured,
)
from quadra_proxy.ledger import PaymentTransaction, QuotaLedger, UserEntitlement
from quadra_proxy.plans import get_plan

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class GatewayOrder:
    order_id: str
    amount: int
    currency: str


@dataclass(slots=True)
class OrderResult:
    order: GatewayOrder
    transaction: PaymentTransaction

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order.order_id,
            "transactionId": self.transaction.id,
            "amount": self.order.amount,
            "currency": self.order.currency,
        }


class RazorpayClient:
    """Minimal client for the order endpoint of the Razorpay REST API."""

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=max(0.1, float(timeout_seconds))),
        )
        self._auth = httpx.BasicAuth(key_id, key_secret)

    async def close(self) -> None:
        await self.client.aclose()

    async def create_order(
        self, *, amount: int, currency: str, receipt: str
    ) -> GatewayOrder:
        try:
            response = await self.client.post(
                f"{self._base_url}/orders",
                json={
                    "amount": amount,
                    "currency": currency,
                    "receipt": receipt,
                    "payment_capture": 1,
                },
                auth=self._auth,
            )
        except httpx.RequestError as exc:
            logger.warning(
                "payment_order_request_error receipt=%s error_type=%s error=%s",
                receipt,
                exc.__class__.__name__,
                str(exc),
            )
            raise PaymentGatewayError() from exc

        if response.status_code >= 400:
            logger.warning(
                "payment_order_rejected receipt=%s status=%d body=%s",
                receipt,
                response.status_code,
                response.text[:500],
            )
            raise PaymentGatewayError()

        try:
            body = response.json()
            return GatewayOrder(
                order_id=str(body["id"]),
                amount=int(body.get("amount", amount)),
                currency=str(body.get("currency", currency)),
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(
                "payment_order_malformed receipt=%s error=%s", receipt, str(exc)
            )
            raise PaymentGatewayError() from exc


class PaymentService:
    def __init__(
        self,
        *,
        ledger: QuotaLedger,
        gateway: RazorpayClient | None,
        currency: str = "INR",
    ) -> None:
        self._ledger = ledger
        self._gateway = gateway
        self._currency = currency

    @property
    def gateway(self) -> RazorpayClient | None:
        return self._gateway

    @property
    def is_configured(self) -> bool:
        return self._gateway is not None

    def _require_gateway(self) -> RazorpayClient:
        if self._gateway is None:
            raise PaymentGatewayNotConfigured()
        return self._gateway

    async def create_order(self, user_id: str, plan_key: str) -> OrderResult:
        plan = get_plan(plan_key)
        gateway = self._require_gateway()
        transaction = await self._ledger.create_transaction(user_id, plan.key)
        try:
            order = await gateway.create_order(
                amount=plan.price_minor_units,
                currency=self._currency,
                receipt=transaction.id,
            )
        except PaymentGatewayError:
            await self._ledger.settle_transaction(transaction.id, "failed")
            raise

        logger.info(
            "payment_order_created user_id=%s plan=%s transaction_id=%s order_id=%s amount=%d",
            user_id,
            plan.key,
            transaction.id,
            order.order_id,
            order.amount,
        )
        return OrderResult(order=order, transaction=transaction)

    async def verify(
        self,
        *,
        user_id: str,
        plan_key: str,
        transaction_id: str,
    ) -> UserEntitlement:
        # Gateway signature checks are not performed; a verify call with the
        # gateway fields present is treated as a successful payment.
        plan = get_plan(plan_key)
        self._require_gateway()
        transaction = await self._ledger.get_transaction(transaction_id)
        if transaction.user_id != user_id or transaction.plan != plan.key:
            raise InvalidRequest("Transaction does not match the user and plan.")

        await self._ledger.settle_transaction(transaction_id, "completed")
        entitlement = await self._ledger.upgrade(user_id, plan.key)
        logger.info(
            "payment_verified user_id=%s plan=%s transaction_id=%s",
            user_id,
            plan.key,
            transaction_id,
        )
        return entitlement

    async def close(self) -> None:
        if self._gateway is not None:
            await self._gateway.close()
