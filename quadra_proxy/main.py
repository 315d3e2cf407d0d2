from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from quadra_proxy.chat import ChatForwarder
from quadra_proxy.errors import InvalidRequest, ProxyError, TooManyRequests
from quadra_proxy.gateway.audit import UsageAuditLogger
from quadra_proxy.gateway.rate_limit import IngressRateLimiter, RateLimitConfig
from quadra_proxy.ledger import QuotaLedger
from quadra_proxy.payments import PaymentService, RazorpayClient
from quadra_proxy.plans import PLANS
from quadra_proxy.providers import build_provider_registry
from quadra_proxy.retrier import BackoffRetrier
from quadra_proxy.settings import get_settings
from quadra_proxy.stores import build_ledger_store
from quadra_proxy.upstream import UpstreamChatClient

app = FastAPI(
    title="Quadra Chat Proxy",
    description="Chat proxy with provider selection, retries and token quotas.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

RATE_LIMITED_PATHS = ("/api/chat",)


@app.middleware("http")
async def ingress_rate_limit_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if request.method == "OPTIONS" or not request.url.path.startswith(
        RATE_LIMITED_PATHS
    ):
        return await call_next(request)

    limiter: IngressRateLimiter | None = getattr(app.state, "rate_limiter", None)
    if limiter is None or not limiter.enabled:
        return await call_next(request)

    client_address = request.client.host if request.client else "unknown"
    try:
        decision = await limiter.acquire(client_address)
    except TooManyRequests as exc:
        logger.info(
            "ingress_rate_limited client=%s path=%s retry_after_seconds=%.1f",
            client_address,
            request.url.path,
            exc.retry_after_seconds,
        )
        return _error_response(exc)

    response = await call_next(request)
    if decision is not None:
        response.headers.update(decision.headers())
    return response


# Added last so CORS wraps the limiter and its 429 responses.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Origin",
        "X-Requested-With",
        "Content-Type",
        "Accept",
        "Authorization",
    ],
)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    audit_logger = UsageAuditLogger(
        path=settings.usage_audit_log_path,
        enabled=settings.usage_audit_log_enabled,
    )
    ledger = QuotaLedger(
        build_ledger_store(redis_url=settings.redis_url, logger=logger),
        audit_hook=audit_logger.log,
    )
    registry = build_provider_registry(
        config_path=settings.providers_config_path,
        default_provider=settings.default_provider,
        fallback_enabled=settings.provider_fallback_enabled,
        referer=settings.app_referer,
        title=settings.app_title,
    )
    upstream = UpstreamChatClient(
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        max_tokens=settings.upstream_max_tokens,
    )
    gateway: RazorpayClient | None = None
    if settings.payment_gateway_is_configured:
        gateway = RazorpayClient(
            key_id=str(settings.razorpay_key_id),
            key_secret=str(settings.razorpay_key_secret),
            base_url=settings.razorpay_base_url,
            timeout_seconds=settings.payment_timeout_seconds,
        )
    else:
        logger.warning("payment_gateway_disabled reason=missing_razorpay_keys")

    app.state.settings = settings
    app.state.audit_logger = audit_logger
    app.state.ledger = ledger
    app.state.rate_limiter = IngressRateLimiter(
        RateLimitConfig(
            enabled=settings.rate_limit_enabled,
            window_ms=max(1, settings.rate_limit_window_ms),
            max_requests=max(1, settings.rate_limit_max),
        )
    )
    app.state.chat_forwarder = ChatForwarder(
        registry=registry,
        retrier=BackoffRetrier(max_attempts=settings.upstream_max_attempts),
        upstream=upstream,
        ledger=ledger,
    )
    app.state.payment_service = PaymentService(
        ledger=ledger,
        gateway=gateway,
        currency=settings.payment_currency,
    )
    logger.info(
        (
            "startup complete port=%d providers=%s default_provider=%s "
            "rate_limit_enabled=%s rate_limit_max=%d rate_limit_window_ms=%d "
            "payment_gateway=%s ledger_store=%s"
        ),
        settings.port,
        ",".join(registry.provider_ids()),
        registry.default_provider,
        settings.rate_limit_enabled,
        settings.rate_limit_max,
        settings.rate_limit_window_ms,
        "configured" if gateway is not None else "disabled",
        ledger.store.__class__.__name__,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    forwarder: ChatForwarder | None = getattr(app.state, "chat_forwarder", None)
    if forwarder is not None:
        await forwarder.upstream.close()
    payment_service: PaymentService | None = getattr(
        app.state, "payment_service", None
    )
    if payment_service is not None:
        await payment_service.close()
    ledger: QuotaLedger | None = getattr(app.state, "ledger", None)
    store_close = getattr(ledger.store, "close", None) if ledger is not None else None
    if store_close is not None:
        await store_close()
    audit_logger: UsageAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/test")
async def api_test() -> dict[str, str]:
    return {"message": "Proxy server is running!"}


@app.get("/api/plans")
async def list_plans() -> dict[str, Any]:
    return {key: plan.to_dict() for key, plan in PLANS.items()}


@app.post("/api/chat")
async def chat(request: Request) -> JSONResponse:
    payload = await _read_json_object(request)
    for field in ("userId", "provider"):
        if payload.get(field) is not None and not isinstance(payload[field], str):
            raise InvalidRequest(f"{field} must be a string.")
    forwarder: ChatForwarder = app.state.chat_forwarder
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    result = await forwarder.handle(
        payload.get("userId"),
        payload.get("provider"),
        payload.get("messages"),
        request_id=request_id,
    )
    return JSONResponse(
        content=result.to_response_body(),
        headers={
            "x-request-id": request_id,
            "x-quadra-provider": result.provider_id,
        },
    )


@app.post("/api/payment/order")
async def create_payment_order(request: Request) -> dict[str, Any]:
    payload = await _read_json_object(request)
    user_id = payload.get("userId")
    plan_key = payload.get("plan")
    if not _non_empty_str(user_id) or not _non_empty_str(plan_key):
        raise InvalidRequest("userId and plan are required")
    payment_service: PaymentService = app.state.payment_service
    result = await payment_service.create_order(user_id, plan_key)
    return result.to_dict()


@app.post("/api/payment/verify")
async def verify_payment(request: Request) -> dict[str, Any]:
    payload = await _read_json_object(request)
    required = (
        "userId",
        "plan",
        "transactionId",
        "razorpayPaymentId",
        "razorpayOrderId",
        "razorpaySignature",
    )
    if not all(_non_empty_str(payload.get(field)) for field in required):
        raise InvalidRequest("Missing required parameters")
    payment_service: PaymentService = app.state.payment_service
    entitlement = await payment_service.verify(
        user_id=payload["userId"],
        plan_key=payload["plan"],
        transaction_id=payload["transactionId"],
    )
    return {
        "success": True,
        "message": "Payment verified successfully",
        "entitlements": entitlement.to_dict(),
    }


@app.get("/api/user/{user_id}/entitlements")
async def user_entitlements(user_id: str) -> dict[str, Any]:
    ledger: QuotaLedger = app.state.ledger
    entitlement = await ledger.get_entitlement(user_id)
    return entitlement.to_dict()


@app.get("/api/user/{user_id}/transactions")
async def user_transactions(user_id: str) -> list[dict[str, Any]]:
    ledger: QuotaLedger = app.state.ledger
    transactions = await ledger.list_transactions(user_id)
    return [transaction.to_dict() for transaction in transactions]


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request_failed path=%s status=%d error_type=%s error=%s",
            request.url.path,
            exc.status_code,
            exc.__class__.__name__,
            exc.message,
        )
    return _error_response(exc)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "request_failed path=%s status=500 error_type=%s",
        request.url.path,
        exc.__class__.__name__,
    )
    return JSONResponse(
        status_code=500,
        content={"error": f"Failed to process request: {exc}"},
    )


def _error_response(exc: ProxyError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body(),
        headers=exc.response_headers(),
    )


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidRequest(f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidRequest("Expected a JSON object request body.")
    return payload


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("quadra_proxy.main:app", host="0.0.0.0", port=settings.port, reload=False)


if __name__ == "__main__":
    run()
