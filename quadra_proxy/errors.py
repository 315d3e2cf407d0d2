from __future__ import annotations

from typing import Any


class ProxyError(Exception):
    """Base class for every failure that is surfaced to HTTP callers.

    Subclasses pin the HTTP status they map to and may add structured fields
    to the JSON body through ``extra_fields``.
    """

    status_code: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def extra_fields(self) -> dict[str, Any]:
        return {}

    def response_headers(self) -> dict[str, str]:
        return {}

    def to_body(self) -> dict[str, Any]:
        return {"error": self.message, **self.extra_fields()}


class InvalidRequest(ProxyError):
    status_code = 400


class QuotaExceeded(ProxyError):
    status_code = 402

    def __init__(self, user_id: str, current_plan: dict[str, Any]):
        self.user_id = user_id
        self.current_plan = current_plan
        super().__init__("Payment required. You have exceeded your token limit.")

    def extra_fields(self) -> dict[str, Any]:
        return {"paymentRequired": True, "currentPlan": self.current_plan}


class UnknownPlan(ProxyError):
    status_code = 400

    def __init__(self, plan_key: str):
        self.plan_key = plan_key
        super().__init__("Invalid plan")


class TransactionNotFound(ProxyError):
    status_code = 404

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction '{transaction_id}' was not found.")


class TransactionAlreadySettled(ProxyError):
    status_code = 409

    def __init__(self, transaction_id: str, status: str):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(
            f"Transaction '{transaction_id}' is already {status} and cannot change."
        )

    def extra_fields(self) -> dict[str, Any]:
        return {"status": self.status}


class TooManyRequests(ProxyError):
    status_code = 429

    def __init__(self, retry_after_seconds: float):
        self.retry_after_seconds = max(0.0, float(retry_after_seconds))
        super().__init__(
            "Rate limit exceeded. Please wait before sending another request."
        )

    def response_headers(self) -> dict[str, str]:
        return {"Retry-After": str(_ceil_seconds(self.retry_after_seconds))}


class ConfigurationError(ProxyError):
    """Deployment is missing something the request needs."""

    status_code = 500


class UnknownProvider(ConfigurationError):
    def __init__(self, provider_id: str, available: list[str]):
        self.provider_id = provider_id
        self.available = available
        super().__init__(
            f"Server configuration error: provider '{provider_id}' is not configured."
        )


class MissingCredential(ConfigurationError):
    def __init__(self, provider_id: str, credential_env: str):
        self.provider_id = provider_id
        self.credential_env = credential_env
        super().__init__(
            f"Server configuration error: {provider_id} API key is not configured"
        )


class PaymentGatewayNotConfigured(ConfigurationError):
    def __init__(self) -> None:
        super().__init__("Payment system not configured")


class PaymentGatewayError(ProxyError):
    status_code = 500

    def __init__(self, message: str = "Failed to create payment order"):
        super().__init__(message)


class UpstreamFailure(ProxyError):
    """Errors raised by a single upstream attempt or by the retry driver."""

    status_code = 500


class RateLimited(UpstreamFailure):
    status_code = 429

    def __init__(self, provider_id: str, retry_after_seconds: float | None = None):
        self.provider_id = provider_id
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"{provider_id} rate limit exceeded. Please try again later."
        )

    def response_headers(self) -> dict[str, str]:
        if self.retry_after_seconds is None:
            return {}
        return {"Retry-After": str(_ceil_seconds(self.retry_after_seconds))}


class PaymentRequired(UpstreamFailure):
    status_code = 402

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__("Payment required. Please add credits to your account.")

    def extra_fields(self) -> dict[str, Any]:
        return {"paymentRequired": True}


class TransientNetworkError(UpstreamFailure):
    def __init__(self, provider_id: str, error_type: str, detail: str):
        self.provider_id = provider_id
        self.error_type = error_type
        self.detail = detail
        super().__init__(
            f"Failed to process request: could not reach {provider_id} "
            f"({error_type}): {detail}"
        )


class UpstreamError(UpstreamFailure):
    def __init__(self, provider_id: str, status: int, body: str):
        self.provider_id = provider_id
        self.status = status
        self.body = body
        super().__init__(
            f"Failed to process request: {provider_id} API error: {status} - {body}"
        )


class InvalidUpstreamResponse(UpstreamFailure):
    def __init__(self, provider_id: str, reason: str):
        self.provider_id = provider_id
        self.reason = reason
        super().__init__(
            f"Failed to process request: invalid response from {provider_id} API "
            f"({reason})"
        )


class RetriesExhausted(UpstreamFailure):
    """Raised when every attempt failed with a retryable error.

    The HTTP status follows the last error: a provider that kept rate limiting
    surfaces as 429, a provider that kept dropping connections as 500.
    """

    def __init__(self, attempts: int, last_error: UpstreamFailure):
        self.attempts = attempts
        self.last_error = last_error
        self.status_code = last_error.status_code
        super().__init__(last_error.message)

    def response_headers(self) -> dict[str, str]:
        return self.last_error.response_headers()


def _ceil_seconds(value: float) -> int:
    whole = int(value)
    return whole if whole >= value else whole + 1
