"""
Order failure taxonomy.

classify_failure() is the single place where upstream errors are mapped
to a FailureCategory. Structured signals (exception types, HTTP status,
CLOB error codes) are checked first; message matching is the fallback
for errors that carry nothing else.
"""

from enum import Enum
from typing import Any, Optional

import httpx
from py_clob_client.exceptions import PolyApiException

from polycopy.platforms.base import (
    MarketNotFoundError,
    OrderBookNotFoundError,
    PlatformError,
    RateLimitError,
)
from polycopy.services.channel import QuotaExceededError


class FailureCategory(str, Enum):
    """Why an order (or a wait on it) failed."""
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INSUFFICIENT_BALANCE_OR_ALLOWANCE = "insufficient_balance_or_allowance"
    BELOW_MINIMUM_SIZE = "below_minimum_size"
    INVALID_PRICE = "invalid_price"
    SIGNATURE_MISMATCH = "signature_mismatch"
    UPSTREAM_BLOCKED = "upstream_blocked"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self is FailureCategory.UNKNOWN

    @property
    def group(self) -> str:
        """Coarse grouping stored next to the reason for reporting."""
        return FAILURE_GROUPS[self]


FAILURE_GROUPS = {
    FailureCategory.QUOTA_EXCEEDED: "rate_limit",
    FailureCategory.NOT_FOUND: "market",
    FailureCategory.INSUFFICIENT_BALANCE: "balance",
    FailureCategory.INSUFFICIENT_BALANCE_OR_ALLOWANCE: "balance",
    FailureCategory.BELOW_MINIMUM_SIZE: "validation",
    FailureCategory.INVALID_PRICE: "validation",
    FailureCategory.SIGNATURE_MISMATCH: "execution",
    FailureCategory.UPSTREAM_BLOCKED: "execution",
    FailureCategory.TIMEOUT: "execution",
    FailureCategory.UNKNOWN: "other",
}

REMEDIATION_HINTS = {
    FailureCategory.QUOTA_EXCEEDED: (
        "The daily API quota for this upstream is used up. "
        "Requests resume automatically when the window resets."
    ),
    FailureCategory.NOT_FOUND: (
        "The market or its order book does not exist or is no longer active. "
        "It may have closed or resolved."
    ),
    FailureCategory.INSUFFICIENT_BALANCE: (
        "The proxy wallet does not hold enough outcome tokens to sell this size."
    ),
    FailureCategory.INSUFFICIENT_BALANCE_OR_ALLOWANCE: (
        "The Safe wallet (funder) must hold enough USDC.e and must approve the "
        "Exchange contract to spend it. Check the Safe balance and allowances."
    ),
    FailureCategory.BELOW_MINIMUM_SIZE: (
        "Order size is below the exchange minimum. Marketable orders must be at least $1."
    ),
    FailureCategory.INVALID_PRICE: (
        "The slippage-adjusted price fell outside market limits. "
        "Binary market prices must be between 0.001 and 0.999."
    ),
    FailureCategory.SIGNATURE_MISMATCH: (
        "The derived signer may not be authorized to sign for the Safe wallet. "
        "For Gnosis Safe signatures the signer must be a Safe owner registered with Polymarket."
    ),
    FailureCategory.UPSTREAM_BLOCKED: (
        "The exchange refused the request (403 Forbidden). "
        "This is usually rate limiting or IP blocking at the edge."
    ),
    FailureCategory.TIMEOUT: (
        "The order did not reach a terminal state in time. "
        "The order itself is unaffected; check its status later."
    ),
    FailureCategory.UNKNOWN: (
        "Unexpected upstream error. The order was retried up to the configured limit; check the error message."
    ),
}

# CLOB order rejection codes
ERROR_CODE_CATEGORIES = {
    "INVALID_ORDER_NOT_ENOUGH_BALANCE": FailureCategory.INSUFFICIENT_BALANCE_OR_ALLOWANCE,
    "INVALID_ORDER_MIN_SIZE": FailureCategory.BELOW_MINIMUM_SIZE,
    "INVALID_ORDER_MIN_TICK_SIZE": FailureCategory.INVALID_PRICE,
    "INVALID_ORDER_ERROR": FailureCategory.UNKNOWN,
    "MARKET_NOT_READY": FailureCategory.NOT_FOUND,
}


class ExecutionError(Exception):
    """A classified order failure with a remediation hint."""

    def __init__(
        self,
        message: str,
        category: FailureCategory,
        hint: Optional[str] = None,
        cause: Optional[BaseException] = None,
        retry_after: Optional[float] = None,
    ):
        self.message = message
        self.category = category
        self.hint = hint or REMEDIATION_HINTS[category]
        self.cause = cause
        self.retry_after = retry_after
        super().__init__(f"[{category.value}] {message}")

    @property
    def retryable(self) -> bool:
        return self.category.retryable


class SettlementTimeoutError(ExecutionError):
    """The settlement wait elapsed. The order itself is untouched."""

    def __init__(self, order_id: str, timeout: float):
        self.order_id = order_id
        self.timeout = timeout
        super().__init__(
            f"Order {order_id} did not settle within {timeout:g}s",
            FailureCategory.TIMEOUT,
        )


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, PolyApiException):
        msg: Any = getattr(exc, "error_msg", None)
        if isinstance(msg, dict):
            msg = msg.get("error") or msg.get("errorMsg") or msg
        return f"{msg} (status: {getattr(exc, 'status_code', None)})"
    return str(exc) or exc.__class__.__name__


def _status_code(exc: BaseException) -> Optional[int]:
    if isinstance(exc, PolyApiException):
        return getattr(exc, "status_code", None)
    if isinstance(exc, PlatformError):
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def _category_from_code(text: str, code: Optional[str]) -> Optional[FailureCategory]:
    if code and code in ERROR_CODE_CATEGORIES:
        return ERROR_CODE_CATEGORIES[code]
    for known, category in ERROR_CODE_CATEGORIES.items():
        if known in text:
            return category
    return None


def _category_from_message(text: str) -> FailureCategory:
    """Legacy message matching for errors without structured codes."""
    lower = text.lower()

    if "not enough balance" in lower or "not enough allowance" in lower or "allowance" in lower:
        return FailureCategory.INSUFFICIENT_BALANCE_OR_ALLOWANCE
    if "min size" in lower or "minimum" in lower:
        return FailureCategory.BELOW_MINIMUM_SIZE
    if "invalid price" in lower or ("price" in lower and ("min:" in lower or "max:" in lower)):
        return FailureCategory.INVALID_PRICE
    if "invalid signature" in lower:
        return FailureCategory.SIGNATURE_MISMATCH
    if "403" in lower or "forbidden" in lower or "cloudflare" in lower:
        return FailureCategory.UPSTREAM_BLOCKED
    if (
        "orderbook does not exist" in lower
        or "no orderbook exists" in lower
        or "market not found" in lower
        or "market is closed" in lower
    ):
        return FailureCategory.NOT_FOUND
    return FailureCategory.UNKNOWN


def classify_failure(exc: BaseException) -> ExecutionError:
    """Map any exception raised while executing an order to an ExecutionError."""
    if isinstance(exc, ExecutionError):
        return exc

    if isinstance(exc, QuotaExceededError):
        return ExecutionError(
            str(exc),
            FailureCategory.QUOTA_EXCEEDED,
            cause=exc,
            retry_after=exc.retry_after,
        )

    text = _error_text(exc)

    if isinstance(exc, (MarketNotFoundError, OrderBookNotFoundError)):
        return ExecutionError(text, FailureCategory.NOT_FOUND, cause=exc)

    if isinstance(exc, RateLimitError):
        return ExecutionError(text, FailureCategory.UNKNOWN, cause=exc)

    code = exc.code if isinstance(exc, PlatformError) else None
    category = _category_from_code(text, code)

    if category is None:
        status = _status_code(exc)
        if status == 403:
            category = FailureCategory.UPSTREAM_BLOCKED
        elif status == 401:
            category = FailureCategory.SIGNATURE_MISMATCH
        elif status == 404:
            category = FailureCategory.NOT_FOUND
        elif status == 429 or isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
            category = FailureCategory.UNKNOWN

    if category is None:
        category = _category_from_message(text)

    return ExecutionError(text, category, cause=exc)
