"""
Error taxonomy for htlcswap.

Errors fall into three classes, which decide what the Order Monitor does:

- TRANSIENT: RPC timeout, rate limit, node unavailable. Retried with
  exponential backoff, order phase unchanged.
- PROTOCOL: hash mismatch, redeem after expiry, refund before expiry,
  double settlement. Never retried.
- FATAL: anything we cannot classify. Moves the order to failed.

Validation errors are raised at order creation and never reach the monitor.
"""

import asyncio
from enum import Enum

import httpx
import requests


class ErrorClass(Enum):
    """Monitor handling class for an exception."""
    TRANSIENT = "transient"
    PROTOCOL = "protocol"
    FATAL = "fatal"


class SwapError(Exception):
    """Base class for all htlcswap errors."""


# =============================================================================
# Validation
# =============================================================================

class ValidationError(SwapError, ValueError):
    """Malformed address, bad amount, unsupported pair, bad timelocks."""


class InvalidSecretLengthError(ValidationError):
    """Secret is not exactly 32 bytes."""

    def __init__(self, length: int):
        super().__init__(f"Secret must be 32 bytes, got {length}")
        self.length = length


class OrderNotFoundError(SwapError, KeyError):
    """No order with the given id."""

    def __init__(self, order_id: str):
        super().__init__(order_id)
        self.order_id = order_id

    def __str__(self):
        return f"Order not found: {self.order_id}"


class InvalidTransitionError(SwapError):
    """Phase transition not allowed from the current phase."""


# =============================================================================
# Adapter errors
# =============================================================================

class AdapterError(SwapError):
    """Chain adapter failure (RPC error, rejected transaction, bad key)."""

    retryable = False

    def __init__(self, message: str, chain: str = ""):
        super().__init__(message)
        self.chain = chain


class TransientAdapterError(AdapterError):
    """Temporary chain/RPC failure. Safe to retry."""

    retryable = True


class ChainNotConfiguredError(AdapterError):
    """No adapter is registered for the requested chain."""


class MissingKeyError(AdapterError):
    """No signing key for the party that has to send this transaction."""


# =============================================================================
# Protocol violations (never retried)
# =============================================================================

class ProtocolViolation(SwapError):
    """HTLC protocol rule violated for one leg."""


class HashMismatchError(ProtocolViolation):
    """SHA256(secret) does not match the leg hashlock."""


class ExpiredError(ProtocolViolation):
    """Redeem attempted at or after the leg timelock."""


class NotYetExpiredError(ProtocolViolation):
    """Refund attempted before the leg timelock."""


class AlreadyRedeemedError(ProtocolViolation):
    """Leg was already redeemed by the counter-party."""


class AlreadyRefundedError(ProtocolViolation):
    """Leg was already refunded."""


# =============================================================================
# Classification
# =============================================================================

RETRYABLE_HTTP_STATUS = {408, 425, 429, 500, 502, 503, 504}


def _is_requests_transient(exc: BaseException) -> bool:
    # web3 HTTPProvider raises requests exceptions
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return exc.response.status_code in RETRYABLE_HTTP_STATUS
    return False


def classify_error(exc: BaseException) -> ErrorClass:
    """
    Classify an exception raised by an adapter call.

    Args:
        exc: The exception

    Returns:
        ErrorClass deciding retry vs. fail
    """
    if isinstance(exc, ProtocolViolation):
        return ErrorClass.PROTOCOL
    if isinstance(exc, AdapterError):
        return ErrorClass.TRANSIENT if exc.retryable else ErrorClass.FATAL
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, httpx.TransportError):
        return ErrorClass.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in RETRYABLE_HTTP_STATUS:
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL
    if _is_requests_transient(exc):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


def is_transient(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorClass.TRANSIENT
