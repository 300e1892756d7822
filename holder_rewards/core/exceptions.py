"""
Custom exception classes for the reward engine.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class HolderRewardsException(Exception):
    """Base exception class for the holder rewards engine."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(HolderRewardsException):
    """Raised when configuration is missing or invalid. Fatal at startup."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class TransientUpstreamError(HolderRewardsException):
    """Raised when an upstream data source is temporarily unavailable."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "TRANSIENT_UPSTREAM_ERROR"
    ):
        super().__init__(message, code, details)


class RateLimitError(TransientUpstreamError):
    """Raised when the upstream rejects a call with a rate limit."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "RATE_LIMIT_ERROR")


class UpstreamTimeoutError(TransientUpstreamError):
    """Raised when an upstream call exceeds its timeout."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "UPSTREAM_TIMEOUT")


class CircuitOpenError(TransientUpstreamError):
    """Raised when the circuit breaker rejects a call without trying it."""

    def __init__(self, name: str, retry_in: float):
        super().__init__(
            f"Circuit breaker '{name}' is open",
            {"breaker": name, "retry_in_seconds": round(retry_in, 1)},
            "CIRCUIT_OPEN"
        )


class InsufficientFundsError(HolderRewardsException):
    """Raised when the paying wallet cannot cover a transfer."""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient funds: required {required}, available {available}",
            "INSUFFICIENT_FUNDS",
            {"required": required, "available": available}
        )


class HarvestError(HolderRewardsException):
    """Raised when tax harvesting or conversion fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "HARVEST_ERROR", details)


class PartialBatchFailure(HarvestError):
    """Raised when some harvest batches converted and a later one failed."""

    def __init__(self, converted_in: int, amount_out: int, failed_batch: int, reason: str):
        super().__init__(
            f"Batch {failed_batch} failed after converting {converted_in} tokens: {reason}",
            {
                "converted_in": converted_in,
                "amount_out": amount_out,
                "failed_batch": failed_batch,
                "reason": reason,
            }
        )
        self.code = "PARTIAL_BATCH_FAILURE"
        self.converted_in = converted_in
        self.amount_out = amount_out
        self.failed_batch = failed_batch


class SettlementError(HolderRewardsException):
    """Raised when a settlement transfer fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SETTLEMENT_ERROR", details)


class StateStoreError(HolderRewardsException):
    """Raised when the durable state store cannot be read or written."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "STATE_STORE_ERROR", details)


class NotFoundError(HolderRewardsException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


def is_rate_limit_message(message: str) -> bool:
    """Check whether an upstream error text describes a rate limit."""
    lowered = message.lower()
    return (
        "429" in lowered
        or "rate limit" in lowered
        or "too many requests" in lowered
    )
