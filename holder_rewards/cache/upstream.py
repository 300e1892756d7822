"""
Guard applied to every external call: timeout, rate-limit classification
and circuit breaker bookkeeping.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from holder_rewards.core.exceptions import (
    HolderRewardsException,
    TransientUpstreamError,
    RateLimitError,
    UpstreamTimeoutError,
    CircuitOpenError,
    is_rate_limit_message,
)
from holder_rewards.core.logging import RateLimitLogger
from .circuit_breaker import CircuitBreaker, CircuitState


logger = structlog.get_logger(__name__)

T = TypeVar("T")


class UpstreamGuard:
    """
    Wraps awaitables coming from one upstream.

    Errors leave the guard classified: a timeout becomes
    ``UpstreamTimeoutError``, anything that looks like a rate limit becomes
    ``RateLimitError``, other unexpected exceptions become
    ``TransientUpstreamError``. Exceptions of the engine's own hierarchy
    pass through unchanged.
    """

    def __init__(
        self,
        name: str,
        breaker: CircuitBreaker,
        timeout: float = 30.0,
        rate_limit_logger: Optional[RateLimitLogger] = None
    ):
        self.name = name
        self.breaker = breaker
        self.timeout = timeout
        self.rate_limit_logger = rate_limit_logger or RateLimitLogger()
        self.logger = logger.bind(service="upstream_guard", upstream=name)

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        operation: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs: Any
    ) -> T:
        operation = operation or getattr(func, "__name__", "call")

        probing = self.breaker.state == CircuitState.HALF_OPEN
        if not self.breaker.allow_request():
            raise CircuitOpenError(self.breaker.name, self.breaker.retry_in())

        try:
            result = await asyncio.wait_for(
                func(*args, **kwargs),
                timeout=timeout or self.timeout
            )
        except asyncio.CancelledError:
            if probing:
                self.breaker.release_trial()
            raise
        except asyncio.TimeoutError as e:
            self.breaker.record_failure()
            self.logger.warning("Upstream call timed out", operation=operation, timeout=timeout or self.timeout)
            raise UpstreamTimeoutError(
                f"{self.name}.{operation} timed out",
                {"operation": operation}
            ) from e
        except RateLimitError:
            self._on_rate_limit(operation)
            raise
        except TransientUpstreamError:
            self.breaker.record_failure()
            raise
        except HolderRewardsException:
            # Upstream answered; the error is about our request
            self.breaker.record_success()
            raise
        except Exception as e:
            if is_rate_limit_message(str(e)):
                self._on_rate_limit(operation)
                raise RateLimitError(
                    f"{self.name}.{operation} rate limited",
                    {"operation": operation, "error": str(e)}
                ) from e
            self.breaker.record_failure()
            self.logger.error("Upstream call failed", operation=operation, error=str(e))
            raise TransientUpstreamError(
                f"{self.name}.{operation} failed: {e}",
                {"operation": operation, "error_type": type(e).__name__}
            ) from e

        self.breaker.record_success()
        return result

    def _on_rate_limit(self, operation: str) -> None:
        self.breaker.record_rate_limit()
        self.rate_limit_logger.log(
            "Upstream rate limited",
            upstream=self.name,
            operation=operation
        )

    def get_status(self) -> Dict[str, Any]:
        return {
            "upstream": self.name,
            "timeout_seconds": self.timeout,
            "breaker": self.breaker.get_status(),
        }
