"""
Caching and upstream protection.
"""

from .swr_cache import SWRCache, CacheStats
from .circuit_breaker import CircuitBreaker, CircuitState
from .upstream import UpstreamGuard

__all__ = [
    "SWRCache",
    "CacheStats",
    "CircuitBreaker",
    "CircuitState",
    "UpstreamGuard",
]
