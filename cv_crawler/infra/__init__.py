"""Infra layer utilities (storage, rate limiting, proxy rotation)."""

from .proxy_pool import ProxyRotator, ProxyStats
from .rate_limiter import InMemoryBudget, LimiterState, RateLimiter, Reservation, SQLiteBudget
from .storage import SQLiteManager

__all__ = [
    "InMemoryBudget",
    "LimiterState",
    "ProxyRotator",
    "ProxyStats",
    "RateLimiter",
    "Reservation",
    "SQLiteBudget",
    "SQLiteManager",
]
