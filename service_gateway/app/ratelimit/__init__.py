"""
Rate limiting package for the Gateway.

Holds the fixed-window limiter, its pluggable counter stores, the named
policies with their routing rules, and identity resolution.
"""

from .identity import RequestMetadata, resolve_identity
from .limiter import RateLimitDecision, RateLimiter
from .policies import PolicyRegistry, PolicySelector, RateLimitPolicy, UserContext
from .store import CounterStore, MemoryCounterStore, RedisCounterStore, create_counter_store

__all__ = [
    "CounterStore",
    "MemoryCounterStore",
    "PolicyRegistry",
    "PolicySelector",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimiter",
    "RedisCounterStore",
    "RequestMetadata",
    "UserContext",
    "create_counter_store",
    "resolve_identity",
]
