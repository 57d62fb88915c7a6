"""
Adapters package for the Gateway Service.

Contains the HTTP client wrapper for upstream dependencies (database,
AI provider). Each call goes through the dependency's circuit breaker
and retry policy.

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .upstream_client import UpstreamClient

__all__ = [
    "UpstreamClient",
]
