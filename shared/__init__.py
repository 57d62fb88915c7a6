"""
Shared utilities for the VIVK access governance layer.

This package aggregates common building blocks consumed by the gateway:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry executor and decorator
- circuit_breaker: Resilient external call protection
- resilience: Breaker + retry composition for named dependencies
- clock: Epoch-millisecond clock used for windows and cooldowns
- base_service: FastAPI service skeleton with health, metrics and error handlers

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
