"""
API Gateway Service package for the VIVK access governance layer.

The gateway fronts client requests, enforcing before any business logic:
- Maintenance mode: API calls get 503, pages are redirected
- Origin validation: cross-origin mutations are rejected
- Rate limiting: fixed-window policies per IP and per user
- Circuit-breaking and retries for upstream calls

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.adapters: HTTP client for upstream dependencies.
- app.ratelimit: Policies, identity resolution, counter stores and limiter.
- app.domain: Governance middleware, maintenance state, origin checks.
"""
