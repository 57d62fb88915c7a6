"""
Unit tests for Gateway main service.
"""

import pytest
from fastapi.testclient import TestClient

from service_gateway.app.main import GatewayService, create_app
from service_gateway.app.ratelimit.policies import UserContext
from shared.config import get_config

ADMIN_KEY = "test-admin-key"


@pytest.fixture
def config():
    return get_config("gateway", 8000, env="test", counter_store="memory", admin_api_key=ADMIN_KEY)


@pytest.fixture
def gateway_service(config, clock):
    """Create GatewayService instance."""
    return GatewayService(config=config, clock=clock)


@pytest.fixture
def client(gateway_service):
    """Create test client."""
    return TestClient(gateway_service.app)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


class TestGatewayService:
    """Test cases for GatewayService."""

    def test_create_app(self, config):
        app = create_app(config)
        assert any(route.path == "/api/admin/maintenance" for route in app.routes)

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "gateway"
        assert data["status"] == "ok"
        assert data["dependencies"] == {"counter_store": "ok"}
        assert "X-Request-ID" in response.headers

    def test_api_health_endpoint(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["maintenance"] is False

    def test_counter_store_health(self, client):
        response = client.get("/api/health/redis")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["backend"] == "memory"

    def test_dependencies_health_without_upstreams(self, client):
        response = client.get("/api/health/dependencies")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert list(data["dependencies"]) == ["counter_store"]

    def test_upstreams_built_from_config(self, clock):
        config = get_config(
            "gateway", 8000, counter_store="memory",
            database_url="http://db.internal:5432", ai_provider_url="https://ai.example.com"
        )
        service = GatewayService(config=config, clock=clock)

        assert sorted(service.upstreams) == ["ai", "database"]
        assert service.upstreams["ai"].caller.breaker is service.circuit_breakers.get_circuit_breaker("ai")

    def test_metrics_endpoint(self, client):
        client.get("/api/health")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "rate_limit_decisions_total" in response.text

    def test_request_id_is_propagated(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_api_requests_are_rate_limited(self, client):
        response = client.get("/api/health")

        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Policy"] == "API"

    def test_injected_user_resolver_binds_chat_policy(self, config, clock):
        def session_user(request):
            if request.headers.get("authorization") == "Bearer free-user":
                return UserContext("user-1", "free")
            return None

        service = GatewayService(config=config, clock=clock, user_resolver=session_user)
        client = TestClient(service.app)

        response = client.get("/api/chat/conversations", headers={"Authorization": "Bearer free-user"})
        assert response.headers["X-RateLimit-Policy"] == "CHAT_FREE"
        assert response.headers["X-RateLimit-Remaining"] == "9"

        anonymous = client.get("/api/chat/conversations")
        assert anonymous.headers["X-RateLimit-Policy"] == "API"

    def test_create_app_accepts_user_resolver(self, config):
        app = create_app(config, user_resolver=lambda request: UserContext("user-2", "pro"))
        client = TestClient(app)

        response = client.get("/api/chat/conversations")

        assert response.headers["X-RateLimit-Policy"] == "CHAT_PRO"

    def test_trusted_user_headers_select_user_policies(self, clock):
        config = get_config("gateway", 8000, env="test", counter_store="memory", trusted_user_headers=True)
        client = TestClient(GatewayService(config=config, clock=clock).app)

        free = client.get("/api/chat/conversations", headers={"X-User-Id": "user-3"})
        pro = client.get(
            "/api/chat/conversations",
            headers={"X-User-Id": "user-4", "X-Subscription-Tier": "pro"}
        )

        assert free.headers["X-RateLimit-Policy"] == "CHAT_FREE"
        assert pro.headers["X-RateLimit-Policy"] == "CHAT_PRO"

    def test_forwarded_user_headers_ignored_by_default(self, client):
        response = client.get("/api/chat/conversations", headers={"X-User-Id": "user-3"})

        assert response.headers["X-RateLimit-Policy"] == "API"


class TestAdminRoutes:
    """Test cases for the admin endpoints."""

    def test_missing_key_is_forbidden(self, client):
        assert client.get("/api/admin/maintenance").status_code == 403

    def test_wrong_key_is_forbidden(self, client):
        response = client.get("/api/admin/maintenance", headers={"X-Admin-Key": "nope"})
        assert response.status_code == 403

    def test_unconfigured_key_is_forbidden(self, clock):
        service = GatewayService(config=get_config("gateway", 8000, counter_store="memory"), clock=clock)
        client = TestClient(service.app)

        response = client.get("/api/admin/maintenance", headers={"X-Admin-Key": ""})

        assert response.status_code == 403

    def test_toggle_maintenance(self, client, admin_headers):
        response = client.post(
            "/api/admin/maintenance",
            json={"enabled": True, "message": "Upgrading models", "estimated_time": "30m"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["enabled"] is True
        assert response.json()["changed_by"] == "admin"

        blocked = client.get("/api/conversations")
        assert blocked.status_code == 503
        assert blocked.json()["code"] == "MAINTENANCE_MODE"
        assert blocked.json()["error"] == "Upgrading models"

        assert client.get("/api/health").status_code == 200
        assert client.get("/api/admin/maintenance", headers=admin_headers).json()["message"] == "Upgrading models"

        client.post("/api/admin/maintenance", json={"enabled": False}, headers=admin_headers)
        assert client.get("/api/conversations").status_code == 404

    def test_maintenance_mode_from_config(self, clock):
        config = get_config("gateway", 8000, counter_store="memory", maintenance_mode=True)
        client = TestClient(GatewayService(config=config, clock=clock).app)

        assert client.get("/api/conversations").status_code == 503
        page = client.get("/pricing", follow_redirects=False)
        assert page.status_code == 307
        assert client.get("/maintenance").json()["maintenance"] is True

    def test_circuit_breakers(self, client, admin_headers):
        response = client.get("/api/admin/circuit-breakers", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 3
        assert data["circuit_breakers"]["ai"]["state"] == "closed"
        assert data["circuit_breakers"]["payment"]["cooldown_ms"] == 120000

    def test_rate_limit_policies(self, client, admin_headers):
        response = client.get("/api/admin/rate-limits", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["policies"]["AUTH"]["max_requests"] == 5
        assert data["store"] == "memory"

    def test_rate_limit_status_and_reset(self, client, admin_headers):
        for _ in range(3):
            client.post("/api/auth/login")

        status = client.get("/api/admin/rate-limits/AUTH/ip:testclient", headers=admin_headers)
        assert status.status_code == 200
        assert status.json()["count"] == 3
        assert status.json()["remaining"] == 2

        reset = client.delete("/api/admin/rate-limits/AUTH/ip:testclient", headers=admin_headers)
        assert reset.json()["cleared"] is True

        status = client.get("/api/admin/rate-limits/AUTH/ip:testclient", headers=admin_headers)
        assert status.json()["count"] == 0

    def test_unknown_policy_is_not_found(self, client, admin_headers):
        response = client.get("/api/admin/rate-limits/NOPE/ip:testclient", headers=admin_headers)
        assert response.status_code == 404

    def test_rate_limits_file(self, tmp_path, clock):
        path = tmp_path / "limits.json"
        path.write_text('{"AUTH": {"max_requests": 1}}')
        config = get_config("gateway", 8000, counter_store="memory", rate_limits_file=str(path))
        client = TestClient(GatewayService(config=config, clock=clock).app)

        assert client.post("/api/auth/login").status_code == 404
        assert client.post("/api/auth/login").status_code == 429
