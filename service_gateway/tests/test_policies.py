"""
Unit tests for rate limit policies and route selection.
"""

import json

import pytest

from service_gateway.app.ratelimit.policies import (
    DEFAULT_POLICIES,
    PolicyRegistry,
    PolicySelector,
    RateLimitPolicy,
    RouteRule,
    UserContext,
)
from shared.errors import ConfigurationError


class TestRateLimitPolicy:
    """Test cases for RateLimitPolicy validation."""

    @pytest.mark.parametrize("kwargs", [
        {"window_ms": 0, "max_requests": 5},
        {"window_ms": 1000, "max_requests": 0},
        {"window_ms": 1000, "max_requests": 5, "scope": "tenant"},
    ])
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ConfigurationError):
            RateLimitPolicy("BAD", **kwargs)


class TestPolicyRegistry:
    """Test cases for PolicyRegistry."""

    def test_default_table(self):
        registry = PolicyRegistry()

        assert registry.names() == ["AUTH", "CHAT_FREE", "CHAT_PRO", "PAYMENT", "API", "USER_API", "ADMIN"]
        auth = registry.get("AUTH")
        assert (auth.window_ms, auth.max_requests, auth.scope) == (900000, 5, "ip")
        chat = registry.get("CHAT_FREE")
        assert (chat.window_ms, chat.max_requests, chat.scope) == (60000, 10, "user")

    def test_unknown_policy(self):
        with pytest.raises(ConfigurationError) as exc_info:
            PolicyRegistry().get("auth")

        assert "AUTH" in exc_info.value.details["known"]

    def test_duplicate_policy(self):
        with pytest.raises(ConfigurationError):
            PolicyRegistry(list(DEFAULT_POLICIES) + [RateLimitPolicy("AUTH", 1000, 1)])

    def test_overrides_merge_onto_defaults(self):
        registry = PolicyRegistry.from_overrides({
            "AUTH": {"max_requests": 3},
            "WEBHOOK": {"window_ms": 1000, "max_requests": 2, "scope": "ip"},
        })

        assert registry.get("AUTH").max_requests == 3
        assert registry.get("AUTH").window_ms == 900000
        assert registry.get("WEBHOOK").max_requests == 2
        assert "API" in registry

    def test_override_with_unknown_field(self):
        with pytest.raises(ConfigurationError):
            PolicyRegistry.from_overrides({"AUTH": {"burst": 3}})

    def test_incomplete_new_policy(self):
        with pytest.raises(ConfigurationError):
            PolicyRegistry.from_overrides({"WEBHOOK": {"max_requests": 2}})

    def test_from_file(self, tmp_path):
        path = tmp_path / "limits.json"
        path.write_text(json.dumps({"CHAT_PRO": {"max_requests": 60}}))

        registry = PolicyRegistry.from_file(str(path))

        assert registry.get("CHAT_PRO").max_requests == 60

    def test_from_file_rejects_non_object(self, tmp_path):
        path = tmp_path / "limits.json"
        path.write_text("[1, 2]")

        with pytest.raises(ConfigurationError):
            PolicyRegistry.from_file(str(path))

    def test_from_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            PolicyRegistry.from_file(str(tmp_path / "missing.json"))


class TestPolicySelector:
    """Test cases for PolicySelector."""

    @pytest.fixture
    def selector(self):
        return PolicySelector(PolicyRegistry())

    @staticmethod
    def names(policies):
        return [p.name for p in policies]

    @pytest.mark.parametrize("path,expected", [
        ("/api/auth/login", ["AUTH"]),
        ("/api/payments/checkout", ["PAYMENT"]),
        ("/api/admin/users", ["ADMIN"]),
        ("/api/conversations", ["API"]),
        ("/api/chat/send", ["API"]),
        ("/about", []),
    ])
    def test_anonymous_paths(self, selector, path, expected):
        assert self.names(selector.select(path)) == expected

    def test_free_user_chat(self, selector):
        user = UserContext("u1", "free")
        assert self.names(selector.select("/api/chat/send", user)) == ["API", "CHAT_FREE"]

    def test_missing_tier_is_free(self, selector):
        user = UserContext("u1")
        assert self.names(selector.select("/api/chat/send", user)) == ["API", "CHAT_FREE"]

    @pytest.mark.parametrize("tier", ["pro", "business", "enterprise"])
    def test_paid_user_chat(self, selector, tier):
        user = UserContext("u1", tier)
        assert self.names(selector.select("/api/chat/send", user)) == ["API", "CHAT_PRO"]

    def test_user_routes(self, selector):
        user = UserContext("u1", "pro")
        assert self.names(selector.select("/api/user/profile", user)) == ["API", "USER_API"]
        assert self.names(selector.select("/api/subscriptions/current", user)) == ["API", "USER_API"]

    def test_rules_must_reference_known_policies(self):
        with pytest.raises(ConfigurationError):
            PolicySelector(PolicyRegistry(), ip_rules=[RouteRule("/api/", "MISSING")])
