"""
Named rate limit policies and the routing rules that select them.
"""

import json
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from shared.errors import ConfigurationError
from shared.logging import get_logger

from .identity import SCOPE_IP, SCOPE_USER

logger = get_logger("gateway.rate_limit_policies")

DEFAULT_MESSAGE = "Too many requests. Please try again later."

MINUTE_MS = 60 * 1000


@dataclass(frozen=True)
class RateLimitPolicy:
    """Immutable named limit: max_requests per window_ms per identity."""
    name: str
    window_ms: int
    max_requests: int
    scope: str = SCOPE_IP
    message: str = DEFAULT_MESSAGE

    def __post_init__(self):
        if self.scope not in (SCOPE_IP, SCOPE_USER):
            raise ConfigurationError(f"Policy '{self.name}' has unknown scope '{self.scope}'")
        if self.window_ms <= 0:
            raise ConfigurationError(f"Policy '{self.name}' needs a positive window_ms")
        if self.max_requests < 1:
            raise ConfigurationError(f"Policy '{self.name}' needs max_requests >= 1")


DEFAULT_POLICIES = (
    RateLimitPolicy("AUTH", 15 * MINUTE_MS, 5, SCOPE_IP,
                    "Too many authentication attempts. Please try again later."),
    RateLimitPolicy("CHAT_FREE", MINUTE_MS, 10, SCOPE_USER,
                    "Rate limit exceeded. Please slow down."),
    RateLimitPolicy("CHAT_PRO", MINUTE_MS, 30, SCOPE_USER,
                    "Rate limit exceeded. Please slow down."),
    RateLimitPolicy("PAYMENT", 60 * MINUTE_MS, 10, SCOPE_IP,
                    "Too many payment attempts. Please try again later."),
    RateLimitPolicy("API", 15 * MINUTE_MS, 100, SCOPE_IP,
                    "Too many requests. Please try again later."),
    RateLimitPolicy("USER_API", 5 * MINUTE_MS, 50, SCOPE_USER,
                    "Too many requests. Please slow down."),
    RateLimitPolicy("ADMIN", 5 * MINUTE_MS, 20, SCOPE_IP,
                    "Too many admin requests. Please slow down."),
)


class PolicyRegistry:
    """Exact-name lookup of the policies defined at process start."""

    def __init__(self, policies: Iterable[RateLimitPolicy] = DEFAULT_POLICIES):
        self._policies: Dict[str, RateLimitPolicy] = {}
        for policy in policies:
            if policy.name in self._policies:
                raise ConfigurationError(f"Duplicate rate limit policy '{policy.name}'")
            self._policies[policy.name] = policy

    def get(self, name: str) -> RateLimitPolicy:
        try:
            return self._policies[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown rate limit policy '{name}'",
                details={"known": sorted(self._policies)}
            ) from None

    def __contains__(self, name: str) -> bool:
        return name in self._policies

    def __iter__(self):
        return iter(self._policies.values())

    def names(self) -> List[str]:
        return list(self._policies)

    def to_dict(self) -> Dict[str, Dict[str, object]]:
        return {
            p.name: {
                "window_ms": p.window_ms,
                "max_requests": p.max_requests,
                "scope": p.scope,
                "message": p.message,
            }
            for p in self._policies.values()
        }

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, Mapping[str, object]],
                       base: Iterable[RateLimitPolicy] = DEFAULT_POLICIES) -> "PolicyRegistry":
        """Merge per-name overrides onto base policies; unknown names add new policies."""
        merged: Dict[str, RateLimitPolicy] = {p.name: p for p in base}
        allowed = {"window_ms", "max_requests", "scope", "message"}

        for name, values in overrides.items():
            unexpected = set(values) - allowed
            if unexpected:
                raise ConfigurationError(
                    f"Policy '{name}' has unknown fields",
                    details={"fields": sorted(unexpected)}
                )
            try:
                if name in merged:
                    merged[name] = replace(merged[name], **values)
                else:
                    merged[name] = RateLimitPolicy(name=name, **values)
            except TypeError as e:
                raise ConfigurationError(f"Policy '{name}' is incomplete: {e}") from e

        return cls(merged.values())

    @classmethod
    def from_file(cls, path: str, base: Iterable[RateLimitPolicy] = DEFAULT_POLICIES) -> "PolicyRegistry":
        """Load overrides from a JSON object keyed by policy name."""
        try:
            with open(path, "r", encoding="utf-8") as fh:
                overrides = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot load rate limits file '{path}': {e}") from e

        if not isinstance(overrides, dict):
            raise ConfigurationError(f"Rate limits file '{path}' must contain a JSON object")

        logger.info("Loaded rate limit overrides", path=path, policies=sorted(overrides))
        return cls.from_overrides(overrides, base)


@dataclass(frozen=True)
class UserContext:
    """Authenticated caller as placed on request.state by upstream auth."""
    user_id: str
    subscription_tier: Optional[str] = None


@dataclass(frozen=True)
class RouteRule:
    """Path-prefix rule naming the policy for matching requests.

    tier_policies maps a subscription tier to a policy name, with "*" as
    the catch-all; it takes precedence over policy when a user is known.
    """
    prefix: str
    policy: Optional[str] = None
    tier_policies: Mapping[str, str] = field(default_factory=dict)

    def matches(self, path: str) -> bool:
        return path.startswith(self.prefix)

    def policy_for(self, user: Optional[UserContext]) -> Optional[str]:
        if self.tier_policies and user is not None:
            tier = user.subscription_tier or "free"
            return self.tier_policies.get(tier, self.tier_policies.get("*", self.policy))
        return self.policy

    def referenced_policies(self) -> List[str]:
        names = list(self.tier_policies.values())
        if self.policy:
            names.append(self.policy)
        return names


# First matching rule wins within each list
DEFAULT_IP_RULES = (
    RouteRule("/api/auth/", "AUTH"),
    RouteRule("/api/payments/", "PAYMENT"),
    RouteRule("/api/admin/", "ADMIN"),
    RouteRule("/api/", "API"),
)

DEFAULT_USER_RULES = (
    RouteRule("/api/chat/", tier_policies={"free": "CHAT_FREE", "*": "CHAT_PRO"}),
    RouteRule("/api/user/", "USER_API"),
    RouteRule("/api/subscriptions/", "USER_API"),
)


class PolicySelector:
    """Maps a request path (and caller) to the policies that apply."""

    def __init__(self,
                 registry: PolicyRegistry,
                 ip_rules: Sequence[RouteRule] = DEFAULT_IP_RULES,
                 user_rules: Sequence[RouteRule] = DEFAULT_USER_RULES):
        self.registry = registry
        self.ip_rules = tuple(ip_rules)
        self.user_rules = tuple(user_rules)

        # Surface rules pointing at missing policies at startup
        for rule in self.ip_rules + self.user_rules:
            for name in rule.referenced_policies():
                registry.get(name)

    def select(self, path: str, user: Optional[UserContext] = None) -> List[RateLimitPolicy]:
        """Policies for this request, IP-scoped route class first."""
        selected: List[RateLimitPolicy] = []

        ip_rule = self._first_match(self.ip_rules, path)
        if ip_rule is not None:
            name = ip_rule.policy_for(user)
            if name:
                selected.append(self.registry.get(name))

        if user is not None:
            user_rule = self._first_match(self.user_rules, path)
            if user_rule is not None:
                name = user_rule.policy_for(user)
                if name:
                    selected.append(self.registry.get(name))

        return selected

    @staticmethod
    def _first_match(rules: Sequence[RouteRule], path: str) -> Optional[RouteRule]:
        for rule in rules:
            if rule.matches(path):
                return rule
        return None
