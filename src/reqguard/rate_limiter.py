#!/usr/bin/env python3
"""
Fixed-window rate limiter keyed by (client key, route class).

Security Considerations:
- Per-key serialization in the window store prevents lost updates under
  concurrent requests
- Fail-open: a store fault allows the request, but is always logged
- Retry hints are derived from the live window, never from client input
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Optional

from .clock import SystemClock
from .request import RequestContext
from .route_class import (
    DEFAULT_ROUTE_PREFIXES,
    RatePolicy,
    RouteClass,
    RouteResolver,
)
from .stores import InMemoryWindowStore


@dataclass
class RateLimiterConfig:
    """
    Rate limiter configuration.

    Every route class always has a policy; missing entries fall back to the
    class default.
    """

    policies: Dict[RouteClass, RatePolicy] = field(default_factory=dict)
    route_prefixes: Dict[str, RouteClass] = field(
        default_factory=lambda: dict(DEFAULT_ROUTE_PREFIXES)
    )
    key_by_identity: bool = True
    max_tracked_keys: int = InMemoryWindowStore.DEFAULT_MAX_KEYS

    def __post_init__(self):
        for route_class in RouteClass:
            self.policies.setdefault(route_class, route_class.get_default_policy())
        for route_class, policy in self.policies.items():
            if not isinstance(route_class, RouteClass):
                raise ValueError(f"Unknown route class: {route_class!r}")
            if not isinstance(policy, RatePolicy):
                raise ValueError(f"Policy for {route_class.value} must be a RatePolicy")
        if self.max_tracked_keys <= 0:
            raise ValueError("max_tracked_keys must be positive")

    def policy_for(self, route_class: RouteClass) -> RatePolicy:
        return self.policies[route_class]

    @classmethod
    def from_config_dict(cls, config: Dict) -> 'RateLimiterConfig':
        """
        Create configuration from the ``rate_limit`` section.

        Raises:
            ValueError: If configuration is invalid
        """
        try:
            policies = {}
            for name, policy_config in (config.get('policies') or {}).items():
                route_class = RouteClass.from_string(name)
                if route_class is None:
                    raise ValueError(f"unknown route class '{name}'")
                policies[route_class] = RatePolicy.from_config_dict(
                    policy_config or {}, route_class.get_default_policy()
                )

            route_prefixes = dict(DEFAULT_ROUTE_PREFIXES)
            if config.get('route_prefixes') is not None:
                route_prefixes = {}
                for prefix, name in config['route_prefixes'].items():
                    route_class = RouteClass.from_string(name)
                    if route_class is None:
                        raise ValueError(f"unknown route class '{name}' for prefix '{prefix}'")
                    route_prefixes[prefix] = route_class

            return cls(
                policies=policies,
                route_prefixes=route_prefixes,
                key_by_identity=bool(config.get('key_by_identity', True)),
                max_tracked_keys=int(
                    config.get('max_tracked_keys', InMemoryWindowStore.DEFAULT_MAX_KEYS)
                ),
            )
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise ValueError(f"Invalid rate limit configuration: {e}")


@dataclass(frozen=True)
class RateDecision:
    """Outcome of one rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_after: float
    retry_after: Optional[float] = None
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        """Informational RateLimit-* headers, plus Retry-After on rejection."""
        if self.degraded:
            return {}
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(self.retry_after)))
        return headers


class RateLimiter:
    """
    Fixed-window counter.

    The first request in a window starts it with count 1; a request whose
    count exceeds the class maximum is rejected with the remaining window
    time as retry hint.
    """

    def __init__(self, config: Optional[RateLimiterConfig] = None, store=None, clock=None):
        """
        Initialize rate limiter.

        Args:
            config: Rate limiter configuration
            store: Window store (defaults to a private in-memory store)
            clock: Time source
        """
        self.config = config or RateLimiterConfig()
        if store is None:
            store = InMemoryWindowStore(max_keys=self.config.max_tracked_keys)
        self.store = store
        self.clock = clock or SystemClock()
        self.resolver = RouteResolver(self.config.route_prefixes)
        self.logger = logging.getLogger(__name__)

    def check(self, key: str, route_class: RouteClass) -> RateDecision:
        """
        Count one request for ``key`` against its route class policy.

        Never raises: any internal failure allows the request.
        """
        policy = self.config.policy_for(route_class)
        try:
            now = self.clock.now()
            window = self.store.increment(
                f"{route_class.value}:{key}", policy.window_seconds, now
            )
            reset_after = window.remaining_seconds(now, policy.window_seconds)
        except Exception as e:
            self.logger.error(
                f"Rate limiter state failure for {route_class.value} - allowing request: {e}"
            )
            return RateDecision(
                allowed=True,
                limit=policy.max_requests,
                remaining=policy.max_requests,
                reset_after=policy.window_seconds,
                degraded=True,
            )

        if window.count > policy.max_requests:
            self.logger.warning(
                f"Rate limit exceeded: key={key[:80]} class={route_class.value} "
                f"count={window.count}/{policy.max_requests}"
            )
            return RateDecision(
                allowed=False,
                limit=policy.max_requests,
                remaining=0,
                reset_after=reset_after,
                retry_after=reset_after,
            )

        return RateDecision(
            allowed=True,
            limit=policy.max_requests,
            remaining=policy.max_requests - window.count,
            reset_after=reset_after,
        )

    def check_request(self, request: RequestContext) -> RateDecision:
        return self.check(self.client_key(request), self.resolver.resolve(request.path))

    def client_key(self, request: RequestContext) -> str:
        """Source IP, combined with the authenticated user when configured."""
        if self.config.key_by_identity and request.user_id:
            return f"{request.client_ip}|{request.user_id}"
        return request.client_ip

    def route_class_for(self, request: RequestContext) -> RouteClass:
        return self.resolver.resolve(request.path)
