#!/usr/bin/env python3
"""
Route classes and their rate-limit policies.

A route class is a named category of endpoints sharing one fixed-window
policy. Classes are resolved from the request path by longest matching
prefix, so ``/api/auth/login`` is ``auth`` even though ``/api/`` also
matches.

Security Considerations:
- Authentication and admin endpoints get far stricter budgets than the
  general class
- Unknown class names from configuration are rejected, never defaulted
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple


class RouteClass(Enum):
    """Endpoint categories with independent rate-limit policies."""

    GENERAL = "general"
    AUTH = "auth"
    API = "api"
    UPLOAD = "upload"
    ADMIN = "admin"

    @classmethod
    def from_string(cls, value: str) -> Optional['RouteClass']:
        """Convert string to route class, None when unknown."""
        try:
            return cls(value)
        except ValueError:
            return None

    def get_default_policy(self) -> 'RatePolicy':
        # (window seconds, max requests)
        defaults = {
            RouteClass.GENERAL: (900.0, 1000),
            RouteClass.AUTH: (900.0, 10),
            RouteClass.API: (900.0, 500),
            RouteClass.UPLOAD: (3600.0, 50),
            RouteClass.ADMIN: (900.0, 50),
        }
        window_seconds, max_requests = defaults[self]
        return RatePolicy(window_seconds=window_seconds, max_requests=max_requests)


DEFAULT_ROUTE_PREFIXES: Dict[str, RouteClass] = {
    "/api/auth": RouteClass.AUTH,
    "/api/admin": RouteClass.ADMIN,
    "/api/files": RouteClass.UPLOAD,
    "/api/": RouteClass.API,
}


@dataclass(frozen=True)
class RatePolicy:
    """Fixed-window budget: at most ``max_requests`` per ``window_seconds``."""

    window_seconds: float
    max_requests: int

    def __post_init__(self):
        if self.window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got: {self.window_seconds}")
        if self.max_requests < 1:
            raise ValueError(f"max_requests must be at least 1, got: {self.max_requests}")

    @classmethod
    def from_config_dict(cls, config: Dict, default: 'RatePolicy') -> 'RatePolicy':
        return cls(
            window_seconds=float(config.get('window_seconds', default.window_seconds)),
            max_requests=int(config.get('max_requests', default.max_requests)),
        )


def path_matches(path: str, prefix: str) -> bool:
    """True when ``path`` is ``prefix`` or lies below it on a segment boundary."""
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


class RouteResolver:
    """Map request paths to route classes by longest segment-aligned prefix."""

    def __init__(self, prefixes: Optional[Dict[str, RouteClass]] = None):
        prefixes = DEFAULT_ROUTE_PREFIXES if prefixes is None else prefixes
        for prefix, route_class in prefixes.items():
            if not prefix.startswith("/"):
                raise ValueError(f"Route prefix must start with '/': {prefix!r}")
            if not isinstance(route_class, RouteClass):
                raise ValueError(f"Prefix {prefix!r} must map to a RouteClass")
        # Longest first so the most specific prefix wins
        self._prefixes: List[Tuple[str, RouteClass]] = sorted(
            prefixes.items(), key=lambda item: len(item[0]), reverse=True
        )

    def resolve(self, path: str) -> RouteClass:
        for prefix, route_class in self._prefixes:
            if path_matches(path, prefix):
                return route_class
        return RouteClass.GENERAL

    @property
    def prefixes(self) -> Dict[str, RouteClass]:
        return dict(self._prefixes)
