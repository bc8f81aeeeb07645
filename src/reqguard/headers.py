#!/usr/bin/env python3
"""Static security headers added to every pipeline response."""

from dataclasses import dataclass, field
from typing import Dict, List


DEFAULT_CSP_DIRECTIVES = [
    "default-src 'self'",
    "script-src 'self'",
    "style-src 'self' 'unsafe-inline'",
    "img-src 'self' data: https:",
    "connect-src 'self'",
    "font-src 'self'",
    "object-src 'none'",
    "frame-src 'none'",
    "base-uri 'self'",
    "form-action 'self'",
]

DEFAULT_PERMISSIONS_POLICY = "camera=(), microphone=(), geolocation=(), payment=()"

FRAME_OPTIONS = ("DENY", "SAMEORIGIN")


@dataclass
class SecurityHeadersConfig:
    """Security header settings."""

    enabled: bool = True
    csp_directives: List[str] = field(default_factory=lambda: list(DEFAULT_CSP_DIRECTIVES))
    hsts_max_age: int = 31536000
    hsts_include_subdomains: bool = True
    hsts_preload: bool = True
    frame_options: str = "DENY"
    referrer_policy: str = "strict-origin-when-cross-origin"
    permissions_policy: str = DEFAULT_PERMISSIONS_POLICY
    extra: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.hsts_max_age < 0:
            raise ValueError("hsts_max_age cannot be negative")
        if self.frame_options not in FRAME_OPTIONS:
            raise ValueError(f"frame_options must be one of {FRAME_OPTIONS}")

    @classmethod
    def from_config_dict(cls, config: Dict) -> 'SecurityHeadersConfig':
        defaults = cls()
        try:
            return cls(
                enabled=bool(config.get('enabled', True)),
                csp_directives=list(config.get('csp_directives', defaults.csp_directives)),
                hsts_max_age=int(config.get('hsts_max_age', defaults.hsts_max_age)),
                hsts_include_subdomains=bool(
                    config.get('hsts_include_subdomains', defaults.hsts_include_subdomains)
                ),
                hsts_preload=bool(config.get('hsts_preload', defaults.hsts_preload)),
                frame_options=str(config.get('frame_options', defaults.frame_options)),
                referrer_policy=str(config.get('referrer_policy', defaults.referrer_policy)),
                permissions_policy=str(config.get('permissions_policy', defaults.permissions_policy)),
                extra={str(k): str(v) for k, v in (config.get('extra') or {}).items()},
            )
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise ValueError(f"Invalid headers configuration: {e}")


class SecurityHeaders:
    """Builds the fixed header set once; every call returns a fresh copy."""

    def __init__(self, config: SecurityHeadersConfig = None):
        self.config = config or SecurityHeadersConfig()
        self._headers = self._build() if self.config.enabled else {}

    def get_security_headers(self) -> Dict[str, str]:
        return dict(self._headers)

    def _build(self) -> Dict[str, str]:
        hsts = f"max-age={self.config.hsts_max_age}"
        if self.config.hsts_include_subdomains:
            hsts += "; includeSubDomains"
        if self.config.hsts_preload:
            hsts += "; preload"

        headers = {
            'Content-Security-Policy': '; '.join(self.config.csp_directives),
            'Strict-Transport-Security': hsts,
            'X-Content-Type-Options': 'nosniff',
            'X-Frame-Options': self.config.frame_options,
            'X-XSS-Protection': '1; mode=block',
            'Referrer-Policy': self.config.referrer_policy,
            'Permissions-Policy': self.config.permissions_policy,
        }
        headers.update(self.config.extra)
        return headers
