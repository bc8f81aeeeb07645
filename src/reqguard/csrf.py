#!/usr/bin/env python3
"""
CSRF protection with per-session secrets.

A session gets one random secret on its first safe request. The token is a
pure function of that secret:

    token = hex(HMAC-SHA256(secret, TOKEN_CONTEXT)[:token_length])

so a token issued in one request verifies in any later request of the same
session, for as long as the secret lives (``secret_ttl``). Nothing about the
current time goes into the token.

Security Considerations:
- Secrets come from the CSPRNG and are never logged or serialized
- Verification uses hmac.compare_digest on equal-length inputs; a length
  mismatch is rejected before any byte comparison
- Bearer-authenticated API calls are exempt: browsers do not attach bearer
  credentials automatically, so they cannot be forged cross-site
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from http.cookies import SimpleCookie
from typing import Dict, List, Optional, Tuple

from .clock import SystemClock
from .request import RequestContext
from .route_class import path_matches
from .stores import InMemoryRecordStore


TOKEN_CONTEXT = b"reqguard-csrf-token-v1"

SAME_SITE_VALUES = ("Strict", "Lax", "None")


@dataclass
class CsrfConfig:
    """CSRF guard configuration."""

    secret_length: int = 32
    token_length: int = 32
    secret_ttl: float = 3600.0
    cookie_name: str = "csrf-token"
    header_name: str = "X-CSRF-Token"
    body_field: str = "_csrf"
    cookie_secure: bool = True
    cookie_http_only: bool = False
    cookie_same_site: str = "Strict"
    cookie_path: str = "/"
    public_paths: List[str] = field(
        default_factory=lambda: ["/health", "/metrics", "/docs", "/api-docs"]
    )
    api_prefix: str = "/api/"
    max_sessions: int = 100000

    def __post_init__(self):
        if self.secret_length < 16:
            raise ValueError(f"secret_length must be at least 16 bytes, got: {self.secret_length}")
        if not 16 <= self.token_length <= 32:
            raise ValueError(f"token_length must be between 16 and 32 bytes, got: {self.token_length}")
        if self.secret_ttl <= 0:
            raise ValueError("secret_ttl must be positive")
        if not self.cookie_name or not self.header_name:
            raise ValueError("cookie_name and header_name are required")
        if self.cookie_same_site not in SAME_SITE_VALUES:
            raise ValueError(f"cookie_same_site must be one of {SAME_SITE_VALUES}")
        if self.cookie_same_site == "None" and not self.cookie_secure:
            raise ValueError("SameSite=None requires a secure cookie")
        if self.max_sessions <= 0:
            raise ValueError("max_sessions must be positive")

    @classmethod
    def from_config_dict(cls, config: Dict) -> 'CsrfConfig':
        defaults = cls()
        try:
            cookie = config.get('cookie', {}) or {}
            return cls(
                secret_length=int(config.get('secret_length', defaults.secret_length)),
                token_length=int(config.get('token_length', defaults.token_length)),
                secret_ttl=float(config.get('secret_ttl', defaults.secret_ttl)),
                cookie_name=str(config.get('cookie_name', defaults.cookie_name)),
                header_name=str(config.get('header_name', defaults.header_name)),
                body_field=str(config.get('body_field', defaults.body_field)),
                cookie_secure=bool(cookie.get('secure', defaults.cookie_secure)),
                cookie_http_only=bool(cookie.get('http_only', defaults.cookie_http_only)),
                cookie_same_site=str(cookie.get('same_site', defaults.cookie_same_site)),
                cookie_path=str(cookie.get('path', defaults.cookie_path)),
                public_paths=list(config.get('public_paths', defaults.public_paths)),
                api_prefix=str(config.get('api_prefix', defaults.api_prefix)),
                max_sessions=int(config.get('max_sessions', defaults.max_sessions)),
            )
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise ValueError(f"Invalid CSRF configuration: {e}")


@dataclass(frozen=True)
class CsrfSecret:
    """Per-session secret. Immutable for its lifetime."""

    session_id: str
    secret: bytes = field(repr=False)
    created_at: float

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.created_at >= ttl


class CsrfGuard:
    """Issue and verify session-bound CSRF tokens."""

    def __init__(
        self,
        config: Optional[CsrfConfig] = None,
        store: Optional[InMemoryRecordStore] = None,
        clock=None,
    ):
        self.config = config or CsrfConfig()
        self.store = store if store is not None else InMemoryRecordStore()
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger(__name__)

    def issue(self, session_id: str) -> Tuple[bytes, str]:
        """
        Return the session's secret and token, creating the secret if needed.

        An expired secret is replaced, which invalidates tokens derived from
        the old one.

        Raises:
            ValueError: If session_id is empty
        """
        if not session_id:
            raise ValueError("session_id is required to issue a CSRF token")

        now = self.clock.now()
        with self.store.lock(session_id):
            record = self.store.get(session_id)
            if record is None or record.is_expired(now, self.config.secret_ttl):
                record = CsrfSecret(
                    session_id=session_id,
                    secret=self.clock.random_bytes(self.config.secret_length),
                    created_at=now,
                )
                self.store.set(session_id, record)
                created = True
            else:
                created = False

        if created:
            self.logger.debug("Issued new CSRF secret for session")
            if len(self.store) > self.config.max_sessions:
                self._evict_expired(now)

        return record.secret, self.derive_token(record.secret)

    def verify(self, session_id: Optional[str], provided_token: Optional[str]) -> bool:
        """
        True iff ``provided_token`` equals the token of the session's live secret.
        """
        if not session_id or not provided_token:
            return False

        now = self.clock.now()
        with self.store.lock(session_id):
            record = self.store.get(session_id)
            if record is None:
                return False
            if record.is_expired(now, self.config.secret_ttl):
                self.store.delete(session_id)
                return False
            secret = record.secret

        expected = self.derive_token(secret).encode('ascii')
        try:
            provided = provided_token.encode('ascii')
        except UnicodeEncodeError:
            return False

        if len(provided) != len(expected):
            return False
        return hmac.compare_digest(provided, expected)

    def derive_token(self, secret: bytes) -> str:
        digest = hmac.new(secret, TOKEN_CONTEXT, hashlib.sha256).digest()
        return digest[:self.config.token_length].hex()

    def is_exempt(self, request: RequestContext) -> bool:
        """Safe methods, public paths and bearer-authenticated API calls."""
        if request.is_safe_method:
            return True
        if any(path_matches(request.path, public) for public in self.config.public_paths):
            return True
        return (
            path_matches(request.path, self.config.api_prefix)
            and request.bearer_token is not None
        )

    def extract_token(self, request: RequestContext) -> Optional[str]:
        """Token from the configured header, else from the body field."""
        token = request.header(self.config.header_name)
        if token:
            return token.strip()
        if isinstance(request.body, dict):
            value = request.body.get(self.config.body_field)
            if isinstance(value, str) and value:
                return value.strip()
        return None

    def build_cookie(self, token: str) -> str:
        """Set-Cookie header value carrying ``token``."""
        cookie = SimpleCookie()
        name = self.config.cookie_name
        cookie[name] = token
        cookie[name]['path'] = self.config.cookie_path
        cookie[name]['samesite'] = self.config.cookie_same_site
        cookie[name]['max-age'] = int(self.config.secret_ttl)
        if self.config.cookie_secure:
            cookie[name]['secure'] = True
        if self.config.cookie_http_only:
            cookie[name]['httponly'] = True
        return cookie[name].OutputString()

    def revoke(self, session_id: str) -> bool:
        """Drop a session's secret (e.g. on logout)."""
        with self.store.lock(session_id):
            return self.store.delete(session_id)

    def _evict_expired(self, now: float) -> int:
        removed = self.store.prune(
            lambda record: record.is_expired(now, self.config.secret_ttl)
        )
        if removed:
            self.logger.debug(f"Evicted {removed} expired CSRF secrets")
        return removed
