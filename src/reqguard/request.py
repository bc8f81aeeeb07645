#!/usr/bin/env python3
"""
Request descriptor consumed by the security pipeline.

The pipeline never sees a framework request object. Adapters (see asgi.py)
build a RequestContext from whatever the server provides, and every stage
works only from this descriptor.

Security Considerations:
- Header names are normalized to lower case once, at construction
- Client IPs are normalized (IPv4-mapped IPv6 collapsed) so one client
  cannot occupy two rate windows
- Identity is read-only: the pipeline consumes a decoded identity and never
  issues or refreshes credentials
"""

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

# Longest textual IPv6 address
MAX_IP_LENGTH = 45


def normalize_client_ip(raw_ip: Optional[str]) -> str:
    """
    Normalize a client IP address.

    Returns "unknown" for empty input and the stripped raw value when it is
    not a valid address, so a malformed peer address degrades to a single
    shared bucket instead of failing the request.
    """
    if not raw_ip:
        return "unknown"

    candidate = raw_ip.strip()[:MAX_IP_LENGTH]
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return candidate or "unknown"

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        return str(address.ipv4_mapped)
    return str(address)


@dataclass(frozen=True)
class Identity:
    """Decoded caller identity, produced upstream by authentication."""

    user_id: str
    session_id: Optional[str] = None
    scheme: str = "bearer"

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("Identity requires a user_id")


@dataclass
class RequestContext:
    """
    Everything the pipeline is allowed to know about an inbound request.

    Stages that transform the request (the sanitizer) return a copy made
    with dataclasses.replace; the original is never mutated after
    construction.
    """

    method: str
    path: str
    client_ip: str
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    path_params: Dict[str, Any] = field(default_factory=dict)
    files: Dict[str, str] = field(default_factory=dict)
    identity: Optional[Identity] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        self.method = (self.method or "GET").upper()
        self.path = self.path or "/"
        self.client_ip = normalize_client_ip(self.client_ip)
        self.headers = {
            str(name).lower(): str(value) for name, value in (self.headers or {}).items()
        }
        if self.session_id is None and self.identity is not None:
            self.session_id = self.identity.session_id

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower(), default)

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def bearer_token(self) -> Optional[str]:
        """Bearer credential from the Authorization header, if well formed."""
        authorization = self.headers.get("authorization", "")
        scheme, _, credential = authorization.partition(" ")
        if scheme.lower() != "bearer":
            return None
        credential = credential.strip()
        return credential or None

    @property
    def is_safe_method(self) -> bool:
        return self.method in SAFE_METHODS

    @property
    def content_length(self) -> int:
        try:
            return max(0, int(self.headers.get("content-length", "0")))
        except ValueError:
            return 0

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None
