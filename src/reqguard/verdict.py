#!/usr/bin/env python3
"""
Stage verdicts and terminal error responses.

Every pipeline stage returns either Allow or Reject. The orchestrator
branches on the verdict type; no exception is used to short-circuit the
chain.

Security Considerations:
- Immutable verdicts prevent later stages from rewriting an earlier decision
- Error bodies are built only from the fixed ErrorCode table, so internal
  state and exception text can never reach a client
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Union

from .request import RequestContext


class ErrorCode(Enum):
    """
    Stable error codes carried in the ``code`` field of terminal responses.

    Clients branch on these values, so they must never change meaning.
    """

    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    BRUTE_FORCE_LOCKOUT = "BRUTE_FORCE_LOCKOUT"
    CSRF_TOKEN_MISSING = "CSRF_TOKEN_MISSING"
    CSRF_TOKEN_INVALID = "CSRF_TOKEN_INVALID"
    CSRF_CHECK_FAILED = "CSRF_CHECK_FAILED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    MALICIOUS_PAYLOAD = "MALICIOUS_PAYLOAD"

    def get_status(self) -> int:
        """HTTP status for this code."""
        statuses = {
            ErrorCode.RATE_LIMIT_EXCEEDED: 429,
            ErrorCode.BRUTE_FORCE_LOCKOUT: 429,
            ErrorCode.CSRF_TOKEN_MISSING: 403,
            ErrorCode.CSRF_TOKEN_INVALID: 403,
            ErrorCode.CSRF_CHECK_FAILED: 403,
            ErrorCode.SUSPICIOUS_ACTIVITY: 403,
            ErrorCode.MALICIOUS_PAYLOAD: 400,
        }
        return statuses[self]

    def get_error_title(self) -> str:
        titles = {
            429: "Too Many Requests",
            403: "Forbidden",
            400: "Bad Request",
        }
        return titles[self.get_status()]

    def get_default_message(self) -> str:
        messages = {
            ErrorCode.RATE_LIMIT_EXCEEDED: "Too many requests, please try again later",
            ErrorCode.BRUTE_FORCE_LOCKOUT: "Too many failed attempts. Access temporarily locked.",
            ErrorCode.CSRF_TOKEN_MISSING: "CSRF token missing",
            ErrorCode.CSRF_TOKEN_INVALID: "Invalid CSRF token",
            ErrorCode.CSRF_CHECK_FAILED: "CSRF verification failed",
            ErrorCode.SUSPICIOUS_ACTIVITY: "Suspicious activity detected",
            ErrorCode.MALICIOUS_PAYLOAD: "Request contains potentially malicious content",
        }
        return messages[self]


@dataclass(frozen=True)
class Allow:
    """
    Pass-through verdict.

    ``request`` replaces the request seen by later stages when a stage
    transforms it; ``headers`` are added to the eventual response.
    """

    request: Optional[RequestContext] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Reject:
    """Terminal verdict: the pipeline answers with this response."""

    status: int
    body: Dict[str, str]
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        """Validate the response on creation."""
        if not 400 <= self.status <= 499:
            raise ValueError(f"Reject status must be a 4xx code, got: {self.status}")
        for key in ("error", "message", "code"):
            if not self.body.get(key):
                raise ValueError(f"Reject body requires '{key}'")

    @property
    def allowed(self) -> bool:
        return False

    @property
    def code(self) -> str:
        return self.body["code"]


Verdict = Union[Allow, Reject]


def reject(
    code: ErrorCode,
    message: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Reject:
    """
    Build a terminal response for an error code.

    Args:
        code: Stable error code
        message: Optional client-facing message (defaults per code)
        headers: Extra response headers (e.g. Retry-After)
    """
    return Reject(
        status=code.get_status(),
        body={
            "error": code.get_error_title(),
            "message": message or code.get_default_message(),
            "code": code.value,
        },
        headers=dict(headers or {}),
    )
