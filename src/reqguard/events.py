#!/usr/bin/env python3
"""
Security events and the append-only audit trail.

Components emit SecurityEvent records; the trail fans them out to the
audit logger, the metrics registry and any subscribed alerting sinks. The
pipeline itself never reads events back.

Security Considerations:
- Events are immutable once created
- Each audit line carries a SHA-256 checksum of its details for integrity
- A failing subscriber is logged and skipped; it can never fail a request
"""

import hashlib
import json
import logging
import secrets
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .clock import SystemClock
from .metrics import SECURITY_EVENTS


class EventKind(Enum):
    """Kinds of security events recorded by the pipeline."""

    SUSPICIOUS_REQUEST = "suspicious_request"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    AUTH_FAILURE = "auth_failure"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    SUSPICIOUS_PAYLOAD = "suspicious_payload"
    SQL_INJECTION_ATTEMPT = "sql_injection_attempt"
    XSS_ATTEMPT = "xss_attempt"
    PATH_TRAVERSAL_ATTEMPT = "path_traversal_attempt"
    BRUTE_FORCE_ATTEMPT = "brute_force_attempt"
    SUSPICIOUS_USER_AGENT = "suspicious_user_agent"
    UNUSUAL_TRAFFIC_PATTERN = "unusual_traffic_pattern"

    def get_severity(self) -> str:
        """Severity level for logging/metrics."""
        severity = {
            EventKind.SUSPICIOUS_REQUEST: "warning",
            EventKind.RATE_LIMIT_EXCEEDED: "warning",
            EventKind.AUTH_FAILURE: "warning",
            EventKind.UNAUTHORIZED_ACCESS: "warning",
            EventKind.SUSPICIOUS_PAYLOAD: "warning",
            EventKind.SQL_INJECTION_ATTEMPT: "error",
            EventKind.XSS_ATTEMPT: "error",
            EventKind.PATH_TRAVERSAL_ATTEMPT: "error",
            EventKind.BRUTE_FORCE_ATTEMPT: "error",
            EventKind.SUSPICIOUS_USER_AGENT: "warning",
            EventKind.UNUSUAL_TRAFFIC_PATTERN: "warning",
        }
        return severity[self]


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable audit record."""

    kind: EventKind
    ip: str
    path: str
    method: str
    timestamp: float
    detail: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: secrets.token_hex(16))

    def __post_init__(self):
        if not isinstance(self.kind, EventKind):
            raise ValueError("kind must be EventKind enum")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'event_type': self.kind.value,
            'severity': self.kind.get_severity(),
            'timestamp': datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            'ip': self.ip,
            'path': self.path,
            'method': self.method,
            'details': self.detail,
        }


EventSubscriber = Callable[[SecurityEvent], None]


class AuditTrail:
    """
    Append-only sink for security events.

    Keeps a bounded in-memory tail for operators and tests, writes one JSON
    line per event to the ``reqguard.audit`` logger and notifies subscribers
    in registration order.
    """

    DEFAULT_MAX_EVENTS = 1000

    def __init__(self, clock=None, max_events: int = DEFAULT_MAX_EVENTS):
        if max_events <= 0:
            raise ValueError("max_events must be positive")
        self.clock = clock or SystemClock()
        self.logger = logging.getLogger(__name__)
        self.audit_logger = logging.getLogger('reqguard.audit')
        self._events = deque(maxlen=max_events)
        self._subscribers: List[EventSubscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: EventSubscriber) -> None:
        """Register an external alerting/logging collaborator."""
        with self._lock:
            self._subscribers.append(subscriber)

    def emit(
        self,
        kind: EventKind,
        ip: str,
        path: str = "",
        method: str = "",
        detail: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        """
        Record a security event.

        Args:
            kind: Event kind
            ip: Client IP the event concerns
            path: Request path
            method: Request method
            detail: Free-form, JSON-serializable details

        Returns:
            The recorded event
        """
        event = SecurityEvent(
            kind=kind,
            ip=ip,
            path=path,
            method=method,
            timestamp=self.clock.wall_time(),
            detail=dict(detail or {}),
        )

        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)

        SECURITY_EVENTS.labels(
            event_type=kind.value, severity=kind.get_severity()
        ).inc()
        self._write_audit_line(event)

        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as e:
                self.logger.error(
                    f"Audit subscriber {getattr(subscriber, '__name__', subscriber)!r} "
                    f"failed for {kind.value}: {e}"
                )

        return event

    def recent(self, limit: Optional[int] = None) -> List[SecurityEvent]:
        """Most recent events, oldest first."""
        with self._lock:
            events = list(self._events)
        if limit is not None:
            events = events[-limit:]
        return events

    def count(self, kind: Optional[EventKind] = None) -> int:
        """Number of retained events, optionally of a single kind."""
        with self._lock:
            if kind is None:
                return len(self._events)
            return sum(1 for event in self._events if event.kind == kind)

    def __len__(self) -> int:
        return self.count()

    def _write_audit_line(self, event: SecurityEvent) -> None:
        record = event.to_dict()
        record['checksum'] = self._calculate_checksum(record['details'])
        level = getattr(logging, event.kind.get_severity().upper(), logging.WARNING)
        self.audit_logger.log(
            level,
            json.dumps(record, default=str),
            extra={'event_type': event.kind.value},
        )

    @staticmethod
    def _calculate_checksum(details: Dict[str, Any]) -> str:
        """Checksum over the event details for audit record integrity."""
        data_str = json.dumps(details, sort_keys=True, default=str)
        return hashlib.sha256(data_str.encode()).hexdigest()
