#!/usr/bin/env python3
"""
Suspicious-activity monitor with per-IP suspicion scoring.

inspect() runs heuristic detectors against a request and returns signals
without touching state. assess() records a request's signals against the
client IP and owns the block decision. on_response() observes outcomes the
request alone cannot reveal (401/403 responses, slow or failing handlers).

Suspicion accounting:
- A request carrying at least one signal increments the IP's count once
  and emits one SUSPICIOUS_REQUEST event listing every signal
- With blocking enabled, a signalled request is blocked once the count
  reaches the threshold; the count is not incremented past the threshold
- With blocking disabled the count keeps growing
- Reaching the threshold emits one UNUSUAL_TRAFFIC_PATTERN event
- A request without signals is never blocked by the monitor

Security Considerations:
- Detectors are a declarative table; inspect() is pure
- The tracked-IP map is bounded and purged by age
- User agents are truncated before they reach logs or events
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from .clock import SystemClock
from .events import AuditTrail, EventKind
from .request import RequestContext
from .stores import InMemoryRecordStore


# (name, pattern, category)
USER_AGENT_SIGNATURES: List[Tuple[str, Pattern, str]] = [
    (name, re.compile(name, re.IGNORECASE), "user_agent")
    for name in (
        "sqlmap", "nmap", "nikto", "dirbuster", "gobuster", "wpscan", "joomlavs",
        "drupal", "acunetix", "openvas", "nessus", "qualys", "rapid7", "metasploit",
        "burpsuite", "owasp", "zaproxy", "postman", "insomnia", "httpie",
    )
]

SENSITIVE_PATHS: List[Tuple[str, Pattern, str]] = [
    ("parent_directory", re.compile(r"\.\."), "path"),
    ("wp_admin", re.compile(r"wp-admin", re.IGNORECASE), "path"),
    ("wp_content", re.compile(r"wp-content", re.IGNORECASE), "path"),
    ("wp_includes", re.compile(r"wp-includes", re.IGNORECASE), "path"),
    ("administrator", re.compile(r"administrator", re.IGNORECASE), "path"),
    ("admin", re.compile(r"admin", re.IGNORECASE), "path"),
    ("phpmyadmin", re.compile(r"phpmyadmin", re.IGNORECASE), "path"),
    ("mysql", re.compile(r"mysql", re.IGNORECASE), "path"),
    ("backup", re.compile(r"backup", re.IGNORECASE), "path"),
    ("dotenv", re.compile(r"\.env", re.IGNORECASE), "path"),
    ("git", re.compile(r"\.git", re.IGNORECASE), "path"),
    ("config", re.compile(r"config", re.IGNORECASE), "path"),
    ("database", re.compile(r"database", re.IGNORECASE), "path"),
    ("sql_file", re.compile(r"\.sql", re.IGNORECASE), "path"),
    ("dump", re.compile(r"dump", re.IGNORECASE), "path"),
]

SPOOFABLE_IP_HEADERS: List[Tuple[str, Pattern, str]] = [
    (name, re.compile(re.escape(name), re.IGNORECASE), "header")
    for name in (
        "x-forwarded-for", "x-real-ip", "x-client-ip", "x-remote-addr",
        "x-remote-ip", "x-cluster-client-ip", "x-forwarded", "forwarded",
    )
]

HTML_METACHARACTERS = re.compile(r"[<>'\"&]")

RELEVANT_HEADERS = (
    "user-agent", "accept", "accept-language", "accept-encoding", "cache-control",
    "pragma", "connection", "host", "origin", "referer",
)

MAX_LOGGED_USER_AGENT = 200


@dataclass(frozen=True)
class Signal:
    """One positive heuristic match."""

    name: str
    category: str
    detail: str

    def describe(self) -> str:
        return f"{self.category}:{self.name}"


@dataclass
class SuspicionRecord:
    """Per-IP suspicion counter. Mutated only under the store's key lock."""

    ip: str
    count: int = 0
    last_seen: float = 0.0


@dataclass(frozen=True)
class MonitorDecision:
    """Outcome of assess()."""

    blocked: bool
    signals: List[Signal] = field(default_factory=list)
    score: int = 0


@dataclass
class MonitorConfig:
    """Security monitor configuration."""

    block_suspicious: bool = False
    suspicious_threshold: int = 3
    log_all_requests: bool = False
    max_query_params: int = 20
    max_tracked_ips: int = 10000
    record_max_age: float = 86400.0
    slow_response_threshold: float = 5.0

    def __post_init__(self):
        if self.suspicious_threshold < 1:
            raise ValueError(f"suspicious_threshold must be at least 1, got: {self.suspicious_threshold}")
        if self.max_query_params < 0:
            raise ValueError("max_query_params cannot be negative")
        if self.max_tracked_ips <= 0:
            raise ValueError("max_tracked_ips must be positive")
        if self.record_max_age <= 0:
            raise ValueError("record_max_age must be positive")
        if self.slow_response_threshold <= 0:
            raise ValueError("slow_response_threshold must be positive")

    @classmethod
    def from_config_dict(cls, config: Dict) -> 'MonitorConfig':
        defaults = cls()
        try:
            return cls(
                block_suspicious=bool(config.get('block_suspicious', defaults.block_suspicious)),
                suspicious_threshold=int(config.get('suspicious_threshold', defaults.suspicious_threshold)),
                log_all_requests=bool(config.get('log_all_requests', defaults.log_all_requests)),
                max_query_params=int(config.get('max_query_params', defaults.max_query_params)),
                max_tracked_ips=int(config.get('max_tracked_ips', defaults.max_tracked_ips)),
                record_max_age=float(config.get('record_max_age', defaults.record_max_age)),
                slow_response_threshold=float(
                    config.get('slow_response_threshold', defaults.slow_response_threshold)
                ),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValueError(f"Invalid monitor configuration: {e}")


class SecurityMonitor:
    """Per-IP suspicion scoring and outcome observation."""

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        store: Optional[InMemoryRecordStore] = None,
        clock=None,
        audit: Optional[AuditTrail] = None,
    ):
        self.config = config or MonitorConfig()
        self.store = store if store is not None else InMemoryRecordStore()
        self.clock = clock or SystemClock()
        self.audit = audit if audit is not None else AuditTrail(clock=self.clock)
        self.logger = logging.getLogger(__name__)

    def inspect(self, request: RequestContext) -> List[Signal]:
        """Run every detector against ``request``. No side effects."""
        signals: List[Signal] = []

        user_agent = request.user_agent
        if user_agent:
            for name, pattern, category in USER_AGENT_SIGNATURES:
                if pattern.search(user_agent):
                    signals.append(Signal(name, category, user_agent[:MAX_LOGGED_USER_AGENT]))

        for name, pattern, category in SENSITIVE_PATHS:
            if pattern.search(request.path):
                signals.append(Signal(name, category, request.path))

        for header_name in request.headers:
            for name, pattern, category in SPOOFABLE_IP_HEADERS:
                if pattern.search(header_name):
                    signals.append(Signal(name, category, header_name))

        if request.method == "POST" and not request.body and request.content_length > 0:
            signals.append(Signal(
                "empty_body", "structure", "POST with content-length but no body"
            ))

        if len(request.query) > self.config.max_query_params:
            signals.append(Signal(
                "too_many_query_params", "structure", f"{len(request.query)} query parameters"
            ))

        for key, value in request.query.items():
            if isinstance(value, str) and HTML_METACHARACTERS.search(value):
                signals.append(Signal("html_in_query", "structure", str(key)))

        return signals

    def assess(
        self,
        request: RequestContext,
        extra_signals: Sequence[Signal] = (),
    ) -> MonitorDecision:
        """
        Inspect ``request``, record its signals and decide whether to block.

        Args:
            request: Request to assess
            extra_signals: Findings from earlier stages (e.g. payload issues)
        """
        signals = self.inspect(request) + list(extra_signals)

        if self.config.log_all_requests:
            self._log_request(request)

        if not signals:
            return MonitorDecision(blocked=False, signals=[], score=self.score(request.client_ip))

        ip = request.client_ip
        now = self.clock.now()
        threshold = self.config.suspicious_threshold
        reached_threshold = False
        with self.store.lock(ip):
            record = self.store.get(ip) or SuspicionRecord(ip=ip)
            # A blocking monitor stops counting once it starts blocking
            if not self.config.block_suspicious or record.count < threshold:
                record.count += 1
                reached_threshold = record.count == threshold
            record.last_seen = now
            self.store.set(ip, record)
            score = record.count

        if len(self.store) > self.config.max_tracked_ips:
            self._evict_stale(now)

        self.audit.emit(
            EventKind.SUSPICIOUS_REQUEST,
            ip=ip,
            path=request.path,
            method=request.method,
            detail={
                'signals': [signal.describe() for signal in signals],
                'suspicious_count': score,
                'user_agent': request.user_agent[:MAX_LOGGED_USER_AGENT],
            },
        )
        if reached_threshold:
            self.audit.emit(
                EventKind.UNUSUAL_TRAFFIC_PATTERN,
                ip=ip,
                path=request.path,
                method=request.method,
                detail={'suspicious_count': score, 'threshold': threshold},
            )

        blocked = self.config.block_suspicious and score >= threshold
        if blocked:
            self.logger.warning(
                f"Blocking suspicious IP {ip[:45]}: count={score} "
                f"signals={[signal.describe() for signal in signals]}"
            )
        return MonitorDecision(blocked=blocked, signals=signals, score=score)

    def score(self, ip: str) -> int:
        record = self.store.get(ip)
        return record.count if record else 0

    def on_response(
        self,
        ip: str,
        status_code: int,
        request: Optional[RequestContext] = None,
        duration: Optional[float] = None,
    ) -> None:
        """Observe a downstream response for ``ip``."""
        path = request.path if request else ""
        method = request.method if request else ""

        slow = duration is not None and duration > self.config.slow_response_threshold
        if slow or status_code >= 400:
            duration_text = f"{duration:.3f}s" if duration is not None else "n/a"
            self.logger.warning(
                f"Slow or error response: ip={ip[:45]} {method} {path} "
                f"status={status_code} duration={duration_text}"
            )

        if status_code == 401:
            kind = EventKind.AUTH_FAILURE
        elif status_code == 403:
            kind = EventKind.UNAUTHORIZED_ACCESS
        else:
            return

        self.audit.emit(
            kind,
            ip=ip,
            path=path,
            method=method,
            detail={
                'status': status_code,
                'attempted_action': f"{method} {path}".strip(),
            },
        )

    def _log_request(self, request: RequestContext) -> None:
        headers = {
            name: request.headers[name] for name in RELEVANT_HEADERS if name in request.headers
        }
        try:
            body_size = len(json.dumps(request.body)) if request.body is not None else 0
        except (TypeError, ValueError):
            body_size = -1
        self.logger.info(
            f"Request logged: ip={request.client_ip} {request.method} {request.path} "
            f"user={request.user_id or 'anonymous'} headers={headers} body_size={body_size}"
        )

    def _evict_stale(self, now: float) -> int:
        cutoff = now - self.config.record_max_age
        removed = self.store.prune(lambda record: record.last_seen < cutoff)
        if removed:
            self.logger.debug(f"Pruned {removed} suspicion records older than {self.config.record_max_age:.0f}s")
        return removed


def payload_signals(findings: Sequence[Any]) -> List[Signal]:
    """Convert sanitizer findings into monitor signals."""
    signals = []
    for finding in findings:
        for family in finding.classification.families:
            signals.append(Signal(
                family.value, "payload", f"{finding.location}:{finding.field}"
            ))
    return signals
