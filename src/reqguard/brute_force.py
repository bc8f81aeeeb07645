#!/usr/bin/env python3
"""
Brute-force guard: sliding-window failure counting with temporary lockout.

Per-IP state machine:

    Normal --(attempts >= max_attempts within window)--> Blocked
    Blocked --(now >= blocked_until)--> Normal (attempts cleared)

The guard does not decide what a failure is. Callers report failures with
record_attempt() (the pipeline does so for configured response statuses on
authentication routes).

Security Considerations:
- Lockout is much longer than any rate-limit window and explicit
- Attempts outside the window are discarded before every count
- Records are bounded; stale, unblocked records are pruned first
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .clock import SystemClock
from .events import AuditTrail, EventKind
from .route_class import RouteClass
from .stores import InMemoryRecordStore


@dataclass
class BruteForceConfig:
    """Brute-force guard configuration (durations in seconds)."""

    max_attempts: int = 5
    window_seconds: float = 900.0
    block_duration: float = 3600.0
    failure_statuses: List[int] = field(default_factory=lambda: [401])
    protected_route_classes: List[RouteClass] = field(
        default_factory=lambda: [RouteClass.AUTH]
    )
    max_tracked_ips: int = 10000

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got: {self.max_attempts}")
        if self.window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got: {self.window_seconds}")
        if self.block_duration <= 0:
            raise ValueError(f"block_duration must be positive, got: {self.block_duration}")
        for status in self.failure_statuses:
            if not 400 <= status <= 599:
                raise ValueError(f"Failure status must be an error status, got: {status}")
        if self.max_tracked_ips <= 0:
            raise ValueError("max_tracked_ips must be positive")

    @classmethod
    def from_config_dict(cls, config: Dict) -> 'BruteForceConfig':
        try:
            route_classes = []
            for name in config.get('protected_route_classes', ['auth']):
                route_class = RouteClass.from_string(name)
                if route_class is None:
                    raise ValueError(f"unknown route class '{name}'")
                route_classes.append(route_class)

            return cls(
                max_attempts=int(config.get('max_attempts', 5)),
                window_seconds=float(config.get('window_seconds', 900)),
                block_duration=float(config.get('block_duration', 3600)),
                failure_statuses=[int(s) for s in config.get('failure_statuses', [401])],
                protected_route_classes=route_classes,
                max_tracked_ips=int(config.get('max_tracked_ips', 10000)),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValueError(f"Invalid brute force configuration: {e}")


@dataclass
class BruteForceRecord:
    """Failure history for one IP. Mutated only under the store's key lock."""

    ip: str
    attempts: List[float] = field(default_factory=list)
    blocked_until: Optional[float] = None


@dataclass(frozen=True)
class LockoutStatus:
    """Result of evaluate(): Allowed, or Blocked until a monotonic instant."""

    blocked: bool
    until: Optional[float] = None
    retry_after: Optional[float] = None


class BruteForceGuard:
    """Track authentication failures per IP and impose temporary lockouts."""

    def __init__(
        self,
        config: Optional[BruteForceConfig] = None,
        store: Optional[InMemoryRecordStore] = None,
        clock=None,
        audit: Optional[AuditTrail] = None,
    ):
        self.config = config or BruteForceConfig()
        self.store = store if store is not None else InMemoryRecordStore()
        self.clock = clock or SystemClock()
        self.audit = audit if audit is not None else AuditTrail(clock=self.clock)
        self.logger = logging.getLogger(__name__)

    def evaluate(self, ip: str) -> LockoutStatus:
        """
        Check whether ``ip`` is currently locked out.

        An expired lockout is cleared here and the IP's attempt history
        starts again from zero.
        """
        now = self.clock.now()
        with self.store.lock(ip):
            record = self.store.get(ip)
            if record is None or record.blocked_until is None:
                return LockoutStatus(blocked=False)

            if now < record.blocked_until:
                return LockoutStatus(
                    blocked=True,
                    until=record.blocked_until,
                    retry_after=record.blocked_until - now,
                )

            self.store.delete(ip)

        self.logger.info(f"Brute-force lockout expired for {ip[:45]}")
        return LockoutStatus(blocked=False)

    def record_attempt(self, ip: str, path: str = "", method: str = "") -> LockoutStatus:
        """
        Record one failed authentication attempt.

        Returns:
            The lockout status after recording
        """
        now = self.clock.now()
        window_start = now - self.config.window_seconds
        newly_blocked = False

        with self.store.lock(ip):
            record = self.store.get(ip) or BruteForceRecord(ip=ip)

            if record.blocked_until is not None:
                if now < record.blocked_until:
                    return LockoutStatus(
                        blocked=True,
                        until=record.blocked_until,
                        retry_after=record.blocked_until - now,
                    )
                record = BruteForceRecord(ip=ip)

            record.attempts = [t for t in record.attempts if t > window_start]
            record.attempts.append(now)
            attempts = len(record.attempts)

            if attempts >= self.config.max_attempts:
                record.blocked_until = now + self.config.block_duration
                newly_blocked = True

            self.store.set(ip, record)
            blocked_until = record.blocked_until

        if len(self.store) > self.config.max_tracked_ips:
            self._evict_stale(now)

        if newly_blocked:
            self.logger.warning(
                f"Brute-force lockout: {ip[:45]} after {attempts} failed attempts, "
                f"blocked for {self.config.block_duration:.0f}s"
            )
            self.audit.emit(
                EventKind.BRUTE_FORCE_ATTEMPT,
                ip=ip,
                path=path,
                method=method,
                detail={
                    'attempts': attempts,
                    'block_duration': self.config.block_duration,
                },
            )
            return LockoutStatus(
                blocked=True,
                until=blocked_until,
                retry_after=self.config.block_duration,
            )

        return LockoutStatus(blocked=False)

    def is_failure(self, status_code: int) -> bool:
        return status_code in self.config.failure_statuses

    def protects(self, route_class: RouteClass) -> bool:
        return route_class in self.config.protected_route_classes

    def attempts_for(self, ip: str) -> int:
        """Attempts currently inside the window (for operators and tests)."""
        window_start = self.clock.now() - self.config.window_seconds
        record = self.store.get(ip)
        if record is None:
            return 0
        return sum(1 for t in record.attempts if t > window_start)

    def reset(self, ip: str) -> bool:
        """Clear an IP's history and lockout (e.g. after a successful login)."""
        with self.store.lock(ip):
            return self.store.delete(ip)

    def _evict_stale(self, now: float) -> int:
        window_start = now - self.config.window_seconds

        def stale(record: BruteForceRecord) -> bool:
            if record.blocked_until is not None and now < record.blocked_until:
                return False
            return not any(t > window_start for t in record.attempts)

        removed = self.store.prune(stale)
        if removed:
            self.logger.debug(f"Pruned {removed} stale brute-force records")
        return removed
