#!/usr/bin/env python3
"""Shared fixtures: a manually advanced clock and an isolated audit trail."""

import itertools

import pytest

from reqguard.events import AuditTrail
from reqguard.request import RequestContext


class ManualClock:
    """Clock/random provider whose time only moves when told to."""

    def __init__(self, start: float = 1000.0, wall_start: float = 1700000000.0):
        self._now = start
        self._wall_offset = wall_start - start
        self._counter = itertools.count(1)

    def now(self) -> float:
        return self._now

    def wall_time(self) -> float:
        return self._now + self._wall_offset

    def random_bytes(self, length: int) -> bytes:
        # Distinct, deterministic bytes per call
        seed = next(self._counter)
        return bytes((seed + i) % 256 for i in range(length))

    def advance(self, seconds: float) -> None:
        self._now += seconds

    def set(self, now: float) -> None:
        self._now = now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def audit(clock):
    return AuditTrail(clock=clock)


@pytest.fixture
def make_request():
    """Factory for request descriptors with sensible defaults."""

    def _make(method="GET", path="/", client_ip="203.0.113.7", **kwargs):
        headers = kwargs.pop("headers", {"User-Agent": "Mozilla/5.0"})
        return RequestContext(method=method, path=path, client_ip=client_ip, headers=headers, **kwargs)

    return _make
