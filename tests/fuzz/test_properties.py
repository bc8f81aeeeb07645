#!/usr/bin/env python3
"""
Property-based testing for reqguard using Hypothesis.
Tests sanitizer, classifier, window accounting and CSRF invariants.
"""

import string

from hypothesis import given, settings, strategies as st

from reqguard.csrf import CsrfConfig, CsrfGuard
from reqguard.request import MAX_IP_LENGTH, normalize_client_ip
from reqguard.sanitizer import (
    CONTROL_CHARS,
    SanitizeOptions,
    ThreatFamily,
    classify,
    sanitize,
)
from reqguard.stores import InMemoryWindowStore


json_scalars = st.one_of(st.none(), st.booleans(), st.integers(), st.text(max_size=60))
json_values = st.recursive(
    json_scalars,
    lambda children: st.one_of(
        st.lists(children, max_size=4),
        st.dictionaries(st.text(max_size=20), children, max_size=4),
    ),
    max_leaves=12,
)


class FixedClock:
    def __init__(self):
        self.calls = 0

    def now(self):
        return 0.0

    def wall_time(self):
        return 0.0

    def random_bytes(self, length):
        self.calls += 1
        return self.calls.to_bytes(4, 'big') * (length // 4) + b'\x00' * (length % 4)


class TestSanitizerProperties:
    """Property-based tests for sanitize()."""

    @given(st.text(max_size=200))
    def test_sanitize_is_idempotent(self, value):
        once = sanitize(value)
        assert sanitize(once) == once

    @given(json_values)
    def test_sanitize_structures_idempotent(self, value):
        once = sanitize(value)
        assert sanitize(once) == once

    @given(st.text(max_size=200), st.integers(min_value=1, max_value=50))
    def test_length_cap_respected(self, value, max_length):
        result = sanitize(value, SanitizeOptions(max_length=max_length))
        assert len(result) <= max_length

    @given(st.text(max_size=200))
    def test_no_control_characters_survive(self, value):
        assert not CONTROL_CHARS.search(sanitize(value))

    @given(st.text(max_size=200))
    def test_no_surrounding_whitespace(self, value):
        result = sanitize(value)
        assert result == result.strip()

    @given(st.dictionaries(st.text(max_size=300), st.integers(), max_size=5))
    def test_keys_capped(self, value):
        for key in sanitize(value):
            assert len(key) <= 100


class TestClassifierProperties:
    """Property-based tests for classify()."""

    @given(st.text(max_size=300))
    def test_classify_never_raises_and_is_consistent(self, value):
        result = classify(value)
        assert result.valid == (not result.issues)
        assert len(result.issues) == len(set(result.issues))
        assert len(result.families) == len(result.issues)

    @given(st.text(max_size=300))
    def test_classify_is_deterministic(self, value):
        assert classify(value) == classify(value)

    @given(st.text(alphabet=string.digits + "abcdefghijk ", max_size=200))
    def test_plain_text_is_valid(self, value):
        assert classify(value).valid

    @given(st.text(alphabet=string.ascii_letters, min_size=1, max_size=20))
    def test_traversal_prefix_always_detected(self, name):
        assert ThreatFamily.PATH_TRAVERSAL in classify(f"../{name}").families


class TestWindowProperties:
    """Property-based tests for fixed-window accounting."""

    @given(
        st.floats(min_value=0.5, max_value=100.0),
        st.lists(st.floats(min_value=0.0, max_value=50.0), min_size=1, max_size=40),
    )
    @settings(max_examples=200)
    def test_window_invariants(self, window_seconds, gaps):
        store = InMemoryWindowStore()
        now = 0.0
        times = []
        for gap in gaps:
            now += gap
            times.append(now)
            window = store.increment("k", window_seconds, now)

            assert window.count >= 1
            assert window.window_start <= now
            assert now - window.window_start < window_seconds
            assert window.count == sum(1 for t in times if t >= window.window_start)


class TestCsrfProperties:
    """Property-based tests for token verification."""

    @given(st.text(min_size=1, max_size=40))
    def test_issued_token_verifies(self, session_id):
        guard = CsrfGuard(CsrfConfig(), clock=FixedClock())
        _, token = guard.issue(session_id)
        assert guard.verify(session_id, token)

    @given(st.text(alphabet="0123456789abcdef", min_size=64, max_size=64))
    def test_guessed_token_rejected(self, guess):
        guard = CsrfGuard(CsrfConfig(), clock=FixedClock())
        _, token = guard.issue("session")
        assert guard.verify("session", guess) == (guess == token)


class TestClientIpProperties:
    """Property-based tests for client IP normalization."""

    @given(st.text(max_size=100))
    def test_normalized_ip_is_bounded(self, raw):
        result = normalize_client_ip(raw)
        assert result
        assert len(result) <= MAX_IP_LENGTH

    @given(st.ip_addresses(v=4))
    def test_ipv4_mapped_collapses(self, address):
        assert normalize_client_ip(f"::ffff:{address}") == str(address)
