#!/usr/bin/env python3
"""
Prometheus collectors for the security pipeline.

Collectors are module level, registered once per process in the default
registry. The core only updates them; exposing them (an HTTP endpoint or a
push gateway) is left to the hosting application.
"""

from prometheus_client import Counter, Histogram


PIPELINE_REQUESTS = Counter(
    'reqguard_requests_total',
    'Requests evaluated by the security pipeline',
    ['outcome'],
)
PIPELINE_REJECTIONS = Counter(
    'reqguard_rejections_total',
    'Requests short-circuited by a pipeline stage',
    ['stage', 'code'],
)
SECURITY_EVENTS = Counter(
    'reqguard_security_events_total',
    'Security events emitted to the audit trail',
    ['event_type', 'severity'],
)
STAGE_ERRORS = Counter(
    'reqguard_stage_errors_total',
    'Internal stage failures, by stage and applied failure policy',
    ['stage', 'policy'],
)
STORE_FALLBACKS = Counter(
    'reqguard_store_fallbacks_total',
    'Shared-store operations that degraded to in-memory state',
    ['store'],
)
PIPELINE_DURATION = Histogram(
    'reqguard_pipeline_duration_seconds',
    'Time spent in the security pipeline per request',
    buckets=[0.0001, 0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25],
)
