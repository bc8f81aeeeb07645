"""Request-security middleware pipeline: rate limiting, CSRF, sanitization, monitoring."""

from .brute_force import BruteForceConfig, BruteForceGuard, LockoutStatus
from .clock import SystemClock
from .config import ConfigManager, ConfigurationError
from .csrf import CsrfConfig, CsrfGuard
from .events import AuditTrail, EventKind, SecurityEvent
from .headers import SecurityHeaders, SecurityHeadersConfig
from .monitor import MonitorConfig, SecurityMonitor, Signal
from .pipeline import PipelineResult, SecurityPipeline, create_pipeline
from .rate_limiter import RateDecision, RateLimiter, RateLimiterConfig
from .request import Identity, RequestContext
from .route_class import RatePolicy, RouteClass
from .sanitizer import (
    Classification,
    InputSanitizer,
    SanitizeOptions,
    SanitizerConfig,
    classify,
    sanitize,
)
from .stores import (
    InMemoryRecordStore,
    InMemoryWindowStore,
    RedisWindowStore,
    StoreError,
)
from .verdict import Allow, ErrorCode, Reject

__all__ = [
    'BruteForceConfig',
    'BruteForceGuard',
    'LockoutStatus',
    'SystemClock',
    'ConfigManager',
    'ConfigurationError',
    'CsrfConfig',
    'CsrfGuard',
    'AuditTrail',
    'EventKind',
    'SecurityEvent',
    'SecurityHeaders',
    'SecurityHeadersConfig',
    'MonitorConfig',
    'SecurityMonitor',
    'Signal',
    'PipelineResult',
    'SecurityPipeline',
    'create_pipeline',
    'RateDecision',
    'RateLimiter',
    'RateLimiterConfig',
    'Identity',
    'RequestContext',
    'RatePolicy',
    'RouteClass',
    'Classification',
    'InputSanitizer',
    'SanitizeOptions',
    'SanitizerConfig',
    'classify',
    'sanitize',
    'InMemoryRecordStore',
    'InMemoryWindowStore',
    'RedisWindowStore',
    'StoreError',
    'Allow',
    'ErrorCode',
    'Reject',
]
