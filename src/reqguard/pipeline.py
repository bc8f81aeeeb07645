#!/usr/bin/env python3
"""
Security pipeline orchestrator.

Composes the stages into one ordered chain:

    SecurityHeaders -> RateLimiter -> BruteForceGuard -> CsrfGuard
        -> InputSanitizer -> SecurityMonitor -> (application)

Each stage returns a verdict. The first Reject ends the chain; later stages
never run for that request and never see or mutate state for it.

Security Considerations:
- Every stage declares a failure policy. Internal errors in fail-open
  stages are logged and the request continues; CSRF is fail-closed
- Terminal responses are built only from fixed error codes
- Security headers are attached to rejections as well as pass-throughs
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import redis

from .brute_force import BruteForceConfig, BruteForceGuard
from .clock import SystemClock
from .config import ConfigManager
from .csrf import CsrfConfig, CsrfGuard
from .events import AuditTrail, EventKind
from .headers import SecurityHeaders, SecurityHeadersConfig
from .logging_utils import setup_logging
from .metrics import (
    PIPELINE_DURATION,
    PIPELINE_REJECTIONS,
    PIPELINE_REQUESTS,
    STAGE_ERRORS,
)
from .monitor import MonitorConfig, SecurityMonitor, payload_signals
from .rate_limiter import RateLimiter, RateLimiterConfig
from .request import RequestContext
from .route_class import RouteClass
from .sanitizer import Finding, InputSanitizer, SanitizerConfig
from .stores import InMemoryWindowStore, RedisWindowStore
from .verdict import Allow, ErrorCode, Reject, Verdict, reject


@dataclass
class PipelineState:
    """Per-request state threaded through the stages."""

    request: RequestContext
    route_class: RouteClass
    findings: List[Finding] = field(default_factory=list)


@dataclass(frozen=True)
class PipelineResult:
    """
    Outcome of SecurityPipeline.handle().

    When ``allowed`` the application should serve ``request`` (the
    sanitized descriptor) and add ``headers`` to its response; otherwise
    ``response`` is the complete terminal response.
    """

    allowed: bool
    request: RequestContext
    route_class: RouteClass
    response: Optional[Reject] = None
    headers: Dict[str, str] = field(default_factory=dict)


class Stage:
    """
    Base class for pipeline stages.

    A fail-closed stage (``fail_open = False``) must name the ErrorCode its
    internal failures are rejected with.
    """

    name = "stage"
    fail_open = True
    failure_code: Optional[ErrorCode] = None

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if not cls.fail_open and cls.failure_code is None:
            raise TypeError(f"Fail-closed stage {cls.__name__} must define failure_code")

    def process(self, state: PipelineState) -> Verdict:
        raise NotImplementedError


class SecurityHeadersStage(Stage):
    name = "headers"

    def __init__(self, headers: SecurityHeaders):
        self.headers = headers

    def process(self, state: PipelineState) -> Verdict:
        return Allow(headers=self.headers.get_security_headers())


class RateLimitStage(Stage):
    name = "rate_limit"

    def __init__(self, limiter: RateLimiter, audit: AuditTrail):
        self.limiter = limiter
        self.audit = audit

    def process(self, state: PipelineState) -> Verdict:
        request = state.request
        decision = self.limiter.check(self.limiter.client_key(request), state.route_class)
        if decision.allowed:
            return Allow(headers=decision.headers())

        self.audit.emit(
            EventKind.RATE_LIMIT_EXCEEDED,
            ip=request.client_ip,
            path=request.path,
            method=request.method,
            detail={'route_class': state.route_class.value, 'limit': decision.limit},
        )
        return reject(ErrorCode.RATE_LIMIT_EXCEEDED, headers=decision.headers())


class BruteForceStage(Stage):
    name = "brute_force"

    def __init__(self, guard: BruteForceGuard):
        self.guard = guard

    def process(self, state: PipelineState) -> Verdict:
        if not self.guard.protects(state.route_class):
            return Allow()

        status = self.guard.evaluate(state.request.client_ip)
        if not status.blocked:
            return Allow()
        retry_after = max(1, math.ceil(status.retry_after or 0))
        return reject(ErrorCode.BRUTE_FORCE_LOCKOUT, headers={'Retry-After': str(retry_after)})


class CsrfStage(Stage):
    name = "csrf"
    fail_open = False
    failure_code = ErrorCode.CSRF_CHECK_FAILED

    def __init__(self, guard: CsrfGuard):
        self.guard = guard

    def process(self, state: PipelineState) -> Verdict:
        request = state.request

        if request.is_safe_method:
            if not request.session_id:
                return Allow()
            _, token = self.guard.issue(request.session_id)
            return Allow(headers={
                'Set-Cookie': self.guard.build_cookie(token),
                self.guard.config.header_name: token,
            })

        if self.guard.is_exempt(request):
            return Allow()

        if not request.session_id:
            return reject(ErrorCode.CSRF_TOKEN_MISSING)
        token = self.guard.extract_token(request)
        if not token:
            return reject(ErrorCode.CSRF_TOKEN_MISSING)
        if not self.guard.verify(request.session_id, token):
            return reject(ErrorCode.CSRF_TOKEN_INVALID)
        return Allow()


class SanitizerStage(Stage):
    name = "sanitizer"

    def __init__(self, sanitizer: InputSanitizer):
        self.sanitizer = sanitizer

    def process(self, state: PipelineState) -> Verdict:
        result = self.sanitizer.screen(state.request)
        state.findings = list(result.findings)
        if result.findings and self.sanitizer.config.block_on_security_issues:
            return reject(ErrorCode.MALICIOUS_PAYLOAD)
        return Allow(request=result.request)


class MonitorStage(Stage):
    name = "monitor"

    def __init__(self, monitor: SecurityMonitor):
        self.monitor = monitor

    def process(self, state: PipelineState) -> Verdict:
        decision = self.monitor.assess(state.request, payload_signals(state.findings))
        if decision.blocked:
            return reject(ErrorCode.SUSPICIOUS_ACTIVITY)
        return Allow()


class SecurityPipeline:
    """
    Ordered request-security chain.

    Usage:
        pipeline = SecurityPipeline.from_config(config)
        result = pipeline.handle(request)
        if not result.allowed:
            return result.response
        ...
        pipeline.after_response(result.request, status_code, duration)
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        brute_force: Optional[BruteForceGuard] = None,
        csrf: Optional[CsrfGuard] = None,
        sanitizer: Optional[InputSanitizer] = None,
        monitor: Optional[SecurityMonitor] = None,
        headers: Optional[SecurityHeaders] = None,
        audit: Optional[AuditTrail] = None,
        clock=None,
        metrics_enabled: bool = True,
    ):
        self.clock = clock or SystemClock()
        self.audit = audit if audit is not None else AuditTrail(clock=self.clock)
        self.rate_limiter = rate_limiter or RateLimiter(clock=self.clock)
        self.brute_force = brute_force or BruteForceGuard(clock=self.clock, audit=self.audit)
        self.csrf = csrf or CsrfGuard(clock=self.clock)
        self.sanitizer = sanitizer or InputSanitizer(audit=self.audit)
        self.monitor = monitor or SecurityMonitor(clock=self.clock, audit=self.audit)
        self.headers = headers or SecurityHeaders()
        self.metrics_enabled = metrics_enabled
        self.logger = logging.getLogger(__name__)

        self.stages: List[Stage] = [
            SecurityHeadersStage(self.headers),
            RateLimitStage(self.rate_limiter, self.audit),
            BruteForceStage(self.brute_force),
            CsrfStage(self.csrf),
            SanitizerStage(self.sanitizer),
            MonitorStage(self.monitor),
        ]

    def handle(self, request: RequestContext) -> PipelineResult:
        """Run ``request`` through every stage until one rejects it."""
        started = time.perf_counter()
        state = PipelineState(
            request=request,
            route_class=self.rate_limiter.route_class_for(request),
        )
        headers: Dict[str, str] = {}

        try:
            for stage in self.stages:
                verdict = self._run_stage(stage, state)

                if isinstance(verdict, Reject):
                    headers.update(verdict.headers)
                    response = Reject(status=verdict.status, body=verdict.body, headers=headers)
                    self._log_rejection(stage, state, response)
                    if self.metrics_enabled:
                        PIPELINE_REJECTIONS.labels(stage=stage.name, code=response.code).inc()
                        PIPELINE_REQUESTS.labels(outcome='rejected').inc()
                    return PipelineResult(
                        allowed=False,
                        request=state.request,
                        route_class=state.route_class,
                        response=response,
                        headers=headers,
                    )

                headers.update(verdict.headers)
                if verdict.request is not None:
                    state.request = verdict.request

            if self.metrics_enabled:
                PIPELINE_REQUESTS.labels(outcome='allowed').inc()
            return PipelineResult(
                allowed=True,
                request=state.request,
                route_class=state.route_class,
                headers=headers,
            )
        finally:
            if self.metrics_enabled:
                PIPELINE_DURATION.observe(time.perf_counter() - started)

    def after_response(
        self,
        request: RequestContext,
        status_code: int,
        duration: Optional[float] = None,
    ) -> None:
        """
        Feed a downstream response back into the stateful stages.

        Never raises; failures are logged.
        """
        try:
            self.monitor.on_response(request.client_ip, status_code, request, duration)
        except Exception as e:
            self.logger.error(f"Monitor response observation failed: {e}")

        route_class = self.rate_limiter.route_class_for(request)
        if self.brute_force.protects(route_class) and self.brute_force.is_failure(status_code):
            try:
                self.brute_force.record_attempt(request.client_ip, request.path, request.method)
            except Exception as e:
                self.logger.error(f"Brute-force attempt recording failed: {e}")

    def get_statistics(self) -> Dict:
        return {
            'tracked_brute_force_ips': len(self.brute_force.store),
            'tracked_suspicious_ips': len(self.monitor.store),
            'csrf_sessions': len(self.csrf.store),
            'audit_events': len(self.audit),
        }

    def _run_stage(self, stage: Stage, state: PipelineState) -> Verdict:
        try:
            return stage.process(state)
        except Exception as e:
            policy = "open" if stage.fail_open else "closed"
            STAGE_ERRORS.labels(stage=stage.name, policy=policy).inc()
            self.logger.error(
                f"Stage {stage.name} failed (fail-{policy}) for "
                f"{state.request.method} {state.request.path}: {e}",
                exc_info=True,
            )
            if stage.fail_open:
                return Allow()
            return reject(stage.failure_code)

    def _log_rejection(self, stage: Stage, state: PipelineState, response: Reject) -> None:
        request = state.request
        self.logger.warning(
            f"Request rejected: stage={stage.name} code={response.code} "
            f"status={response.status} ip={request.client_ip[:45]} "
            f"{request.method} {request.path}"
        )

    @classmethod
    def from_config(
        cls,
        config: Dict,
        redis_client=None,
        clock=None,
        audit: Optional[AuditTrail] = None,
    ) -> 'SecurityPipeline':
        """
        Create a pipeline from a configuration dictionary.

        Args:
            config: Full configuration (see ConfigManager)
            redis_client: Redis client for shared rate windows (optional)
            clock: Time source
            audit: Audit trail shared by all components

        Raises:
            ValueError: If a component configuration is invalid
        """
        clock = clock or SystemClock()
        audit = audit if audit is not None else AuditTrail(clock=clock)

        rate_config = RateLimiterConfig.from_config_dict(config.get('rate_limit') or {})
        window_store = InMemoryWindowStore(max_keys=rate_config.max_tracked_keys)

        redis_config = config.get('redis') or {}
        if redis_client is None and redis_config.get('enabled'):
            redis_client = redis.Redis.from_url(
                redis_config['url'],
                socket_timeout=redis_config.get('socket_timeout', 0.5),
                socket_connect_timeout=redis_config.get('socket_timeout', 0.5),
            )
        if redis_client is not None:
            window_store = RedisWindowStore(
                redis_client,
                fallback=window_store,
                key_prefix=redis_config.get('key_prefix', 'reqguard:rate'),
            )

        return cls(
            rate_limiter=RateLimiter(rate_config, store=window_store, clock=clock),
            brute_force=BruteForceGuard(
                BruteForceConfig.from_config_dict(config.get('brute_force') or {}),
                clock=clock,
                audit=audit,
            ),
            csrf=CsrfGuard(CsrfConfig.from_config_dict(config.get('csrf') or {}), clock=clock),
            sanitizer=InputSanitizer(
                SanitizerConfig.from_config_dict(config.get('sanitizer') or {}),
                audit=audit,
            ),
            monitor=SecurityMonitor(
                MonitorConfig.from_config_dict(config.get('monitor') or {}),
                clock=clock,
                audit=audit,
            ),
            headers=SecurityHeaders(
                SecurityHeadersConfig.from_config_dict(config.get('headers') or {})
            ),
            audit=audit,
            clock=clock,
            metrics_enabled=bool((config.get('metrics') or {}).get('enabled', True)),
        )

    def __repr__(self) -> str:
        return f"SecurityPipeline(stages={[stage.name for stage in self.stages]})"


def create_pipeline(config_path: Optional[str] = None, redis_client=None) -> SecurityPipeline:
    """
    Load configuration, set up logging and build a pipeline.

    Args:
        config_path: YAML file (defaults to $REQGUARD_CONFIG or config/reqguard.yml)
        redis_client: Optional pre-built Redis client
    """
    manager = ConfigManager(config_path)
    setup_logging(manager.config.get('logging'))
    return SecurityPipeline.from_config(manager.config, redis_client=redis_client)
