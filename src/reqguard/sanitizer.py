#!/usr/bin/env python3
"""
Recursive input sanitization and signature-based threat classification.

Two independent operations:

- sanitize(): normalizes a value (strings, lists, mappings) by stripping
  control characters and removing active markup. Idempotent.
- classify(): runs threat families (SQL injection, path traversal, command
  injection, script injection) against a string and reports every family
  that matched. Never mutates input.

Both are driven by declarative (name, pattern, category) tables so each
detector can be tested on its own and new ones added without touching
control flow.

Security Considerations:
- Removal is repeated until no pattern matches, so a removal can never
  splice together a new match that survives
- Credential fields (password, token, ...) are passed through untouched
  and never classified
- Internal errors fail open: the request continues unmodified
- Values are length-capped before any pattern runs, and markup patterns
  only scan up to the last closing tag they need
"""

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Pattern, Tuple

from .events import AuditTrail, EventKind
from .request import RequestContext


class ThreatFamily(Enum):
    """Pattern families reported by classify()."""

    SQL_INJECTION = "sql"
    PATH_TRAVERSAL = "path"
    COMMAND_INJECTION = "command"
    SCRIPT_INJECTION = "script"
    OVERSIZED_INPUT = "oversized"

    def get_issue(self) -> str:
        issues = {
            ThreatFamily.SQL_INJECTION: "Potential SQL injection detected",
            ThreatFamily.PATH_TRAVERSAL: "Potential path traversal detected",
            ThreatFamily.COMMAND_INJECTION: "Potential command injection detected",
            ThreatFamily.SCRIPT_INJECTION: "Potential script injection detected",
            ThreatFamily.OVERSIZED_INPUT: "Input too long - potential DoS attack",
        }
        return issues[self]

    def get_event_kind(self) -> EventKind:
        kinds = {
            ThreatFamily.SQL_INJECTION: EventKind.SQL_INJECTION_ATTEMPT,
            ThreatFamily.PATH_TRAVERSAL: EventKind.PATH_TRAVERSAL_ATTEMPT,
            ThreatFamily.COMMAND_INJECTION: EventKind.SUSPICIOUS_PAYLOAD,
            ThreatFamily.SCRIPT_INJECTION: EventKind.XSS_ATTEMPT,
            ThreatFamily.OVERSIZED_INPUT: EventKind.SUSPICIOUS_PAYLOAD,
        }
        return kinds[self]


# (name, pattern, category) - applied in this order
REMOVAL_PATTERNS: List[Tuple[str, Pattern, str]] = [
    ("script", re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE), "markup"),
    ("javascript", re.compile(r"javascript:", re.IGNORECASE), "scheme"),
    ("vbscript", re.compile(r"vbscript:", re.IGNORECASE), "scheme"),
    ("data_url", re.compile(r"data:text/html", re.IGNORECASE), "scheme"),
    ("event_handlers", re.compile(r"\bon\w+\s*=", re.IGNORECASE), "attribute"),
    ("style", re.compile(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", re.IGNORECASE), "markup"),
    ("iframe", re.compile(r"<iframe\b[^<]*(?:(?!</iframe>)<[^<]*)*</iframe>", re.IGNORECASE), "markup"),
    ("object", re.compile(r"<object\b[^<]*(?:(?!</object>)<[^<]*)*</object>", re.IGNORECASE), "markup"),
    ("embed", re.compile(r"<embed\b[^<]*(?:(?!</embed>)<[^<]*)*</embed>", re.IGNORECASE), "markup"),
    ("meta_refresh", re.compile(r"<meta[^<>]*http-equiv\s*=\s*[\"']?refresh[\"']?[^<>]*>", re.IGNORECASE), "markup"),
    ("base64_script", re.compile(r"data:text/javascript;base64,[a-zA-Z0-9+/=]+", re.IGNORECASE), "scheme"),
]

# Closing tag each markup pattern ends with; nothing after its last occurrence can match
CLOSING_TAGS: Dict[str, Pattern] = {
    name: re.compile(f"</{name}>", re.IGNORECASE)
    for name in ("script", "style", "iframe", "object", "embed")
}

THREAT_PATTERNS: List[Tuple[str, Pattern, ThreatFamily]] = [
    ("sql_keywords", re.compile(
        r"(\b(union|select|insert|update|delete|drop|create|alter|exec|execute)\b.*\b(select|from|where|into)\b)",
        re.IGNORECASE), ThreatFamily.SQL_INJECTION),
    ("sql_meta", re.compile(
        r"('|(\\x27)|(\\x2D\\x2D)|(\\#)|(\\x23)|(\-\-)|(;)|(%3B)|(%27)|(%22)|(%2D\\x2D)|(%23))",
        re.IGNORECASE), ThreatFamily.SQL_INJECTION),
    ("sql_assign_quote", re.compile(
        r"((%3D)|(=))[^\n]*((%27)|(\\x27)|(')|(\-\-)|(\#)|(\\x23))",
        re.IGNORECASE), ThreatFamily.SQL_INJECTION),
    ("sql_assign_dquote", re.compile(
        r"((%3D)|(=))[^\n]*((%22)|(\\x22)|(\"))",
        re.IGNORECASE), ThreatFamily.SQL_INJECTION),
    ("dot_dot_slash", re.compile(r"\.\.[/\\]"), ThreatFamily.PATH_TRAVERSAL),
    ("encoded_dots_slash", re.compile(r"%2e%2e[/\\]", re.IGNORECASE), ThreatFamily.PATH_TRAVERSAL),
    ("encoded_dots_encoded_slash", re.compile(r"%2e%2e%2f", re.IGNORECASE), ThreatFamily.PATH_TRAVERSAL),
    ("encoded_dots_encoded_backslash", re.compile(r"%2e%2e%5c", re.IGNORECASE), ThreatFamily.PATH_TRAVERSAL),
    ("dots_encoded_slash", re.compile(r"\.\.%2f", re.IGNORECASE), ThreatFamily.PATH_TRAVERSAL),
    ("dots_encoded_backslash", re.compile(r"\.\.%5c", re.IGNORECASE), ThreatFamily.PATH_TRAVERSAL),
    ("shell_metachars", re.compile(r"[;&|`$()]"), ThreatFamily.COMMAND_INJECTION),
    ("hex_escape", re.compile(r"\\x[0-9a-fA-F]{2}"), ThreatFamily.COMMAND_INJECTION),
    ("percent_escape", re.compile(r"%[0-9a-fA-F]{2}"), ThreatFamily.COMMAND_INJECTION),
]

# classify() kinds and the families each one runs
CLASSIFY_KINDS: Dict[str, FrozenSet[ThreatFamily]] = {
    'general': frozenset({
        ThreatFamily.SQL_INJECTION,
        ThreatFamily.PATH_TRAVERSAL,
        ThreatFamily.COMMAND_INJECTION,
        ThreatFamily.SCRIPT_INJECTION,
    }),
    'sql': frozenset({ThreatFamily.SQL_INJECTION}),
    'path': frozenset({ThreatFamily.PATH_TRAVERSAL}),
    'command': frozenset({ThreatFamily.COMMAND_INJECTION}),
    'script': frozenset({ThreatFamily.SCRIPT_INJECTION}),
}

# Null bytes and control characters, keeping \t \n \r
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

MAX_CLASSIFY_LENGTH = 10000
KEY_MAX_LENGTH = 100
FILENAME_MAX_LENGTH = 255


@dataclass(frozen=True)
class SanitizeOptions:
    """Options for one sanitize() call."""

    max_length: Optional[int] = None
    skip_fields: FrozenSet[str] = frozenset()
    html: bool = True


@dataclass(frozen=True)
class Classification:
    """Result of classify(): valid iff no family matched."""

    valid: bool
    issues: List[str] = field(default_factory=list)
    families: List[ThreatFamily] = field(default_factory=list)


def _match_region(name: str, text: str) -> int:
    """Length of the prefix of ``text`` the removal pattern ``name`` can match in."""
    closing_tag = CLOSING_TAGS.get(name)
    if closing_tag is None:
        return len(text)
    end = 0
    for match in closing_tag.finditer(text):
        end = match.end()
    return end


def _sanitize_string(value: str, options: SanitizeOptions) -> str:
    sanitized = CONTROL_CHARS.sub('', value)
    if options.max_length is not None:
        sanitized = sanitized[:options.max_length]

    if options.html:
        changed = True
        while changed:
            changed = False
            for name, pattern, _category in REMOVAL_PATTERNS:
                end = _match_region(name, sanitized)
                if not end:
                    continue
                head, count = pattern.subn('', sanitized[:end])
                if count:
                    sanitized = head + sanitized[end:]
                    changed = True

    sanitized = sanitized.strip()
    if options.max_length is not None:
        sanitized = sanitized[:options.max_length]
    return sanitized


def sanitize(value: Any, options: Optional[SanitizeOptions] = None) -> Any:
    """
    Sanitize a scalar, list or mapping recursively.

    Strings lose control characters and active markup and are trimmed and
    length-capped; mapping keys are sanitized with a cap of 100 characters;
    values under a skipped key are returned unchanged. Non-string scalars
    pass through.
    """
    options = options or SanitizeOptions()

    if isinstance(value, str):
        return _sanitize_string(value, options)

    if isinstance(value, (list, tuple)):
        return [sanitize(item, options) for item in value]

    if isinstance(value, dict):
        key_options = SanitizeOptions(max_length=KEY_MAX_LENGTH)
        sanitized = {}
        for key, item in value.items():
            if key in options.skip_fields:
                sanitized[key] = item
                continue
            clean_key = _sanitize_string(key, key_options) if isinstance(key, str) else key
            sanitized[clean_key] = sanitize(item, options)
        return sanitized

    return value


def classify(value: Any, kind: str = 'general') -> Classification:
    """
    Report every threat family matching ``value``.

    Args:
        value: Input to check; non-strings are always valid
        kind: 'general' (all families) or one of 'sql', 'path', 'command', 'script'

    Raises:
        ValueError: If kind is unknown
    """
    if kind not in CLASSIFY_KINDS:
        raise ValueError(f"Unknown classification kind: {kind!r}")
    if not isinstance(value, str):
        return Classification(valid=True)

    enabled = CLASSIFY_KINDS[kind]
    families: List[ThreatFamily] = []
    oversized = len(value) > MAX_CLASSIFY_LENGTH
    scanned = value[:MAX_CLASSIFY_LENGTH]

    for _name, pattern, family in THREAT_PATTERNS:
        if family in enabled and family not in families and pattern.search(scanned):
            families.append(family)

    if ThreatFamily.SCRIPT_INJECTION in enabled:
        if any(
            pattern.search(scanned, 0, _match_region(name, scanned))
            for name, pattern, _category in REMOVAL_PATTERNS
        ):
            families.append(ThreatFamily.SCRIPT_INJECTION)

    if oversized:
        families.append(ThreatFamily.OVERSIZED_INPUT)

    return Classification(
        valid=not families,
        issues=[family.get_issue() for family in families],
        families=families,
    )


def sanitize_filename(filename: str) -> Tuple[str, Classification]:
    """Sanitize an upload filename and check it for path traversal."""
    clean = _sanitize_string(filename or '', SanitizeOptions(max_length=FILENAME_MAX_LENGTH))
    return clean, classify(clean, 'path')


@dataclass
class SanitizerConfig:
    """Input sanitizer configuration."""

    block_on_security_issues: bool = False
    query_max_length: int = 500
    body_max_length: int = 10000
    params_max_length: int = 200
    skip_query_fields: List[str] = field(default_factory=list)
    skip_body_fields: List[str] = field(
        default_factory=lambda: ['password', 'token', 'refreshToken']
    )
    skip_param_fields: List[str] = field(default_factory=list)
    html: bool = True

    def __post_init__(self):
        for name in ('query_max_length', 'body_max_length', 'params_max_length'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @classmethod
    def from_config_dict(cls, config: Dict) -> 'SanitizerConfig':
        defaults = cls()
        try:
            return cls(
                block_on_security_issues=bool(
                    config.get('block_on_security_issues', defaults.block_on_security_issues)
                ),
                query_max_length=int(config.get('query_max_length', defaults.query_max_length)),
                body_max_length=int(config.get('body_max_length', defaults.body_max_length)),
                params_max_length=int(config.get('params_max_length', defaults.params_max_length)),
                skip_query_fields=list(config.get('skip_query_fields', defaults.skip_query_fields)),
                skip_body_fields=list(config.get('skip_body_fields', defaults.skip_body_fields)),
                skip_param_fields=list(config.get('skip_param_fields', defaults.skip_param_fields)),
                html=bool(config.get('html', defaults.html)),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValueError(f"Invalid sanitizer configuration: {e}")


@dataclass(frozen=True)
class Finding:
    """One classified value: where it was found and what matched."""

    location: str
    field: str
    classification: Classification


@dataclass(frozen=True)
class ScreeningResult:
    """Sanitized request plus every finding on the raw input."""

    request: RequestContext
    findings: List[Finding] = field(default_factory=list)
    dropped_files: List[str] = field(default_factory=list)

    @property
    def issues(self) -> List[str]:
        issues: List[str] = []
        for finding in self.findings:
            for issue in finding.classification.issues:
                if issue not in issues:
                    issues.append(issue)
        return issues

    @property
    def families(self) -> List[ThreatFamily]:
        families: List[ThreatFamily] = []
        for finding in self.findings:
            for family in finding.classification.families:
                if family not in families:
                    families.append(family)
        return families


class InputSanitizer:
    """
    Request-level sanitizer.

    Classifies the raw query, body and path parameters, sanitizes them with
    per-location caps and screens upload filenames.
    """

    def __init__(self, config: Optional[SanitizerConfig] = None, audit: Optional[AuditTrail] = None):
        self.config = config or SanitizerConfig()
        self.audit = audit if audit is not None else AuditTrail()
        self.logger = logging.getLogger(__name__)
        self.query_options = SanitizeOptions(
            max_length=self.config.query_max_length,
            skip_fields=frozenset(self.config.skip_query_fields),
            html=self.config.html,
        )
        self.body_options = SanitizeOptions(
            max_length=self.config.body_max_length,
            skip_fields=frozenset(self.config.skip_body_fields),
            html=self.config.html,
        )
        self.params_options = SanitizeOptions(
            max_length=self.config.params_max_length,
            skip_fields=frozenset(self.config.skip_param_fields),
            html=self.config.html,
        )

    def screen(self, request: RequestContext) -> ScreeningResult:
        """
        Classify and sanitize one request.

        Emits audit events for findings. Whether findings block the request
        is the caller's decision (see ``config.block_on_security_issues``).
        """
        findings: List[Finding] = []
        findings.extend(self._classify_tree('query', request.query, self.query_options.skip_fields))
        findings.extend(self._classify_tree('body', request.body, self.body_options.skip_fields))
        findings.extend(self._classify_tree('params', request.path_params, self.params_options.skip_fields))

        files, dropped = self._screen_files(request)

        sanitized = replace(
            request,
            query=sanitize(request.query, self.query_options),
            body=sanitize(request.body, self.body_options),
            path_params=sanitize(request.path_params, self.params_options),
            files=files,
        )
        result = ScreeningResult(request=sanitized, findings=findings, dropped_files=dropped)

        if findings:
            self._report(request, result)
        return result

    def _classify_tree(self, location: str, value: Any, skip_fields: FrozenSet[str], path: str = '') -> List[Finding]:
        if isinstance(value, str):
            classification = classify(value)
            if classification.valid:
                return []
            return [Finding(location=location, field=path, classification=classification)]

        findings: List[Finding] = []
        if isinstance(value, dict):
            for key, item in value.items():
                if key in skip_fields:
                    continue
                child = f"{path}.{key}" if path else str(key)
                findings.extend(self._classify_tree(location, item, skip_fields, child))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                findings.extend(self._classify_tree(location, item, skip_fields, f"{path}[{index}]"))
        return findings

    def _screen_files(self, request: RequestContext) -> Tuple[Dict[str, str], List[str]]:
        files: Dict[str, str] = {}
        dropped: List[str] = []
        for field_name, filename in request.files.items():
            clean, classification = sanitize_filename(filename)
            if not classification.valid:
                self.logger.warning(
                    f"Suspicious filename dropped from {request.client_ip}: "
                    f"field={field_name} issues={classification.issues}"
                )
                dropped.append(field_name)
                continue
            files[field_name] = clean
        return files, dropped

    def _report(self, request: RequestContext, result: ScreeningResult) -> None:
        issues = result.issues
        self.logger.warning(
            f"Security issues detected in request: ip={request.client_ip} "
            f"{request.method} {request.path} issues={issues}"
        )
        fields = [f"{finding.location}:{finding.field}" for finding in result.findings]
        self.audit.emit(
            EventKind.SUSPICIOUS_PAYLOAD,
            ip=request.client_ip,
            path=request.path,
            method=request.method,
            detail={'issues': issues, 'fields': fields},
        )
        specific = []
        for family in result.families:
            kind = family.get_event_kind()
            if kind != EventKind.SUSPICIOUS_PAYLOAD and kind not in specific:
                specific.append(kind)
        for kind in specific:
            self.audit.emit(
                kind,
                ip=request.client_ip,
                path=request.path,
                method=request.method,
                detail={'fields': fields},
            )
