#!/usr/bin/env python3
"""
Logging setup for the security pipeline.

Security Considerations:
- Credentials, CSRF tokens, cookies and bearer tokens are redacted from
  every record before it is formatted
- Production formatting never writes full tracebacks
- The audit stream can be written to its own rotating file
"""

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from typing import Dict, Optional


DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
AUDIT_LOGGER = 'reqguard.audit'
ROOT_LOGGER = 'reqguard'


class SensitiveDataFilter(logging.Filter):
    """Redact sensitive values from log records."""

    def __init__(self):
        super().__init__()
        self.sensitive_patterns = [
            (re.compile(r'password["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)', re.IGNORECASE), 'password=***REDACTED***'),
            (re.compile(r'api[_-]?key["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)', re.IGNORECASE), 'api_key=***REDACTED***'),
            (re.compile(r'csrf[_-]?token["\']?\s*[:=]\s*["\']?([^"\'\s,;}]+)', re.IGNORECASE), 'csrf_token=***REDACTED***'),
            (re.compile(r'token["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)', re.IGNORECASE), 'token=***REDACTED***'),
            (re.compile(r'secret["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)', re.IGNORECASE), 'secret=***REDACTED***'),
            (re.compile(r'authorization["\']?\s*[:=]\s*["\']?Bearer\s+([^"\'\s,}]+)', re.IGNORECASE), 'Authorization: Bearer ***REDACTED***'),
            (re.compile(r'(set-)?cookie["\']?\s*[:=]\s*["\']?([^"\'\n}]+)', re.IGNORECASE), 'cookie=***REDACTED***'),
            (re.compile(r'([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})'), '***EMAIL_REDACTED***'),
        ]

    def redact(self, text: str) -> str:
        for pattern, replacement in self.sensitive_patterns:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record):
        if record.args:
            # Render first so values passed as args are redacted too
            record.msg = record.getMessage()
            record.args = None
        record.msg = self.redact(str(record.msg))
        return True


class SecureFormatter(logging.Formatter):
    """Formatter that hides tracebacks in production."""

    def format(self, record):
        if not hasattr(record, 'event_type'):
            record.event_type = 'general'

        if record.exc_info and os.getenv('ENVIRONMENT') == 'production':
            exc_type, exc_value, _ = record.exc_info
            record.exc_text = f"{exc_type.__name__}: {exc_value}"
            record.exc_info = None

        return super().format(record)


def _has_handler(logger: logging.Logger, kind: type) -> bool:
    return any(getattr(h, '_reqguard_handler', False) and isinstance(h, kind) for h in logger.handlers)


def setup_logging(config: Optional[Dict] = None) -> logging.Logger:
    """
    Configure the ``reqguard`` logger hierarchy.

    Args:
        config: The ``logging`` configuration section (level, format,
            audit_file, audit_max_bytes, audit_backup_count)

    Returns:
        The package root logger

    Raises:
        ValueError: If the log level is unknown
    """
    config = config or {}
    level_name = str(config.get('level', 'INFO')).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {level_name}")
    log_format = config.get('format', DEFAULT_FORMAT)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)

    if not _has_handler(logger, logging.StreamHandler):
        handler = logging.StreamHandler()
        handler._reqguard_handler = True
        handler.addFilter(SensitiveDataFilter())
        handler.setFormatter(SecureFormatter(log_format))
        logger.addHandler(handler)
    for handler in logger.handlers:
        if getattr(handler, '_reqguard_handler', False):
            handler.setLevel(level)

    audit_file = config.get('audit_file')
    if audit_file:
        audit_logger = logging.getLogger(AUDIT_LOGGER)
        if not _has_handler(audit_logger, RotatingFileHandler):
            audit_handler = RotatingFileHandler(
                audit_file,
                maxBytes=int(config.get('audit_max_bytes', 10 * 1024 * 1024)),
                backupCount=int(config.get('audit_backup_count', 5)),
            )
            audit_handler._reqguard_handler = True
            audit_handler.addFilter(SensitiveDataFilter())
            audit_handler.setFormatter(SecureFormatter('%(asctime)s %(message)s'))
            audit_logger.addHandler(audit_handler)

    return logger
