#!/usr/bin/env python3
"""
Configuration loading: YAML file, ``${VAR}`` expansion, REQGUARD_* overrides.

Security Considerations:
- yaml.safe_load only; no arbitrary object construction
- Every section is type-checked before any component sees it
- Secrets (Redis URL credentials) are referenced via ${VAR}, never stored
"""

import copy
import logging
import os
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from .route_class import RouteClass


DEFAULT_CONFIG_PATH = "config/reqguard.yml"

SECTIONS = (
    'rate_limit', 'brute_force', 'csrf', 'sanitizer', 'monitor',
    'headers', 'redis', 'logging', 'metrics',
)

ENV_VAR_PATTERN = re.compile(r'\$\{([^}]+)\}')


class ConfigurationError(Exception):
    """Configuration file or schema error."""
    pass


def _as_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _as_int(value: str) -> int:
    return int(value.strip())


def _as_float(value: str) -> float:
    return float(value.strip())


def _as_str(value: str) -> str:
    return value


# (environment variable, config path, converter)
ENV_OVERRIDES: List[Tuple[str, Tuple[str, ...], Callable[[str], Any]]] = [
    ('REQGUARD_BLOCK_SUSPICIOUS', ('monitor', 'block_suspicious'), _as_bool),
    ('REQGUARD_SUSPICIOUS_THRESHOLD', ('monitor', 'suspicious_threshold'), _as_int),
    ('REQGUARD_LOG_ALL_REQUESTS', ('monitor', 'log_all_requests'), _as_bool),
    ('REQGUARD_BLOCK_ON_SECURITY_ISSUES', ('sanitizer', 'block_on_security_issues'), _as_bool),
    ('REQGUARD_BRUTE_FORCE_MAX_ATTEMPTS', ('brute_force', 'max_attempts'), _as_int),
    ('REQGUARD_BRUTE_FORCE_WINDOW', ('brute_force', 'window_seconds'), _as_float),
    ('REQGUARD_BRUTE_FORCE_BLOCK_DURATION', ('brute_force', 'block_duration'), _as_float),
    ('REQGUARD_CSRF_SECRET_LENGTH', ('csrf', 'secret_length'), _as_int),
    ('REQGUARD_CSRF_TOKEN_LENGTH', ('csrf', 'token_length'), _as_int),
    ('REQGUARD_CSRF_COOKIE_NAME', ('csrf', 'cookie_name'), _as_str),
    ('REQGUARD_CSRF_HEADER_NAME', ('csrf', 'header_name'), _as_str),
    ('REQGUARD_CSRF_COOKIE_SECURE', ('csrf', 'cookie', 'secure'), _as_bool),
    ('REQGUARD_CSRF_COOKIE_SAME_SITE', ('csrf', 'cookie', 'same_site'), _as_str),
    ('REQGUARD_REDIS_ENABLED', ('redis', 'enabled'), _as_bool),
    ('REQGUARD_REDIS_URL', ('redis', 'url'), _as_str),
    ('REQGUARD_LOG_LEVEL', ('logging', 'level'), _as_str),
    ('REQGUARD_METRICS_ENABLED', ('metrics', 'enabled'), _as_bool),
]

for _route_class in RouteClass:
    _name = _route_class.value.upper()
    ENV_OVERRIDES.append((
        f'REQGUARD_RATE_LIMIT_{_name}_WINDOW',
        ('rate_limit', 'policies', _route_class.value, 'window_seconds'),
        _as_float,
    ))
    ENV_OVERRIDES.append((
        f'REQGUARD_RATE_LIMIT_{_name}_MAX',
        ('rate_limit', 'policies', _route_class.value, 'max_requests'),
        _as_int,
    ))


def default_config() -> Dict:
    """Defaults for every section. Component configs fill in the rest."""
    return {
        'rate_limit': {
            'key_by_identity': True,
            'policies': {},
        },
        'brute_force': {
            'max_attempts': 5,
            'window_seconds': 900,
            'block_duration': 3600,
            'failure_statuses': [401],
        },
        'csrf': {
            'secret_length': 32,
            'token_length': 32,
            'cookie_name': 'csrf-token',
            'header_name': 'X-CSRF-Token',
            'cookie': {'secure': True, 'http_only': False, 'same_site': 'Strict', 'path': '/'},
        },
        'sanitizer': {
            'block_on_security_issues': False,
            'skip_body_fields': ['password', 'token', 'refreshToken'],
        },
        'monitor': {
            'block_suspicious': False,
            'suspicious_threshold': 3,
            'log_all_requests': False,
        },
        'headers': {
            'enabled': True,
        },
        'redis': {
            'enabled': False,
            'url': 'redis://localhost:6379/0',
            'key_prefix': 'reqguard:rate',
            'socket_timeout': 0.5,
        },
        'logging': {
            'level': 'INFO',
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        },
        'metrics': {
            'enabled': True,
        },
    }


def _deep_merge(base: Dict, override: Dict) -> Dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ConfigManager:
    """Load and validate the pipeline configuration."""

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        self.config_path = config_path or os.getenv('REQGUARD_CONFIG', DEFAULT_CONFIG_PATH)
        self.environ = os.environ if environ is None else environ
        self.logger = logging.getLogger(__name__)
        self.config = self.load_config()

    def load_config(self) -> Dict:
        """
        Load configuration with validation.

        Raises:
            ConfigurationError: If the file is malformed or a value has the wrong type
        """
        try:
            with open(self.config_path, 'r') as f:
                loaded = yaml.safe_load(f)
        except FileNotFoundError:
            self.logger.warning(f"Config file not found: {self.config_path}, using defaults")
            loaded = {}
        except yaml.YAMLError as e:
            self.logger.error(f"YAML parsing error: {e}")
            raise ConfigurationError(f"Invalid configuration file: {e}")
        except OSError as e:
            raise ConfigurationError(f"Configuration loading failed: {e}")

        if loaded is None:
            loaded = {}
        config = self._validate_config(loaded)
        config = self._expand_env_vars(_deep_merge(default_config(), config))
        config = self._apply_env_overrides(config)
        self._validate_redis_config(config['redis'])
        return config

    def get_section(self, name: str) -> Dict:
        if name not in SECTIONS:
            raise KeyError(f"Unknown configuration section: {name}")
        return self.config.get(name, {})

    def _validate_config(self, config: Any) -> Dict:
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration must be a mapping")

        # A section with every key commented out loads as None
        config = {section: {} if value is None else value for section, value in config.items()}

        for section, value in config.items():
            if section not in SECTIONS:
                self.logger.warning(f"Ignoring unknown configuration section: {section}")
                continue
            if not isinstance(value, dict):
                raise ConfigurationError(f"Section '{section}' must be a mapping")

        bool_flags = [
            ('monitor', 'block_suspicious'),
            ('monitor', 'log_all_requests'),
            ('sanitizer', 'block_on_security_issues'),
            ('rate_limit', 'key_by_identity'),
            ('redis', 'enabled'),
            ('metrics', 'enabled'),
            ('headers', 'enabled'),
        ]
        for section, flag in bool_flags:
            value = config.get(section, {}).get(flag)
            if value is not None and not isinstance(value, bool):
                raise ConfigurationError(f"{section}.{flag} must be boolean")

        policies = config.get('rate_limit', {}).get('policies') or {}
        if not isinstance(policies, dict):
            raise ConfigurationError("rate_limit.policies must be a mapping")
        for name in policies:
            if RouteClass.from_string(name) is None:
                raise ConfigurationError(f"Unknown route class in rate_limit.policies: {name}")

        return {k: v for k, v in config.items() if k in SECTIONS}

    def _validate_redis_config(self, redis_config: Dict) -> None:
        url = redis_config.get('url')
        if redis_config.get('enabled') and (not isinstance(url, str) or not url):
            raise ConfigurationError("redis.url is required when redis is enabled")
        if isinstance(url, str) and url and not url.startswith(('redis://', 'rediss://', 'unix://')):
            raise ConfigurationError("redis.url must use redis://, rediss:// or unix://")

    def _expand_env_vars(self, config: Dict) -> Dict:
        """Expand ${VAR_NAME} references in string values."""

        def expand_value(value):
            if isinstance(value, str):
                for var_name in ENV_VAR_PATTERN.findall(value):
                    env_value = self.environ.get(var_name)
                    if env_value is None:
                        self.logger.warning(f"Environment variable not set: {var_name}")
                        env_value = ''
                    value = value.replace(f'${{{var_name}}}', env_value)
            elif isinstance(value, dict):
                return {k: expand_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [expand_value(item) for item in value]
            return value

        return expand_value(config)

    def _apply_env_overrides(self, config: Dict) -> Dict:
        for env_var, path, convert in ENV_OVERRIDES:
            raw = self.environ.get(env_var)
            if raw is None or raw == '':
                continue
            try:
                value = convert(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {e}")

            target = config
            for key in path[:-1]:
                target = target.setdefault(key, {})
            target[path[-1]] = value
            self.logger.debug(f"Configuration override from {env_var}")
        return config
