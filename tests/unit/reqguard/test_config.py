#!/usr/bin/env python3
"""
Unit tests for configuration loading.

Tests cover:
- YAML loading, defaults and deep merge
- ${VAR} expansion and REQGUARD_* overrides
- Schema validation errors
"""

from pathlib import Path

import pytest
import yaml

from reqguard.config import ConfigManager, ConfigurationError, default_config


EXAMPLE_CONFIG = Path(__file__).resolve().parents[3] / "config" / "reqguard.yml"


def write_config(tmp_path, data):
    path = tmp_path / "reqguard.yml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestLoading:
    """Test file handling."""

    def test_missing_file_uses_defaults(self, tmp_path, caplog):
        manager = ConfigManager(str(tmp_path / "absent.yml"), environ={})
        assert manager.config == default_config()
        assert "Config file not found" in caplog.text

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert ConfigManager(str(path), environ={}).config == default_config()

    def test_empty_section_uses_defaults(self, tmp_path):
        path = tmp_path / "sparse.yml"
        path.write_text("monitor:\n  # block_suspicious: true\nsanitizer:\n  block_on_security_issues: true\n")

        config = ConfigManager(str(path), environ={}).config

        assert config['monitor'] == default_config()['monitor']
        assert config['sanitizer']['block_on_security_issues'] is True

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("monitor: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid configuration file"):
            ConfigManager(str(path), environ={})

    def test_values_merged_over_defaults(self, tmp_path):
        path = write_config(tmp_path, {'monitor': {'suspicious_threshold': 7}})
        config = ConfigManager(path, environ={}).config
        assert config['monitor']['suspicious_threshold'] == 7
        assert config['monitor']['block_suspicious'] is False
        assert config['brute_force']['max_attempts'] == 5

    def test_nested_cookie_merge(self, tmp_path):
        path = write_config(tmp_path, {'csrf': {'cookie': {'same_site': 'Lax'}}})
        cookie = ConfigManager(path, environ={}).config['csrf']['cookie']
        assert cookie['same_site'] == 'Lax'
        assert cookie['secure'] is True

    def test_path_from_environment(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {'monitor': {'suspicious_threshold': 9}})
        monkeypatch.setenv('REQGUARD_CONFIG', path)
        assert ConfigManager(environ={}).config['monitor']['suspicious_threshold'] == 9

    def test_get_section(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "absent.yml"), environ={})
        assert manager.get_section('metrics') == {'enabled': True}
        with pytest.raises(KeyError):
            manager.get_section('proxy')

    def test_shipped_example_loads(self):
        manager = ConfigManager(str(EXAMPLE_CONFIG), environ={'REDIS_PASSWORD': 'pw'})
        assert set(manager.config) >= {'rate_limit', 'csrf', 'monitor'}


class TestValidation:
    """Test schema checks."""

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            ConfigManager(str(path), environ={})

    def test_section_must_be_mapping(self, tmp_path):
        path = write_config(tmp_path, {'monitor': 'on'})
        with pytest.raises(ConfigurationError, match="monitor"):
            ConfigManager(path, environ={})

    def test_boolean_flags_checked(self, tmp_path):
        path = write_config(tmp_path, {'monitor': {'block_suspicious': 'yes'}})
        with pytest.raises(ConfigurationError, match="must be boolean"):
            ConfigManager(path, environ={})

    def test_unknown_route_class(self, tmp_path):
        path = write_config(tmp_path, {'rate_limit': {'policies': {'bulk': {'max_requests': 1}}}})
        with pytest.raises(ConfigurationError, match="bulk"):
            ConfigManager(path, environ={})

    def test_unknown_section_ignored(self, tmp_path, caplog):
        path = write_config(tmp_path, {'proxy': {'port': 1}})
        config = ConfigManager(path, environ={}).config
        assert 'proxy' not in config
        assert "unknown configuration section" in caplog.text

    def test_redis_url_scheme(self, tmp_path):
        path = write_config(tmp_path, {'redis': {'enabled': True, 'url': 'http://cache:6379'}})
        with pytest.raises(ConfigurationError, match="redis.url"):
            ConfigManager(path, environ={})

    def test_redis_url_required_when_enabled(self, tmp_path):
        path = write_config(tmp_path, {'redis': {'enabled': True, 'url': ''}})
        with pytest.raises(ConfigurationError, match="required"):
            ConfigManager(path, environ={})


class TestEnvironment:
    """Test ${VAR} expansion and REQGUARD_* overrides."""

    def test_variable_expansion(self, tmp_path):
        path = write_config(tmp_path, {'redis': {'url': 'redis://:${REDIS_PASSWORD}@cache:6379/0'}})
        config = ConfigManager(path, environ={'REDIS_PASSWORD': 's3cret'}).config
        assert config['redis']['url'] == 'redis://:s3cret@cache:6379/0'

    def test_unset_variable_becomes_empty(self, tmp_path, caplog):
        path = write_config(tmp_path, {'redis': {'url': 'redis://:${REDIS_PASSWORD}@cache:6379/0'}})
        config = ConfigManager(path, environ={}).config
        assert config['redis']['url'] == 'redis://:@cache:6379/0'
        assert "REDIS_PASSWORD" in caplog.text

    def test_boolean_override(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "absent.yml"), environ={'REQGUARD_BLOCK_SUSPICIOUS': 'true'})
        assert manager.config['monitor']['block_suspicious'] is True

    def test_override_beats_file(self, tmp_path):
        path = write_config(tmp_path, {'monitor': {'suspicious_threshold': 7}})
        config = ConfigManager(path, environ={'REQGUARD_SUSPICIOUS_THRESHOLD': '2'}).config
        assert config['monitor']['suspicious_threshold'] == 2

    def test_rate_policy_override(self, tmp_path):
        environ = {'REQGUARD_RATE_LIMIT_AUTH_MAX': '3', 'REQGUARD_RATE_LIMIT_AUTH_WINDOW': '60'}
        config = ConfigManager(str(tmp_path / "absent.yml"), environ=environ).config
        assert config['rate_limit']['policies']['auth'] == {'max_requests': 3, 'window_seconds': 60.0}

    def test_nested_cookie_override(self, tmp_path):
        environ = {'REQGUARD_CSRF_COOKIE_SECURE': 'off'}
        config = ConfigManager(str(tmp_path / "absent.yml"), environ=environ).config
        assert config['csrf']['cookie']['secure'] is False

    def test_empty_override_ignored(self, tmp_path):
        config = ConfigManager(str(tmp_path / "absent.yml"), environ={'REQGUARD_LOG_LEVEL': ''}).config
        assert config['logging']['level'] == 'INFO'

    @pytest.mark.parametrize("env_var,value", [
        ('REQGUARD_BLOCK_SUSPICIOUS', 'maybe'),
        ('REQGUARD_SUSPICIOUS_THRESHOLD', 'three'),
        ('REQGUARD_BRUTE_FORCE_WINDOW', 'long'),
    ])
    def test_bad_override_value(self, tmp_path, env_var, value):
        with pytest.raises(ConfigurationError, match=env_var):
            ConfigManager(str(tmp_path / "absent.yml"), environ={env_var: value})
