"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for resilience configs.
"""

import os
import tempfile

import pytest
import yaml

from bytesteps_guard.config.loader import (
    CONFIG_ENV_VAR,
    RateLimitRule,
    ResilienceConfig,
    RetryConfig,
    load_config_from_env,
    load_resilience_config,
)
from bytesteps_guard.core.circuit_breaker import BreakerSettings


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a full configuration loads correctly."""
        config_data = {
            "storage": {"db_path": "/var/lib/bytesteps/guard.db"},
            "audit": {"max_records": 5000},
            "retry": {
                "max_retries": 3,
                "base_delay_seconds": 0.5,
                "max_delay_seconds": 10,
                "attempt_timeout_seconds": 15
            },
            "circuit_breakers": {
                "defaults": {"failure_threshold": 4, "recovery_timeout_seconds": 30},
                "dependencies": {
                    "tts-service": {"failure_threshold": 2}
                }
            },
            "rate_limits": {
                "ai-coach": {"max_requests": 20, "window_seconds": 60}
            },
            "anonymous": {"max_requests": 3, "window_seconds": 1800}
        }

        config = load_resilience_config(self._write_config(config_data))

        assert config.db_path == "/var/lib/bytesteps/guard.db"
        assert config.audit_max_records == 5000

        assert config.retry == RetryConfig(
            max_retries=3,
            base_delay_seconds=0.5,
            max_delay_seconds=10.0,
            attempt_timeout_seconds=15.0
        )

        # Dependency overrides inherit unspecified values from the defaults
        assert config.breaker_defaults == BreakerSettings(failure_threshold=4, recovery_timeout=30.0)
        assert config.get_breaker_settings("tts-service") == BreakerSettings(
            failure_threshold=2, recovery_timeout=30.0
        )
        assert config.get_breaker_settings("llm-service") == config.breaker_defaults

        assert config.get_rate_limit("ai-coach") == RateLimitRule(max_requests=20, window_seconds=60)
        assert config.get_rate_limit("text-to-speech") == RateLimitRule(max_requests=10, window_seconds=3600)
        assert config.anonymous == RateLimitRule(max_requests=3, window_seconds=1800)

    def test_partial_config_uses_defaults(self):
        """Test that omitted sections fall back to the service defaults."""
        config = load_resilience_config(self._write_config({"audit": {"max_records": 10}}))

        defaults = ResilienceConfig()
        assert config.audit_max_records == 10
        assert config.db_path == defaults.db_path
        assert config.retry == defaults.retry
        assert config.breaker_defaults == BreakerSettings(failure_threshold=5, recovery_timeout=60.0)
        assert config.rate_limits == defaults.rate_limits
        assert config.anonymous == RateLimitRule(max_requests=5, window_seconds=3600)

    def test_default_rate_limits(self):
        config = ResilienceConfig()
        assert config.get_rate_limit("ai-coach") == RateLimitRule(10, 60)
        assert config.get_rate_limit("text-to-speech") == RateLimitRule(10, 3600)
        assert config.get_rate_limit("help-requests") == RateLimitRule(5, 60)
        assert config.get_rate_limit("assessment-submit") == RateLimitRule(20, 60)
        assert config.get_rate_limit("unlimited-endpoint") is None

    def test_attempt_timeout_can_be_disabled(self):
        config = load_resilience_config(self._write_config({"retry": {"attempt_timeout_seconds": None}}))
        assert config.retry.attempt_timeout_seconds is None

    def test_missing_file_raises_error(self):
        """Test that missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Resilience config file not found"):
            load_resilience_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_empty_file_raises_error(self):
        """Test that empty config file raises ValueError."""
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, "w").close()

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_resilience_config(path)

    def test_non_mapping_raises_error(self):
        with pytest.raises(ValueError, match="Configuration must be a dictionary"):
            load_resilience_config(self._write_config(["a", "b"]))

    def test_invalid_yaml_raises_error(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write("retry: [unclosed\n")

        with pytest.raises(yaml.YAMLError, match="Invalid YAML"):
            load_resilience_config(path)

    def test_unknown_top_level_key_raises_error(self):
        """Test that typos in section names are rejected."""
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_resilience_config(self._write_config({"retries": {"max_retries": 1}}))

    def test_unknown_nested_key_raises_error(self):
        with pytest.raises(ValueError, match="Unknown keys in retry"):
            load_resilience_config(self._write_config({"retry": {"max_retry": 1}}))

        with pytest.raises(ValueError, match="Unknown keys in circuit_breakers.dependencies.llm-service"):
            load_resilience_config(self._write_config({
                "circuit_breakers": {"dependencies": {"llm-service": {"threshold": 3}}}
            }))

    def test_rate_limit_missing_field_raises_error(self):
        with pytest.raises(ValueError, match="Missing required 'window_seconds' in rate_limits.ai-coach"):
            load_resilience_config(self._write_config({
                "rate_limits": {"ai-coach": {"max_requests": 5}}
            }))

    @pytest.mark.parametrize("rule", [
        {"max_requests": 0, "window_seconds": 60},
        {"max_requests": -1, "window_seconds": 60},
        {"max_requests": 5, "window_seconds": 0},
        {"max_requests": "five", "window_seconds": 60},
        {"max_requests": True, "window_seconds": 60},
    ])
    def test_invalid_rate_limit_values(self, rule):
        """Test that non-positive or non-numeric limits are rejected."""
        with pytest.raises(ValueError):
            load_resilience_config(self._write_config({"anonymous": rule}))

    def test_invalid_retry_values(self):
        with pytest.raises(ValueError, match="'retry.max_retries' must be an integer >= 0"):
            load_resilience_config(self._write_config({"retry": {"max_retries": -1}}))

        with pytest.raises(ValueError, match="max_delay_seconds must be >= base_delay_seconds"):
            load_resilience_config(self._write_config({
                "retry": {"base_delay_seconds": 20, "max_delay_seconds": 5}
            }))

    def test_zero_retries_allowed(self):
        config = load_resilience_config(self._write_config({"retry": {"max_retries": 0}}))
        assert config.retry.max_retries == 0

    def test_invalid_breaker_values(self):
        with pytest.raises(ValueError, match="failure_threshold' must be an integer > 0"):
            load_resilience_config(self._write_config({
                "circuit_breakers": {"defaults": {"failure_threshold": 0}}
            }))

    def test_invalid_db_path(self):
        with pytest.raises(ValueError, match="'storage.db_path' must be a non-empty string"):
            load_resilience_config(self._write_config({"storage": {"db_path": "  "}}))


class TestConfigFromEnv:
    """Test loading the config named by the environment."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_defaults_without_env(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        assert load_config_from_env() == ResilienceConfig()

    def test_loads_file_from_env(self, monkeypatch):
        path = os.path.join(self.temp_dir, "config.yaml")
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump({"audit": {"max_records": 42}}, f)
        monkeypatch.setenv(CONFIG_ENV_VAR, path)

        assert load_config_from_env().audit_max_records == 42
