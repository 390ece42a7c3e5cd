"""
Configuration management and loading.

Loads the resilience settings (storage, audit retention, retry policy,
circuit breakers, rate limits) from YAML with strict validation.
Every section is optional; omitted values fall back to the defaults the
ByteSteps service runs with.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from bytesteps_guard.core.circuit_breaker import BreakerSettings

CONFIG_ENV_VAR = "BYTESTEPS_CONFIG"


@dataclass(frozen=True)
class RateLimitRule:
    """Allowance for one endpoint: max_requests per window_seconds."""
    max_requests: int
    window_seconds: float

    def __post_init__(self):
        """Validate limit values are positive."""
        if self.max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy settings."""
    max_retries: int = 2
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    attempt_timeout_seconds: Optional[float] = 30.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if self.attempt_timeout_seconds is not None and self.attempt_timeout_seconds <= 0:
            raise ValueError("attempt_timeout_seconds must be > 0")


def _default_rate_limits() -> Dict[str, RateLimitRule]:
    return {
        "ai-coach": RateLimitRule(max_requests=10, window_seconds=60),
        "text-to-speech": RateLimitRule(max_requests=10, window_seconds=3600),
        "help-requests": RateLimitRule(max_requests=5, window_seconds=60),
        "assessment-submit": RateLimitRule(max_requests=20, window_seconds=60),
    }


@dataclass(frozen=True)
class ResilienceConfig:
    """Complete pipeline configuration."""
    db_path: str = "bytesteps.db"
    audit_max_records: int = 1000
    retry: RetryConfig = field(default_factory=RetryConfig)
    breaker_defaults: BreakerSettings = field(default_factory=BreakerSettings)
    breakers: Dict[str, BreakerSettings] = field(default_factory=dict)
    rate_limits: Dict[str, RateLimitRule] = field(default_factory=_default_rate_limits)
    anonymous: RateLimitRule = field(
        default_factory=lambda: RateLimitRule(max_requests=5, window_seconds=3600)
    )

    def __post_init__(self):
        if self.audit_max_records <= 0:
            raise ValueError("audit_max_records must be > 0")

    def get_rate_limit(self, endpoint: str) -> Optional[RateLimitRule]:
        """Get the rule for an endpoint, or None if it is unlimited."""
        return self.rate_limits.get(endpoint)

    def get_breaker_settings(self, dependency: str) -> BreakerSettings:
        """Get breaker settings for a dependency, using defaults if not specified."""
        return self.breakers.get(dependency, self.breaker_defaults)


def load_resilience_config(path: str) -> ResilienceConfig:
    """Load and validate resilience configuration from a YAML file.

    Strict validation: unknown keys and wrongly typed values are errors,
    so a typo cannot silently leave a dependency unprotected.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ResilienceConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Resilience config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'storage', 'audit', 'retry', 'circuit_breakers', 'rate_limits', 'anonymous'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    kwargs: Dict[str, Any] = {}

    if 'storage' in raw_config:
        storage = _section(raw_config, 'storage', {'db_path'})
        if 'db_path' in storage:
            db_path = storage['db_path']
            if not isinstance(db_path, str) or not db_path.strip():
                raise ValueError("'storage.db_path' must be a non-empty string")
            kwargs['db_path'] = db_path

    if 'audit' in raw_config:
        audit = _section(raw_config, 'audit', {'max_records'})
        if 'max_records' in audit:
            kwargs['audit_max_records'] = _positive_int(audit['max_records'], 'audit.max_records')

    if 'retry' in raw_config:
        kwargs['retry'] = _parse_retry(_section(
            raw_config, 'retry',
            {'max_retries', 'base_delay_seconds', 'max_delay_seconds', 'attempt_timeout_seconds'}
        ))

    if 'circuit_breakers' in raw_config:
        breakers = _section(raw_config, 'circuit_breakers', {'defaults', 'dependencies'})
        defaults = BreakerSettings()
        if 'defaults' in breakers:
            defaults = _parse_breaker(breakers['defaults'], 'circuit_breakers.defaults', defaults)
        kwargs['breaker_defaults'] = defaults

        dependencies = breakers.get('dependencies') or {}
        if not isinstance(dependencies, dict):
            raise ValueError("'circuit_breakers.dependencies' must be a dictionary")
        kwargs['breakers'] = {
            name: _parse_breaker(data, f"circuit_breakers.dependencies.{name}", defaults)
            for name, data in dependencies.items()
        }

    if 'rate_limits' in raw_config:
        limits_data = raw_config['rate_limits'] or {}
        if not isinstance(limits_data, dict):
            raise ValueError("'rate_limits' must be a dictionary")
        rate_limits = _default_rate_limits()
        for endpoint, data in limits_data.items():
            rate_limits[endpoint] = _parse_rule(data, f"rate_limits.{endpoint}")
        kwargs['rate_limits'] = rate_limits

    if 'anonymous' in raw_config:
        kwargs['anonymous'] = _parse_rule(raw_config['anonymous'], 'anonymous')

    return ResilienceConfig(**kwargs)


def load_config_from_env(default: Optional[ResilienceConfig] = None) -> ResilienceConfig:
    """Load the file named by $BYTESTEPS_CONFIG, or return the defaults."""
    path = os.environ.get(CONFIG_ENV_VAR)
    if path:
        return load_resilience_config(path)
    return default or ResilienceConfig()


def _section(raw: Dict, name: str, allowed: set) -> Dict:
    data = raw[name]
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in {name}: {unknown}")
    return data


def _positive_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{path}' must be an integer > 0")
    return value


def _positive_number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return float(value)


def _parse_retry(data: Dict) -> RetryConfig:
    defaults = RetryConfig()
    max_retries = data.get('max_retries', defaults.max_retries)
    if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
        raise ValueError("'retry.max_retries' must be an integer >= 0")

    base_delay = data.get('base_delay_seconds', defaults.base_delay_seconds)
    if isinstance(base_delay, bool) or not isinstance(base_delay, (int, float)) or base_delay < 0:
        raise ValueError("'retry.base_delay_seconds' must be >= 0")

    max_delay = _positive_number(
        data.get('max_delay_seconds', defaults.max_delay_seconds), 'retry.max_delay_seconds'
    )

    timeout = data.get('attempt_timeout_seconds', defaults.attempt_timeout_seconds)
    if timeout is not None:
        timeout = _positive_number(timeout, 'retry.attempt_timeout_seconds')

    return RetryConfig(
        max_retries=max_retries,
        base_delay_seconds=float(base_delay),
        max_delay_seconds=max_delay,
        attempt_timeout_seconds=timeout
    )


def _parse_breaker(data: Any, path: str, defaults: BreakerSettings) -> BreakerSettings:
    """Parse breaker settings, filling gaps from defaults.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown = set(data.keys()) - {'failure_threshold', 'recovery_timeout_seconds'}
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {unknown}")

    threshold = defaults.failure_threshold
    if 'failure_threshold' in data:
        threshold = _positive_int(data['failure_threshold'], f"{path}.failure_threshold")

    recovery = defaults.recovery_timeout
    if 'recovery_timeout_seconds' in data:
        recovery = _positive_number(data['recovery_timeout_seconds'], f"{path}.recovery_timeout_seconds")

    return BreakerSettings(failure_threshold=threshold, recovery_timeout=recovery)


def _parse_rule(data: Any, path: str) -> RateLimitRule:
    """Parse and validate a rate-limit rule.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown = set(data.keys()) - {'max_requests', 'window_seconds'}
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {unknown}")
    if 'max_requests' not in data:
        raise ValueError(f"Missing required 'max_requests' in {path}")
    if 'window_seconds' not in data:
        raise ValueError(f"Missing required 'window_seconds' in {path}")

    return RateLimitRule(
        max_requests=_positive_int(data['max_requests'], f"{path}.max_requests"),
        window_seconds=_positive_number(data['window_seconds'], f"{path}.window_seconds")
    )
