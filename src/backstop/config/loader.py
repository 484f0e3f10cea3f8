"""
Configuration file loading.

Loads backstop.yaml (plus an optional backstop.{env}.yaml overlay) with
sections for retry profiles, circuit breakers, logging and metrics:

    retry:
      default:
        max_attempts: 3
        initial_delay: 1.0
      profiles:
        social_api:
          max_attempts: 5
          jitter: true
    circuit_breakers:
      defaults:
        failure_threshold: 5
        reset_timeout: 60
      openai:
        reset_timeout: ${OPENAI_BREAKER_TIMEOUT:-60}
    logging:
      level: INFO
    metrics:
      enabled: true
      port: 9090
"""

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml

from backstop.config.resolver import resolve_config
from backstop.core.circuit.registry import DEFAULT_BREAKER_SETTINGS, coerce_breaker_settings
from backstop.core.retry.policy import DEFAULT_RETRY_OPTIONS, RetryOptions
from backstop.exceptions import ConfigurationError

CONFIG_FILENAME = "backstop.yaml"

_SECTIONS = ("retry", "circuit_breakers", "logging", "metrics")


class Config:
    """Backstop configuration container with dict-like access."""

    def __init__(self, data: dict[str, Any]):
        self.data = data
        # Convenience properties for common config sections
        self.retry = data.get("retry") or {}
        self.circuit_breakers = data.get("circuit_breakers") or {}

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation."""
        value = self.data
        for k in key.split("."):
            if not isinstance(value, dict):
                return default
            value = value.get(k)
            if value is None:
                return default
        return value

    def __getitem__(self, key: str) -> Any:
        """Dict-like access: config['key'] or config['nested.key']."""
        if "." in key:
            return self.get(key)
        if key in self.data:
            value = self.data[key]
            # Return nested dicts as Config objects for chaining
            if isinstance(value, dict):
                return Config(value)
            return value
        raise KeyError(f"Config key '{key}' not found")

    def __contains__(self, key: str) -> bool:
        """Check if key exists in config (dot notation supported)."""
        value = self.data
        for k in key.split("."):
            if not isinstance(value, dict) or k not in value:
                return False
            value = value[k]
        return True

    def __iter__(self) -> Iterator[str]:
        """Iterate over top-level keys."""
        return iter(self.data)

    def keys(self):
        return self.data.keys()

    def items(self):
        return self.data.items()

    def retry_options(self, profile: str | None = None) -> RetryOptions:
        """
        Build RetryOptions for a named profile.

        The profile is merged over retry.default, which is merged over
        DEFAULT_RETRY_OPTIONS.

        Raises:
            ConfigurationError: If the profile does not exist or holds invalid values
        """
        base = RetryOptions.from_dict(self.retry.get("default") or {}, base=DEFAULT_RETRY_OPTIONS)
        if profile is None:
            return base

        profiles = self.retry.get("profiles") or {}
        if profile not in profiles:
            raise ConfigurationError(f"Retry profile not found: {profile}")
        return RetryOptions.from_dict(profiles[profile] or {}, base=base)

    def circuit_breaker_settings(self, name: str) -> dict[str, Any]:
        """Constructor settings for the named breaker (defaults merged under)."""
        defaults = coerce_breaker_settings(self.circuit_breakers.get("defaults") or {})
        specific = coerce_breaker_settings(self.circuit_breakers.get(name) or {}, name)
        return {**DEFAULT_BREAKER_SETTINGS, **defaults, **specific}

    def validate(self) -> None:
        """Validate configuration structure and content."""
        errors = []

        for section in _SECTIONS:
            value = self.data.get(section)
            if value is not None and not isinstance(value, dict):
                errors.append(f"Configuration '{section}' must be a dictionary, got {type(value).__name__}")

        if errors:
            raise ConfigurationError("\n".join(errors))

        # Build everything once so bad values surface at load time
        self.retry_options()
        for profile in self.retry.get("profiles") or {}:
            self.retry_options(profile)
        coerce_breaker_settings(self.circuit_breakers.get("defaults") or {})
        for name in self.circuit_breakers:
            if name != "defaults":
                self.circuit_breaker_settings(name)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            raise ConfigurationError(
                f"Error parsing {path.name} at line {mark.line + 1}, column {mark.column + 1}:\n"
                f"  {e}\n"
                f"  File: {path}"
            ) from e
        raise ConfigurationError(f"Error parsing {path.name}: {e}\n  File: {path}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration must be a mapping, got {type(data).__name__}\n  File: {path}")
    return data


def load_config(project_path: Path | None = None, env: str | None = None) -> Config:
    """
    Load backstop configuration.

    Loads backstop.yaml and backstop.{env}.yaml, then resolves environment
    variables and placeholders.

    Args:
        project_path: Directory holding backstop.yaml (default: current directory)
        env: Environment name (dev, staging, prod)

    Returns:
        Validated Config instance
    """
    if project_path is None:
        project_path = Path.cwd()
    project_path = Path(project_path)

    base_config_path = project_path / CONFIG_FILENAME
    if not base_config_path.is_file():
        raise FileNotFoundError(
            f"Configuration file not found: {base_config_path}\n"
            f"  Suggestion: Create a {CONFIG_FILENAME} file in your project root"
        )

    config_data = _read_yaml(base_config_path)

    if env:
        env_config_path = project_path / f"backstop.{env}.yaml"
        if env_config_path.is_file():
            # Env overrides base
            _merge_dict(config_data, _read_yaml(env_config_path))

    config = Config(resolve_config(config_data, env or "dev", strict=True))
    config.validate()
    return config


def _merge_dict(base: dict, override: dict):
    """Recursively merge override into base."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _merge_dict(base[key], value)
        else:
            base[key] = value
