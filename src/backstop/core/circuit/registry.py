"""
Keyed registry of circuit breakers, one per downstream resource.

HTTP client code looks breakers up by resource name ("twitter", "openai", ...)
so every caller of the same dependency shares one breaker.
"""

import threading
from collections.abc import Iterator, Mapping
from typing import Any

from backstop.core.circuit.breaker import CircuitBreaker
from backstop.exceptions import ConfigurationError

# Constructor settings accepted from configuration
_INT_SETTINGS = ("failure_threshold", "success_threshold", "half_open_max_calls")
_FLOAT_SETTINGS = ("reset_timeout",)

DEFAULT_BREAKER_SETTINGS: dict[str, Any] = {
    "failure_threshold": 5,
    "reset_timeout": 60.0,
    "success_threshold": 2,
    "half_open_max_calls": 1,
}


def coerce_breaker_settings(settings: Mapping[str, Any], name: str = "defaults") -> dict[str, Any]:
    """
    Validate and coerce breaker settings read from configuration.

    Raises:
        ConfigurationError: On a non-mapping entry, unknown keys or non-numeric values
    """
    if not isinstance(settings, Mapping):
        raise ConfigurationError(f"Circuit breaker settings for '{name}' must be a mapping")

    known = set(_INT_SETTINGS) | set(_FLOAT_SETTINGS)
    unknown = sorted(set(settings) - known)
    if unknown:
        raise ConfigurationError(f"Unknown circuit breaker setting(s): {', '.join(unknown)}")

    coerced: dict[str, Any] = {}
    for key, value in settings.items():
        try:
            coerced[key] = int(value) if key in _INT_SETTINGS else float(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value for circuit breaker setting '{key}': {value!r}") from e
    return coerced


class CircuitBreakerRegistry:
    """
    Mapping from resource name to its CircuitBreaker.

    Examples:
        >>> registry = CircuitBreakerRegistry(defaults={"failure_threshold": 3})
        >>> breaker = registry.get("instagram", reset_timeout=120.0)
        >>> registry.get("instagram") is breaker
        True
    """

    def __init__(
        self,
        defaults: Mapping[str, Any] | None = None,
        overrides: Mapping[str, Mapping[str, Any]] | None = None,
    ):
        """
        Args:
            defaults: Settings applied to every breaker created here
            overrides: Per-name settings merged over defaults
        """
        self._defaults = {**DEFAULT_BREAKER_SETTINGS, **coerce_breaker_settings(defaults or {})}
        self._overrides = {name: coerce_breaker_settings(s, name) for name, s in (overrides or {}).items()}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Any) -> "CircuitBreakerRegistry":
        """
        Build a registry from the 'circuit_breakers' section of a Config or dict.

        The 'defaults' key holds shared settings; every other key is a
        resource name with its own settings.
        """
        section = dict(config.get("circuit_breakers") or {})
        defaults = section.pop("defaults", None) or {}
        return cls(defaults=defaults, overrides=section)

    def get(self, name: str, **settings: Any) -> CircuitBreaker:
        """
        Return the breaker for name, creating it on first use.

        Settings only apply when the breaker is created.
        """
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                merged = {**self._defaults, **self._overrides.get(name, {}), **settings}
                breaker = CircuitBreaker(name=name, **merged)
                self._breakers[name] = breaker
            return breaker

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._breakers))

    def __len__(self) -> int:
        return len(self._breakers)

    def names(self) -> list[str]:
        """Names of all breakers created so far."""
        return list(self._breakers)

    def reset(self, name: str) -> None:
        """Force the named breaker CLOSED."""
        with self._lock:
            breaker = self._breakers.get(name)
        if breaker is None:
            raise KeyError(f"Circuit breaker '{name}' not found")
        breaker.reset()

    def reset_all(self) -> None:
        """Force every breaker CLOSED."""
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def clear(self) -> None:
        """Forget all breakers (for testing)."""
        with self._lock:
            self._breakers.clear()

    def get_stats(self) -> dict[str, dict]:
        """Stats of every breaker, keyed by name."""
        with self._lock:
            breakers = dict(self._breakers)
        return {name: breaker.get_stats() for name, breaker in breakers.items()}


# Global registry instance
_registry: CircuitBreakerRegistry | None = None
_registry_lock = threading.Lock()


def get_circuit_breaker_registry() -> CircuitBreakerRegistry:
    """Get the process-wide registry, creating it with default settings."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = CircuitBreakerRegistry()
        return _registry


def set_circuit_breaker_registry(registry: CircuitBreakerRegistry | None) -> None:
    """Replace the process-wide registry (None resets it)."""
    global _registry
    with _registry_lock:
        _registry = registry
