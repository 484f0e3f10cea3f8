"""
Configuration management.

YAML file parsing, environment resolution, retry profiles and breaker settings.
"""

from backstop.config.loader import Config, load_config
from backstop.config.resolver import resolve_config

__all__ = [
    "load_config",
    "Config",
    "resolve_config",
]
