"""
Environment substitution for backstop.yaml.

Supported forms inside string values:
    ${VAR}            value of VAR
    ${VAR:-fallback}  value of VAR, or fallback when VAR is unset or empty
    {env}             the active environment name

Thresholds and timeouts are often injected per deployment
(e.g. reset_timeout: ${OPENAI_BREAKER_TIMEOUT:-60}), so a missing variable
is reported with the config path that referenced it.
"""

import os
import re
from typing import Any

from backstop.exceptions import ConfigurationError

_ENV_VAR = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def resolve_config(config_data: dict[str, Any], env: str = "dev", strict: bool = False) -> dict[str, Any]:
    """
    Substitute environment variables and {env} placeholders.

    Args:
        config_data: Parsed configuration
        env: Active environment name
        strict: Raise on ${VAR} references with no value and no fallback;
            otherwise such references are left as written

    Returns:
        Resolved copy of config_data

    Raises:
        ConfigurationError: In strict mode, listing every unset variable and where it is used
    """
    unset: dict[str, list[str]] = {}
    resolved = _resolve_value(config_data, env, "", unset)

    if strict and unset:
        lines = [f"  {var} (used by {', '.join(paths)})" for var, paths in sorted(unset.items())]
        raise ConfigurationError(
            "Unset environment variable(s) in configuration:\n" + "\n".join(lines),
            details={"unset": unset},
        )
    return resolved


def _resolve_value(value: Any, env: str, path: str, unset: dict[str, list[str]]) -> Any:
    if isinstance(value, dict):
        return {k: _resolve_value(v, env, _join(path, k), unset) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_value(item, env, f"{path}[{i}]", unset) for i, item in enumerate(value)]
    if not isinstance(value, str):
        return value

    def substitute(match: re.Match) -> str:
        name, fallback = match.group(1), match.group(2)
        current = os.environ.get(name)
        if current:
            return current
        if fallback is not None:
            return fallback
        if current is None:
            unset.setdefault(name, []).append(path or "<root>")
            return match.group(0)
        return current

    return _ENV_VAR.sub(substitute, value).replace("{env}", env)


def _join(path: str, key: Any) -> str:
    return f"{path}.{key}" if path else str(key)
