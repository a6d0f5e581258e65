"""Environment variable helpers for CloudDeck configuration files."""

from __future__ import annotations

import os
import re
from pathlib import Path

from dotenv import load_dotenv

from clouddeck.lib.errors import ConfigurationError

# ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def substitute_env_vars(text: str, env: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` references in text.

    Args:
        text: Raw configuration text
        env: Environment mapping (defaults to ``os.environ``)

    Returns:
        Text with all references substituted

    Raises:
        ConfigurationError: If a referenced variable is unset and has no default
    """
    source = os.environ if env is None else env

    def _replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        value = source.get(name)
        if value is not None:
            return value
        if default is not None:
            return default
        raise ConfigurationError(
            name, f"Environment variable '{name}' is referenced but not set"
        )

    return ENV_VAR_PATTERN.sub(_replace, text)


def load_env_file(path: str | Path | None = None) -> bool:
    """Load a ``.env`` file without overriding variables already set.

    Returns:
        True if a file was found and loaded
    """
    if path is None:
        return bool(load_dotenv(override=False))
    env_path = Path(path)
    if not env_path.exists():
        return False
    return bool(load_dotenv(env_path, override=False))
