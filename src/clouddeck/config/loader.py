"""Configuration loader for CloudDeck.

This module provides the ConfigLoader class for loading, parsing, and validating
platform configuration from YAML files, and the ProjectCatalog that serves the
read-only project snapshots declared there.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from clouddeck.config.defaults import (
    DEFAULT_CONFIG_FILENAMES,
    ENV_VAR_MAP,
    FLOAT_FIELDS,
    GIT_SECRET_ENV_VARS,
    INT_FIELDS,
    PROVIDER_ENV_VARS,
)
from clouddeck.config.env_loader import substitute_env_vars
from clouddeck.lib.errors import ConfigurationError, NotFoundError
from clouddeck.models.config import PlatformConfig
from clouddeck.models.project import Project

logger = logging.getLogger(__name__)


def flatten_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    """Flatten a pydantic ValidationError into human-readable messages."""
    errors: list[str] = []
    for error in exc.errors():
        loc = error.get("loc", ())
        field_path = ".".join(str(item) for item in loc) if loc else "unknown"
        errors.append(f"Field '{field_path}': {error.get('msg', 'Unknown error')}")
    return errors or ["Validation failed with unknown error"]


def _parse_env_value(field_name: str, value: str) -> Any:
    """Parse environment variable value to the field's type.

    Raises:
        ValueError: If value cannot be parsed
    """
    if field_name in INT_FIELDS:
        return int(value)
    if field_name in FLOAT_FIELDS:
        return float(value)
    return value


class ConfigLoader:
    """Loads and validates platform configuration.

    Configuration precedence (highest to lowest):
    1. ``CLOUDDECK_*`` environment variables
    2. Values in the YAML file
    3. Conventional provider variables (``VERCEL_TOKEN``...) for unset fields
    4. Model defaults
    """

    def __init__(self, env: dict[str, str] | None = None) -> None:
        """Initialize the loader.

        Args:
            env: Environment mapping (defaults to ``os.environ``)
        """
        self._env = dict(os.environ) if env is None else env

    def find_config(self, directory: str | Path = ".") -> Path | None:
        """Return the first default config file found in a directory."""
        base = Path(directory)
        for name in DEFAULT_CONFIG_FILENAMES:
            candidate = base / name
            if candidate.exists():
                return candidate
        return None

    def load(self, file_path: str | Path | None = None) -> PlatformConfig:
        """Load and validate platform configuration.

        Args:
            file_path: YAML file to load; when None, only environment is used

        Returns:
            Validated PlatformConfig

        Raises:
            ConfigurationError: If the file cannot be read, parsed, or validated
        """
        data: dict[str, Any] = {}
        if file_path is not None:
            data = self._read_yaml(Path(file_path))

        self._apply_env_overrides(data)
        self._apply_provider_env_fallbacks(data)

        try:
            config = PlatformConfig(**data)
        except PydanticValidationError as e:
            error_text = "\n".join(flatten_pydantic_errors(e))
            raise ConfigurationError(
                "config_validation",
                f"Invalid CloudDeck configuration:\n{error_text}",
            ) from e

        logger.debug(
            f"Loaded configuration with {len(config.projects)} project(s) "
            f"and {config.max_workers} worker(s)"
        )
        return config

    def _read_yaml(self, path: Path) -> dict[str, Any]:
        """Read a YAML file with environment variable substitution."""
        try:
            raw_text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(
                "config_file", f"Configuration file not found at {path}"
            ) from e

        try:
            content = yaml.safe_load(substitute_env_vars(raw_text, self._env))
        except yaml.YAMLError as e:
            raise ConfigurationError(
                "yaml_parse", f"Failed to parse YAML file {path}: {e}"
            ) from e

        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigurationError(
                "yaml_parse", f"Top level of {path} must be a mapping"
            )
        return content

    def _apply_env_overrides(self, data: dict[str, Any]) -> None:
        for field_name, env_name in ENV_VAR_MAP.items():
            if env_name not in self._env:
                continue
            try:
                data[field_name] = _parse_env_value(field_name, self._env[env_name])
            except ValueError:
                logger.warning(
                    f"Ignoring {env_name}={self._env[env_name]!r}: invalid value"
                )

    def _apply_provider_env_fallbacks(self, data: dict[str, Any]) -> None:
        providers = data.setdefault("providers", {}) or {}
        data["providers"] = providers
        for provider, fields in PROVIDER_ENV_VARS.items():
            section = providers.setdefault(provider, {}) or {}
            providers[provider] = section
            for field_name, env_name in fields.items():
                if section.get(field_name) is None and self._env.get(env_name):
                    section[field_name] = self._env[env_name]

        git = data.setdefault("git", {}) or {}
        data["git"] = git
        for field_name, env_name in GIT_SECRET_ENV_VARS.items():
            if git.get(field_name) is None and self._env.get(env_name):
                git[field_name] = self._env[env_name]


class ProjectCatalog:
    """Read-only lookup of project snapshots.

    The settings layer owns projects; this catalog only serves the snapshots
    it was given.
    """

    def __init__(self, projects: list[Project] | None = None) -> None:
        """Index projects by identifier."""
        self._projects: dict[str, Project] = {p.id: p for p in projects or []}

    def get(self, project_id: str) -> Project:
        """Return a project snapshot.

        Raises:
            NotFoundError: If the project is unknown
        """
        project = self._projects.get(project_id)
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    def all(self) -> list[Project]:
        """Return every known project."""
        return list(self._projects.values())

    def put(self, project: Project) -> None:
        """Replace a project snapshot (used when the settings layer pushes updates)."""
        self._projects[project.id] = project
