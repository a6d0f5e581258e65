"""Configuration loading for CloudDeck.

Main components:
- ConfigLoader: Load and validate clouddeck.yaml files
- ProjectCatalog: Read-only project snapshots
- Environment variable substitution (${VAR_NAME} pattern)
"""

from clouddeck.config.env_loader import load_env_file, substitute_env_vars
from clouddeck.config.loader import ConfigLoader, ProjectCatalog

__all__ = [
    "ConfigLoader",
    "ProjectCatalog",
    "load_env_file",
    "substitute_env_vars",
]
