"""CloudDeck - Multi-cloud deployment orchestration.

CloudDeck turns a repository, branch and commit into a live deployment on a
hosting provider. It builds the project in an isolated workspace, packages
the output, hands it to the provider and tracks the result.

Main features:
- Uniform adapter contract over Vercel, Netlify and Render
- Build pipeline with frozen-lockfile installs and hashed artifacts
- Append-only rollbacks and promotions
- Signed git and provider webhooks
"""

from clouddeck.config.loader import ConfigLoader
from clouddeck.lib.errors import CloudDeckError, ConfigurationError, ValidationError

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "CloudDeckError",
    "ConfigLoader",
    "ConfigurationError",
    "ValidationError",
]
