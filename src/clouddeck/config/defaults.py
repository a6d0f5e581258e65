"""Default configuration values for CloudDeck."""

DEFAULT_CONFIG_FILENAMES: tuple[str, ...] = ("clouddeck.yaml", "clouddeck.yml")

# Platform settings overridable through CLOUDDECK_* variables
ENV_VAR_MAP: dict[str, str] = {
    "workspace_dir": "CLOUDDECK_WORKSPACE_DIR",
    "artifacts_dir": "CLOUDDECK_ARTIFACTS_DIR",
    "state_path": "CLOUDDECK_STATE_PATH",
    "max_workers": "CLOUDDECK_MAX_WORKERS",
    "build_timeout": "CLOUDDECK_BUILD_TIMEOUT",
    "build_poll_interval": "CLOUDDECK_BUILD_POLL_INTERVAL",
    "default_provider": "CLOUDDECK_DEFAULT_PROVIDER",
}

INT_FIELDS = frozenset({"max_workers"})
FLOAT_FIELDS = frozenset({"build_timeout", "build_poll_interval"})

# Conventional provider credential variables, used when the file omits them
PROVIDER_ENV_VARS: dict[str, dict[str, str]] = {
    "vercel": {
        "token": "VERCEL_TOKEN",
        "team_id": "VERCEL_TEAM_ID",
        "webhook_secret": "VERCEL_WEBHOOK_SECRET",
    },
    "netlify": {
        "token": "NETLIFY_TOKEN",
        "webhook_secret": "NETLIFY_WEBHOOK_SECRET",
    },
    "render": {
        "api_key": "RENDER_API_KEY",
        "webhook_secret": "RENDER_WEBHOOK_SECRET",
    },
}

GIT_SECRET_ENV_VARS: dict[str, str] = {
    "github_secret": "GITHUB_WEBHOOK_SECRET",
    "gitlab_secret": "GITLAB_WEBHOOK_SECRET",
    "bitbucket_secret": "BITBUCKET_WEBHOOK_SECRET",
}
