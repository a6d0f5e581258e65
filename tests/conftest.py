"""Pytest configuration and shared fixtures for CloudDeck tests."""

import os
import shlex
import shutil
import sys
import tempfile
import time
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from clouddeck.deploy.adapters.base import BaseAdapter
from clouddeck.deploy.builder import BuildPipeline
from clouddeck.deploy.registry import AdapterRegistry
from clouddeck.deploy.services import DeploymentServices
from clouddeck.deploy.signatures import PROVIDER_SCHEMES
from clouddeck.models.build import Build, LogEntry
from clouddeck.models.config import PlatformConfig, VercelConfig
from clouddeck.models.deployment import (
    CancelResult,
    ConnectResult,
    DeploymentLogs,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
    DeploymentStatusResult,
    DisconnectResult,
)
from clouddeck.models.project import BuildSettings, Project, RepositoryConfig

PROVIDER_SECRET = "provider-secret"
PYTHON = shlex.quote(sys.executable)

BUILD_SCRIPT = """\
import pathlib
import sys

out = pathlib.Path("dist")
out.mkdir(exist_ok=True)
(out / "index.html").write_text("<h1>hello</h1>")
print("compiled 1 page")
print("warning: nothing to minify", file=sys.stderr)
"""

FAIL_SCRIPT = """\
import sys

print("starting build")
print("boom: missing module", file=sys.stderr)
sys.exit(3)
"""

SLOW_SCRIPT = """\
import time

print("building slowly", flush=True)
time.sleep(60)
"""


class FakeAdapter(BaseAdapter):
    """In-memory provider adapter recording every call."""

    name = "vercel"
    signature_scheme = PROVIDER_SCHEMES["vercel"]

    def __init__(self, create_status: DeploymentStatus = DeploymentStatus.RUNNING):
        super().__init__(
            VercelConfig(token="t", webhook_secret=PROVIDER_SECRET),
            session=MagicMock(),
        )
        self.create_status = create_status
        self.create_error: Exception | None = None
        self.created: list[DeploymentRequest] = []
        self.cancelled: list[str] = []
        self.statuses: dict[str, DeploymentStatus] = {}

    def create_deployment(self, request: DeploymentRequest) -> DeploymentResult:
        self.created.append(request)
        if self.create_error is not None:
            raise self.create_error
        number = len(self.created)
        return DeploymentResult(
            provider=self.name,
            provider_deployment_id=f"dpl_{number}",
            url=f"https://{request.name}-{number}.example.app",
            status=self.create_status,
            metadata={"project_id": "prj_1", "region": "iad1"},
        )

    def get_deployment_status(
        self, provider_deployment_id: str
    ) -> DeploymentStatusResult:
        return DeploymentStatusResult(
            status=self.statuses.get(provider_deployment_id, DeploymentStatus.RUNNING),
            progress=100,
        )

    def get_deployment_logs(
        self, provider_deployment_id: str, limit: int = 50, offset: int = 0
    ) -> DeploymentLogs:
        return DeploymentLogs(logs=[LogEntry(message=f"log {provider_deployment_id}")])

    def list_deployments(
        self,
        project_ref: str,
        limit: int = 10,
        offset: int = 0,
        status: DeploymentStatus | None = None,
    ) -> list[DeploymentResult]:
        return []

    def cancel_deployment(self, provider_deployment_id: str) -> CancelResult:
        self.cancelled.append(provider_deployment_id)
        return CancelResult(success=True)

    def connect_account(self, credentials: dict[str, Any]) -> ConnectResult:
        if not credentials.get("token"):
            return ConnectResult(connected=False, message="Invalid token")
        return ConnectResult(connected=True, account_info={"id": "user_1"})

    def disconnect_account(self, account_id: str) -> DisconnectResult:
        return DisconnectResult(success=True)


@pytest.fixture
def temp_dir() -> Generator[Path]:
    """Create a temporary directory for test file operations.

    Yields:
        Path to temporary directory

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def isolated_env() -> Generator[dict[str, str]]:
    """Provide isolated environment variables for testing.

    Saves current environment and restores after test.

    Yields:
        Dictionary of original environment variables

    Cleanup:
        Restores original environment after test
    """
    original_env = os.environ.copy()
    yield original_env
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def wait_until() -> Callable[..., None]:
    """Return a helper polling a predicate until it holds or times out."""

    def _wait(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met before timeout")
            time.sleep(0.02)

    return _wait


@pytest.fixture
def source_repo(tmp_path: Path) -> Path:
    """A project source tree with passing, failing and slow build scripts."""
    repo = tmp_path / "source"
    repo.mkdir()
    (repo / "build.py").write_text(BUILD_SCRIPT)
    (repo / "fail.py").write_text(FAIL_SCRIPT)
    (repo / "slow.py").write_text(SLOW_SCRIPT)
    (repo / "README.md").write_text("fixture project\n")
    return repo


@pytest.fixture
def local_clone(monkeypatch: pytest.MonkeyPatch, source_repo: Path) -> Path:
    """Make the pipeline copy ``source_repo`` instead of running git."""

    def _clone(self: BuildPipeline, build: Build, project: Project, workspace: Path):
        workspace.mkdir(parents=True, exist_ok=True)
        repo_dir = workspace / "repo"
        shutil.copytree(source_repo, repo_dir)
        self._log(build.id, f"Copied fixture source for {project.id}")
        return repo_dir

    monkeypatch.setattr(BuildPipeline, "_clone_repository", _clone)
    return source_repo


def make_project(project_id: str, script: str, **overrides: Any) -> Project:
    """Create a project whose build runs a fixture script."""
    fields: dict[str, Any] = {
        "id": project_id,
        "name": project_id,
        "repository": RepositoryConfig(url=f"https://github.com/acme/{project_id}.git"),
        "build": BuildSettings(
            build_command=f"{PYTHON} {script}", output_directory="dist"
        ),
        "provider": "vercel",
    }
    fields.update(overrides)
    return Project(**fields)


@pytest.fixture
def project_factory() -> Callable[..., Project]:
    """Return the fixture project factory."""
    return make_project


@pytest.fixture
def platform_config(tmp_path: Path) -> PlatformConfig:
    """Platform configuration with fast polling and three fixture projects."""
    return PlatformConfig(
        workspace_dir=str(tmp_path / "workspaces"),
        artifacts_dir=str(tmp_path / "artifacts"),
        max_workers=4,
        build_poll_interval=0.05,
        build_timeout=30,
        command_timeout=30,
        projects=[
            make_project("web", "build.py"),
            make_project("broken", "fail.py"),
            make_project("slow", "slow.py"),
        ],
    )


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    """Provider adapter that succeeds immediately."""
    return FakeAdapter()


@pytest.fixture
def services(
    platform_config: PlatformConfig,
    fake_adapter: FakeAdapter,
    local_clone: Path,
) -> Generator[DeploymentServices]:
    """Fully wired engine using the fake adapter for Vercel."""
    registry = AdapterRegistry(platform_config.providers)
    registry.register("vercel", fake_adapter)
    engine = DeploymentServices.from_config(platform_config, registry=registry)
    yield engine
    engine.shutdown(wait=True)


def pytest_configure(config: Any) -> None:
    """Configure pytest with marker options."""
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow (deselect with '-m \"not slow\"')",
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests",
    )
    config.addinivalue_line(
        "markers",
        "unit: marks tests as unit tests",
    )
