"""Shared fixtures for adapter tests."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from clouddeck.deploy.builder import create_archive, sha256_file
from clouddeck.models.build import Artifact, ArtifactType
from clouddeck.models.deployment import DeployConfig, DeploymentRequest
from clouddeck.models.project import BuildSettings, Project, RepositoryConfig


def _response(
    status_code: int = 200,
    body: Any = None,
    headers: dict[str, str] | None = None,
) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.headers = headers or {}
    response.content = b"" if body is None else json.dumps(body).encode()
    if body is None:
        response.json.side_effect = ValueError("no body")
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def make_response() -> Callable[..., MagicMock]:
    """Factory for mocked ``requests.Response`` objects."""
    return _response


@pytest.fixture
def session() -> MagicMock:
    """A mocked ``requests.Session``."""
    return MagicMock()


@pytest.fixture
def no_sleep() -> MagicMock:
    """Sleep replacement recording retry delays."""
    return MagicMock()


@pytest.fixture
def web_project() -> Project:
    """A Next.js project hosted on GitHub."""
    return Project(
        id="web",
        name="web",
        repository=RepositoryConfig(url="https://github.com/acme/web.git"),
        build=BuildSettings(
            build_command="npm run build",
            output_directory="out",
            framework="nextjs",
        ),
    )


@pytest.fixture
def make_request(web_project: Project) -> Callable[..., DeploymentRequest]:
    """Factory for deployment requests against ``web_project``."""

    def _make(**config: Any) -> DeploymentRequest:
        commit_sha = config.pop("commit_sha", None)
        artifacts = config.pop("artifacts", [])
        return DeploymentRequest(
            project=web_project,
            config=DeployConfig(**config),
            commit_sha=commit_sha,
            artifacts=artifacts,
        )

    return _make


@pytest.fixture
def build_artifact(tmp_path: Path) -> Artifact:
    """A packaged build output holding two pages and a script."""
    output = tmp_path / "out"
    (output / "assets").mkdir(parents=True)
    (output / "index.html").write_text("<h1>home</h1>")
    (output / "about.html").write_text("<h1>home</h1>")
    (output / "assets" / "app.js").write_text("console.log('hi')")
    archive = tmp_path / "artifacts" / "build.tar.gz"
    create_archive(output, archive)
    return Artifact(
        type=ArtifactType.BUILD,
        path=str(archive),
        size_bytes=archive.stat().st_size,
        sha256=sha256_file(archive),
    )
