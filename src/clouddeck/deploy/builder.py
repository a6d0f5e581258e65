"""Build pipeline for CloudDeck projects.

This module turns a (repository, branch, commit) tuple into packaged, hashed
build artifacts: clone, install with a frozen lockfile, run the build
command, and package the output directory as a gzip'd tarball. Subprocess
output is streamed line by line into the build record while the command
runs.
"""

from __future__ import annotations

import contextlib
import gzip
import hashlib
import json
import os
import shlex
import shutil
import signal
import subprocess  # nosec B404
import tarfile
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import IO, Any
from urllib.parse import quote, urlsplit, urlunsplit

from clouddeck.config.loader import ProjectCatalog
from clouddeck.deploy.state import DeploymentStore
from clouddeck.lib.errors import (
    BuildCancelledError,
    BuildError,
    BuildTimeoutError,
    CommandFailedError,
    StateConflictError,
)
from clouddeck.lib.logging_config import get_logger, redact_url
from clouddeck.models.build import (
    Artifact,
    ArtifactType,
    Build,
    BuildStatus,
    BuildTrigger,
    LogEntry,
    LogLevel,
    utcnow,
)
from clouddeck.models.config import PlatformConfig
from clouddeck.models.project import GitProvider, Project, RepositoryConfig

logger = get_logger(__name__)

# First match wins when several lockfiles are present
LOCKFILE_PRECEDENCE: tuple[tuple[str, str], ...] = (
    ("yarn.lock", "yarn"),
    ("pnpm-lock.yaml", "pnpm"),
    ("package-lock.json", "npm"),
    ("npm-shrinkwrap.json", "npm"),
)

INSTALL_COMMANDS: dict[str, list[str]] = {
    "npm": ["npm", "ci"],
    "yarn": ["yarn", "install", "--frozen-lockfile"],
    "pnpm": ["pnpm", "install", "--frozen-lockfile"],
}

MANIFEST_FILE = "package.json"
MANIFEST_SECTIONS = (
    "dependencies",
    "devDependencies",
    "optionalDependencies",
    "peerDependencies",
)

SOURCE_EXCLUDES = frozenset({"node_modules", ".git", "tmp"})

# Username conventions for token-authenticated https clones
_TOKEN_USERS = {
    GitProvider.GITHUB: "x-access-token",
    GitProvider.GITLAB: "oauth2",
    GitProvider.BITBUCKET: "x-token-auth",
}

STDERR_TAIL_LINES = 20

LogListener = Callable[[str, LogEntry], None]


def detect_package_manager(workspace: Path) -> str:
    """Detect the dependency manager from lockfiles.

    Args:
        workspace: Directory containing the dependency manifest

    Returns:
        ``yarn``, ``pnpm`` or ``npm`` (the default when no lockfile exists)
    """
    for lockfile, manager in LOCKFILE_PRECEDENCE:
        if (workspace / lockfile).exists():
            return manager
    return "npm"


def get_install_command(package_manager: str) -> list[str]:
    """Return the frozen-lockfile install command for a package manager."""
    return list(INSTALL_COMMANDS.get(package_manager, INSTALL_COMMANDS["npm"]))


def read_dependency_manifest(workspace: Path) -> dict[str, dict[str, str]]:
    """Read the declared dependencies from ``package.json``.

    Returns:
        Mapping of manifest section to ``{name: version}``; empty when the
        workspace has no manifest or it cannot be parsed
    """
    manifest_path = workspace / MANIFEST_FILE
    if not manifest_path.exists():
        return {}
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read {manifest_path}: {e}")
        return {}
    if not isinstance(manifest, dict):
        return {}
    return {
        section: dict(manifest[section])
        for section in MANIFEST_SECTIONS
        if isinstance(manifest.get(section), dict)
    }


def compute_cache_key(
    framework: str | None,
    dependencies: dict[str, Any],
    build_config: dict[str, Any],
) -> str:
    """Compute a deterministic cache key for a build.

    Key order in the inputs does not matter; any change to a dependency
    version or to the build configuration produces a different key.

    Example:
        >>> a = compute_cache_key("nextjs", {"dependencies": {"a": "1", "b": "2"}}, {})
        >>> b = compute_cache_key("nextjs", {"dependencies": {"b": "2", "a": "1"}}, {})
        >>> a == b
        True
    """
    payload = json.dumps(
        {
            "framework": framework,
            "dependencies": dependencies,
            "config": build_config,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def build_repository_url(repository: RepositoryConfig) -> str:
    """Return the clone URL, with the access token injected for https remotes."""
    url = repository.url
    if not repository.access_token:
        return url
    parts = urlsplit(url)
    if parts.scheme != "https" or "@" in parts.netloc:
        return url
    user = _TOKEN_USERS.get(repository.provider, "x-access-token")
    token = quote(repository.access_token, safe="")
    return urlunsplit(parts._replace(netloc=f"{user}:{token}@{parts.netloc}"))


def build_clone_commands(
    url: str, branch: str, commit_sha: str | None, dest: Path
) -> list[list[str]]:
    """Return the git commands that materialize a branch or commit in ``dest``.

    A branch head is a shallow clone. A specific commit is fetched into the
    shallow clone and then checked out.
    """
    commands = [["git", "clone", "--depth", "1", "--branch", branch, url, str(dest)]]
    if commit_sha:
        commands.append(
            ["git", "-C", str(dest), "fetch", "--depth", "1", "origin", commit_sha]
        )
        commands.append(["git", "-C", str(dest), "checkout", "--detach", commit_sha])
    return commands


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute the SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _iter_files(root: Path, excludes: frozenset[str]) -> Iterable[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in excludes)
        for filename in sorted(filenames):
            if filename not in excludes:
                yield Path(dirpath) / filename


def create_archive(
    source_dir: Path, output_path: Path, excludes: frozenset[str] = frozenset()
) -> None:
    """Write ``source_dir`` as a reproducible ``.tar.gz``.

    Entries are sorted and stripped of timestamps and ownership so identical
    trees produce identical archives.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.mtime = 0
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        return info

    with open(output_path, "wb") as raw:
        with gzip.GzipFile(filename="", fileobj=raw, mode="wb", mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w") as tar:
                for path in _iter_files(source_dir, excludes):
                    tar.add(
                        path,
                        arcname=path.relative_to(source_dir).as_posix(),
                        recursive=False,
                        filter=_normalize,
                    )


class ProcessTable:
    """Mutex-guarded map of running build subprocesses keyed by build id."""

    def __init__(self) -> None:
        """Create an empty table."""
        self._lock = threading.Lock()
        self._processes: dict[str, subprocess.Popen[str]] = {}

    def register(self, build_id: str, process: subprocess.Popen[str]) -> None:
        """Track the subprocess currently running for a build."""
        with self._lock:
            self._processes[build_id] = process

    def remove(self, build_id: str) -> subprocess.Popen[str] | None:
        """Stop tracking a build's subprocess."""
        with self._lock:
            return self._processes.pop(build_id, None)

    def get(self, build_id: str) -> subprocess.Popen[str] | None:
        """Return the tracked subprocess for a build, if any."""
        with self._lock:
            return self._processes.get(build_id)

    def terminate(self, build_id: str) -> bool:
        """Send SIGTERM to a build's subprocess and remove its entry.

        Returns:
            True if a running process was signalled
        """
        process = self.remove(build_id)
        if process is None or process.poll() is not None:
            return False
        terminate_process(process)
        return True

    def build_ids(self) -> list[str]:
        """Return the ids of builds with a tracked subprocess."""
        with self._lock:
            return list(self._processes)

    def __contains__(self, build_id: object) -> bool:
        with self._lock:
            return build_id in self._processes

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)


def terminate_process(process: subprocess.Popen[str]) -> None:
    """Send SIGTERM to a subprocess and the process group it leads."""
    if os.name == "posix":
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGTERM)
            return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()


class BuildPipeline:
    """Runs builds through clone, install, build and packaging.

    Example:
        >>> pipeline = BuildPipeline(config, store, catalog)
        >>> build = pipeline.create_build(project, branch="main")
        >>> pipeline.start(build.id)
        >>> pipeline.wait_for_completion(build.id, timeout=600).status
        <BuildStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        config: PlatformConfig,
        store: DeploymentStore,
        catalog: ProjectCatalog,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Platform configuration (directories, timeouts, pool size)
            store: Record store for builds
            catalog: Project snapshots
            executor: Build worker pool (defaults to ``max_workers`` threads)
        """
        self.config = config
        self.store = store
        self.catalog = catalog
        self.workspace_root = Path(config.workspace_dir)
        self.artifacts_root = Path(config.artifacts_dir)
        self.processes = ProcessTable()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.max_workers, thread_name_prefix="clouddeck-build"
        )
        self._lock = threading.Lock()
        self._cancelled: set[str] = set()
        self._completion: dict[str, threading.Event] = {}
        self._log_listeners: list[LogListener] = []

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def add_log_listener(self, listener: LogListener) -> None:
        """Receive every build log line as it is recorded."""
        self._log_listeners.append(listener)

    def create_build(
        self,
        project: Project,
        branch: str | None = None,
        commit_sha: str | None = None,
        deployment_id: str | None = None,
        trigger: BuildTrigger = BuildTrigger.MANUAL,
        user_id: str | None = None,
        build_overrides: dict[str, Any] | None = None,
    ) -> Build:
        """Create a pending build record for a project.

        Args:
            project: Project snapshot
            branch: Branch to build (defaults to the repository branch)
            commit_sha: Specific commit to build
            deployment_id: Deployment that requested the build
            trigger: What started the build
            user_id: Caller identity
            build_overrides: Fields overriding the project's build settings

        Returns:
            The stored build in ``pending``
        """
        overrides = {k: v for k, v in (build_overrides or {}).items() if v is not None}
        build_config = project.build.model_copy(update=overrides)
        build = Build(
            project_id=project.id,
            deployment_id=deployment_id,
            branch=branch or project.repository.branch,
            commit_sha=commit_sha,
            trigger=trigger,
            user_id=user_id,
            build_config=build_config,
        )
        self.store.add_build(build)
        logger.info(f"Created build {build.id} for project {project.id}")
        return build

    def start(self, build_id: str) -> Future[Build]:
        """Run a build on the worker pool."""
        self._completion_event(build_id)
        return self._executor.submit(self.run, build_id)

    def retry_build(self, build_id: str, user_id: str | None = None) -> Build:
        """Create a new build replaying a finished build's branch, commit and config.

        Raises:
            StateConflictError: If the original build has not finished
        """
        original = self.store.get_build(build_id)
        if not original.status.is_terminal:
            raise StateConflictError("build", build_id, original.status.value, "retry")
        retry = Build(
            project_id=original.project_id,
            deployment_id=original.deployment_id,
            branch=original.branch,
            commit_sha=original.commit_sha,
            trigger=BuildTrigger.RETRY,
            user_id=user_id or original.user_id,
            build_config=original.build_config,
            retry_count=original.retry_count + 1,
            retried_from_id=original.id,
        )
        self.store.add_build(retry)
        logger.info(f"Retrying build {build_id} as {retry.id}")
        return retry

    def cancel_build(self, build_id: str) -> Build:
        """Cancel a running build.

        Sends SIGTERM to the active subprocess, if any, and removes it from
        the process table.

        Raises:
            NotFoundError: If the build does not exist
            StateConflictError: If the build already finished
        """
        with self.store.entity_lock(build_id):
            build = self.store.get_build(build_id)
            if build.status.is_terminal:
                raise StateConflictError(
                    "build", build_id, build.status.value, "cancel"
                )
            with self._lock:
                self._cancelled.add(build_id)
            signalled = self.processes.terminate(build_id)
            finished = utcnow()
            build = self.store.transition_build(
                build_id,
                BuildStatus.CANCELLED,
                finished_at=finished,
                duration_ms=self._duration_ms(build, finished),
            )
        self._log(
            build_id,
            "Build cancelled" + (" (process terminated)" if signalled else ""),
            LogLevel.WARN,
        )
        self._signal_completion(build_id)
        logger.info(f"Cancelled build {build_id}")
        return build

    def wait_for_completion(
        self,
        build_id: str,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> Build:
        """Block until a build reaches a terminal status.

        The runner signals completion as soon as it finishes; the record is
        also re-read every ``poll_interval`` seconds.

        Raises:
            BuildTimeoutError: If the build is still running after ``timeout``
        """
        timeout = self.config.build_timeout if timeout is None else timeout
        poll_interval = poll_interval or self.config.build_poll_interval
        deadline = time.monotonic() + timeout
        event = self._completion_event(build_id)
        while True:
            build = self.store.get_build(build_id)
            if build.status.is_terminal:
                # Runners that already finished have popped their own event
                self._signal_completion(build_id)
                return build
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise BuildTimeoutError(build_id, timeout)
            event.wait(min(poll_interval, remaining))

    def shutdown(self, wait: bool = True) -> None:
        """Cancel running builds and stop the worker pool."""
        for build_id in self.processes.build_ids():
            with contextlib.suppress(StateConflictError):
                self.cancel_build(build_id)
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Runner
    # ------------------------------------------------------------------

    def run(self, build_id: str) -> Build:
        """Execute a pending build synchronously in the calling thread.

        Errors never propagate: the build ends in ``failed`` or ``cancelled``
        with a recorded message, and the workspace is always removed.
        """
        build = self.store.get_build(build_id)
        if build.status != BuildStatus.PENDING:
            logger.debug(f"Build {build_id} is {build.status.value}; not running")
            with self._lock:
                self._cancelled.discard(build_id)
            self._signal_completion(build_id)
            return build

        workspace = self.workspace_root / build_id
        try:
            project = self.catalog.get(build.project_id)
            build = self._transition(
                build_id, BuildStatus.CLONING, started_at=utcnow()
            )
            repo_dir = self._clone_repository(build, project, workspace)
            build = self.store.get_build(build_id)
            app_dir = repo_dir / (build.build_config.root_directory or "")

            cache_key = compute_cache_key(
                build.build_config.framework,
                read_dependency_manifest(app_dir),
                build.build_config.model_dump(mode="json", exclude={"include_source"}),
            )
            self.store.update_build(build_id, cache_key=cache_key)
            cached = self.store.find_cached_build(
                build.project_id, cache_key, build.commit_sha
            )

            self._transition(build_id, BuildStatus.INSTALLING)
            if cached is not None:
                artifacts = self._reuse_cached(build_id, cached)
            else:
                self._install_dependencies(build, app_dir)
                self._transition(build_id, BuildStatus.BUILDING)
                output_dir = self._run_build(build, app_dir)
                self._transition(build_id, BuildStatus.PACKAGING)
                artifacts = self._package_artifacts(build, output_dir, repo_dir)

            if not artifacts or not all(a.sha256 for a in artifacts):
                raise BuildError(build_id, "Build produced no artifacts")

            finished = utcnow()
            started = self.store.get_build(build_id)
            build = self._transition(
                build_id,
                BuildStatus.SUCCESS,
                artifacts=artifacts,
                cache_hit=cached is not None,
                finished_at=finished,
                duration_ms=self._duration_ms(started, finished),
            )
            logger.info(f"Build {build_id} succeeded")
        except BuildCancelledError:
            logger.info(f"Build {build_id} stopped after cancellation")
        except StateConflictError as e:
            # Status was changed underneath the runner, normally by cancel_build
            logger.info(f"Build {build_id} stopped: {e}")
        except BuildError as e:
            self._fail(build_id, e.message, getattr(e, "exit_code", None))
        except Exception as e:
            logger.error(f"Build {build_id} crashed: {e}", exc_info=True)
            self._fail(build_id, str(e) or e.__class__.__name__, None)
        finally:
            self.processes.remove(build_id)
            self._cleanup_workspace(workspace)
            with self._lock:
                self._cancelled.discard(build_id)
            self._signal_completion(build_id)
        return self.store.get_build(build_id)

    def _clone_repository(
        self, build: Build, project: Project, workspace: Path
    ) -> Path:
        """Clone the repository into the build workspace and record the commit."""
        workspace.mkdir(parents=True, exist_ok=True)
        repo_dir = workspace / "repo"
        url = build_repository_url(project.repository)
        self._log(build.id, f"Cloning {redact_url(url)} ({build.branch})")
        for command in build_clone_commands(
            url, build.branch, build.commit_sha, repo_dir
        ):
            self._run_command(build.id, command, cwd=workspace)

        if not build.commit_sha:
            resolved = subprocess.run(  # noqa: S603  # nosec B603 B607
                ["git", "-C", str(repo_dir), "rev-parse", "HEAD"],  # noqa: S607
                capture_output=True,
                text=True,
            )
            if resolved.returncode == 0:
                self.store.update_build(build.id, commit_sha=resolved.stdout.strip())
        return repo_dir

    def _install_dependencies(self, build: Build, app_dir: Path) -> None:
        settings = build.build_config
        if settings.install_command:
            command = shlex.split(settings.install_command)
            self._log(build.id, f"Installing dependencies: {settings.install_command}")
        elif not (app_dir / MANIFEST_FILE).exists():
            self._log(build.id, f"No {MANIFEST_FILE} found; skipping install")
            return
        else:
            manager = detect_package_manager(app_dir)
            command = get_install_command(manager)
            self._log(build.id, f"Installing dependencies with {manager}")
        self._run_command(build.id, command, cwd=app_dir, env=self._build_env(build))

    def _run_build(self, build: Build, app_dir: Path) -> Path:
        settings = build.build_config
        self._log(build.id, f"Running build command: {settings.build_command}")
        self._run_command(
            build.id,
            shlex.split(settings.build_command),
            cwd=app_dir,
            env=self._build_env(build),
        )
        output_dir = app_dir / settings.output_directory
        if not output_dir.is_dir():
            raise BuildError(
                build.id,
                f"Build output directory not found: {settings.output_directory}",
            )
        return output_dir

    def _package_artifacts(
        self, build: Build, output_dir: Path, repo_dir: Path
    ) -> list[Artifact]:
        target_dir = self.artifacts_root / build.id
        artifacts = [
            self._archive(build.id, ArtifactType.BUILD, output_dir, target_dir)
        ]
        if build.build_config.include_source:
            artifacts.append(
                self._archive(
                    build.id, ArtifactType.SOURCE, repo_dir, target_dir, SOURCE_EXCLUDES
                )
            )
        return artifacts

    def _archive(
        self,
        build_id: str,
        artifact_type: ArtifactType,
        source_dir: Path,
        target_dir: Path,
        excludes: frozenset[str] = frozenset(),
    ) -> Artifact:
        staging = target_dir / f"{artifact_type.value}.tar.gz.partial"
        create_archive(source_dir, staging, excludes)
        digest = sha256_file(staging)
        final_path = target_dir / f"{artifact_type.value}-{digest[:12]}.tar.gz"
        staging.replace(final_path)
        size = final_path.stat().st_size
        self._log(
            build_id,
            f"Packaged {artifact_type.value} artifact ({size} bytes, sha256 {digest})",
        )
        return Artifact(
            type=artifact_type, path=str(final_path), size_bytes=size, sha256=digest
        )

    def _reuse_cached(self, build_id: str, cached: Build) -> list[Artifact]:
        self._log(build_id, f"Cache hit from build {cached.id}; skipping install")
        self._transition(build_id, BuildStatus.BUILDING)
        self._log(build_id, "Cache hit; skipping build")
        self._transition(build_id, BuildStatus.PACKAGING)
        self._log(build_id, "Reusing cached artifacts")
        return list(cached.artifacts)

    def _build_env(self, build: Build) -> dict[str, str]:
        return {
            **os.environ,
            "NODE_ENV": "production",
            **build.build_config.environment_variables,
        }

    def _run_command(
        self,
        build_id: str,
        command: list[str],
        cwd: Path,
        env: dict[str, str] | None = None,
    ) -> None:
        """Run one subprocess, streaming stdout as info and stderr as error lines.

        Raises:
            BuildCancelledError: If the build was cancelled while it ran
            BuildTimeoutError: If the command exceeded ``command_timeout``
            CommandFailedError: If the command exited non-zero
            BuildError: If the executable could not be started
        """
        if self._is_cancelled(build_id):
            raise BuildCancelledError(build_id)
        try:
            process = subprocess.Popen(  # noqa: S603  # nosec B603
                command,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=os.name == "posix",
            )
        except FileNotFoundError as e:
            raise BuildError(build_id, f"Command not found: {command[0]}") from e

        self.processes.register(build_id, process)
        if self._is_cancelled(build_id):
            self.processes.terminate(build_id)

        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        readers = [
            threading.Thread(
                target=self._pump,
                args=(build_id, process.stdout, LogLevel.INFO, None),
                daemon=True,
            ),
            threading.Thread(
                target=self._pump,
                args=(build_id, process.stderr, LogLevel.ERROR, stderr_tail),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        timeout = self.config.command_timeout
        try:
            exit_code = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            terminate_process(process)
            process.wait()
            raise BuildTimeoutError(build_id, timeout) from e
        finally:
            for reader in readers:
                reader.join(timeout=5)
            self.processes.remove(build_id)

        if self._is_cancelled(build_id):
            raise BuildCancelledError(build_id)
        if exit_code != 0:
            self.store.update_build(build_id, exit_code=exit_code)
            raise CommandFailedError(
                build_id, command, exit_code, "\n".join(stderr_tail)
            )

    def _pump(
        self,
        build_id: str,
        stream: IO[str] | None,
        level: LogLevel,
        tail: deque[str] | None,
    ) -> None:
        if stream is None:
            return
        with stream:
            for raw_line in iter(stream.readline, ""):
                line = raw_line.rstrip("\r\n")
                if not line:
                    continue
                if tail is not None:
                    tail.append(line)
                self._log(build_id, line, level)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, build_id: str, status: BuildStatus, **changes: Any) -> Build:
        if self._is_cancelled(build_id):
            raise BuildCancelledError(build_id)
        build = self.store.transition_build(build_id, status, **changes)
        self._log(build_id, f"Build status changed to: {status.value}")
        return build

    def _fail(self, build_id: str, message: str, exit_code: int | None) -> None:
        with self.store.entity_lock(build_id):
            build = self.store.get_build(build_id)
            if build.status.is_terminal:
                return
            finished = utcnow()
            self.store.transition_build(
                build_id,
                BuildStatus.FAILED,
                error_message=message,
                exit_code=exit_code if exit_code is not None else build.exit_code,
                finished_at=finished,
                duration_ms=self._duration_ms(build, finished),
            )
        self._log(build_id, f"Build failed: {message}", LogLevel.ERROR)
        logger.warning(f"Build {build_id} failed: {message.splitlines()[0]}")

    def _log(
        self, build_id: str, message: str, level: LogLevel = LogLevel.INFO
    ) -> None:
        entry = LogEntry(level=level, message=message)
        self.store.append_build_log(build_id, entry)
        for listener in list(self._log_listeners):
            try:
                listener(build_id, entry)
            except Exception as e:
                logger.debug(f"Build log listener failed: {e}")

    def _is_cancelled(self, build_id: str) -> bool:
        with self._lock:
            return build_id in self._cancelled

    def _completion_event(self, build_id: str) -> threading.Event:
        with self._lock:
            event = self._completion.get(build_id)
            if event is None:
                event = threading.Event()
                self._completion[build_id] = event
            return event

    def _signal_completion(self, build_id: str) -> None:
        with self._lock:
            event = self._completion.pop(build_id, None)
        if event is not None:
            event.set()

    def _cleanup_workspace(self, workspace: Path) -> None:
        if not workspace.exists():
            return
        try:
            shutil.rmtree(workspace)
        except OSError as e:
            logger.warning(f"Failed to clean up workspace {workspace}: {e}")

    @staticmethod
    def _duration_ms(build: Build, finished: datetime) -> int | None:
        if build.started_at is None:
            return None
        return int((finished - build.started_at).total_seconds() * 1000)
