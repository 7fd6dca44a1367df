"""Shared fixtures: a small deployed project with fake collaborators."""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from rollbackctl.observability import MemoryEventSink
from rollbackctl.recovery import (
    EnvironmentHooks,
    RecoveryController,
    RollbackPointStore,
    SnapshotManager,
)
from rollbackctl.recovery.errors import ExternalCollaboratorError

REVISION_V1 = "1111111111111111111111111111111111111111"
REVISION_V2 = "2222222222222222222222222222222222222222"

PYPROJECT = """[project]
name = "shop"
version = "{version}"
"""


class FakeDataPlatform:
    """In-memory data store per environment, dumped to real artifact files."""

    def __init__(self, artifacts_dir: Path):
        self.artifacts_dir = artifacts_dir
        self.data: dict[str, str] = {}
        self.fail_dump = False
        self.fail_restore_for: set[str] = set()
        self.slow_restore_for: dict[str, float] = {}
        self.restores: list[tuple[str, str]] = []

    def dump(self, environment: str) -> str:
        if self.fail_dump:
            raise ExternalCollaboratorError("dump command exited with 2: disk full")
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        path = self.artifacts_dir / f"{environment}-{uuid.uuid4().hex}-data-store.dump"
        path.write_text(self.data.get(environment, ""))
        return str(path)

    def restore(self, environment: str, locator: str) -> None:
        self.restores.append((environment, locator))
        if locator in self.fail_restore_for:
            raise ExternalCollaboratorError("restore command exited with 1: connection refused")
        if locator in self.slow_restore_for:
            time.sleep(self.slow_restore_for[locator])
        self.data[environment] = Path(locator).read_text()


class FakeVcs:
    def __init__(self, revision: str = REVISION_V1, branch: str | None = "main"):
        self.revision = revision
        self.branch = branch
        self.checkouts: list[str] = []
        self.fail_checkout = False

    def current_revision(self) -> str:
        return self.revision

    def current_branch(self) -> str | None:
        return self.branch

    def checkout(self, revision: str) -> None:
        self.checkouts.append(revision)
        if self.fail_checkout:
            raise ExternalCollaboratorError(f"git checkout {revision} failed")
        self.revision = revision


class Deployment:
    """Mutable state of the fake deployed environment."""

    def __init__(self, root: Path, data_platform: FakeDataPlatform, vcs: FakeVcs):
        self.root = root
        self.data_platform = data_platform
        self.vcs = vcs

    def deploy(self, environment: str, version: str, revision: str, env_file: str, data: str):
        (self.root / "pyproject.toml").write_text(PYPROJECT.format(version=version))
        (self.root / f".env.{environment}").write_text(env_file)
        self.data_platform.data[environment] = data
        self.vcs.revision = revision

    def state(self, environment: str) -> dict[str, str]:
        return {
            "pyproject": (self.root / "pyproject.toml").read_text(),
            "env_file": (self.root / f".env.{environment}").read_text(),
            "data": self.data_platform.data.get(environment, ""),
            "revision": self.vcs.revision,
        }


@pytest.fixture(autouse=True)
def _restore_package_logger():
    """Undo handlers a test attached to the package logger via real setup_logging."""
    package_logger = logging.getLogger("rollbackctl")
    handlers, level = list(package_logger.handlers), package_logger.level
    yield
    package_logger.handlers[:] = handlers
    package_logger.setLevel(level)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "app"
    root.mkdir()
    return root


@pytest.fixture
def artifacts_dir(tmp_path: Path) -> Path:
    return tmp_path / "artifacts"


@pytest.fixture
def data_platform(artifacts_dir: Path) -> FakeDataPlatform:
    return FakeDataPlatform(artifacts_dir)


@pytest.fixture
def vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture
def deployment(project_root: Path, data_platform: FakeDataPlatform, vcs: FakeVcs) -> Deployment:
    deployment = Deployment(project_root, data_platform, vcs)
    for environment in ("staging", "production"):
        deployment.deploy(environment, "1.0.0", REVISION_V1, "DEBUG=false\n", "orders-v1")
    return deployment


@pytest.fixture
def shell() -> MagicMock:
    return MagicMock()


@pytest.fixture
def snapshots(
    deployment: Deployment,
    artifacts_dir: Path,
    project_root: Path,
    data_platform: FakeDataPlatform,
    vcs: FakeVcs,
    shell: MagicMock,
) -> SnapshotManager:
    return SnapshotManager(
        artifacts_dir=artifacts_dir,
        project_root=project_root,
        config_files=[".env.{environment}", "pyproject.toml"],
        version_file="pyproject.toml",
        data_platform=data_platform,
        vcs=vcs,
        shell=shell,
    )


@pytest.fixture
def store(tmp_path: Path):
    store = RollbackPointStore(tmp_path / "state" / "rollbacks.db")
    yield store
    store.close()


@pytest.fixture
def hooks(shell: MagicMock) -> EnvironmentHooks:
    return EnvironmentHooks(shell=shell)


@pytest.fixture
def events() -> MemoryEventSink:
    return MemoryEventSink()


@pytest.fixture
def controller(
    store: RollbackPointStore,
    snapshots: SnapshotManager,
    hooks: EnvironmentHooks,
    events: MemoryEventSink,
) -> RecoveryController:
    return RecoveryController(store, snapshots, hooks, events=events)
