"""Snapshot capture and restore.

Three snapshot kinds are captured as independent artifact files:
- data-store: dumped by the data platform
- configuration: verbatim bytes and permission bits of a fixed list of config files
- application-code: the source revision and release version (no code bytes)

Every capture produces a fresh artifact, even when the content is
logically identical to an earlier one.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import stat
import tempfile
import tomllib
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .errors import CaptureFailed, RestoreFailed, describe_error
from .models import ALL_KINDS, Snapshot, SnapshotKind, utcnow

if TYPE_CHECKING:
    from ..collaborators.data_platform import DataPlatformClient
    from ..collaborators.shell import ProcessShell
    from ..collaborators.vcs import VersionControlClient

logger = logging.getLogger(__name__)

# One worker per snapshot kind.
CAPTURE_CONCURRENCY = len(ALL_KINDS)


def file_checksum(path: Path) -> str:
    """Compute the sha256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def read_release_version(path: Path) -> str:
    """Read a release version from package.json, pyproject.toml or a plain file.

    Raises:
        ValueError: If the file holds no version.
        OSError: If the file cannot be read.
    """
    if path.suffix == ".json":
        version = json.loads(path.read_text()).get("version")
    elif path.suffix == ".toml":
        data = tomllib.loads(path.read_text())
        version = data.get("project", {}).get("version") or (
            data.get("tool", {}).get("poetry", {}).get("version")
        )
    else:
        version = path.read_text().strip()

    if not version:
        raise ValueError(f"No version found in {path}")
    return str(version)


def _write_atomic(path: Path, data: bytes, mode: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


@dataclass(frozen=True)
class CapturedFile:
    """One configuration file as captured: raw bytes and permission bits."""

    content: bytes
    mode: int

    @classmethod
    def read(cls, path: Path) -> CapturedFile:
        return cls(content=path.read_bytes(), mode=stat.S_IMODE(path.stat().st_mode))

    def to_dict(self) -> dict[str, Any]:
        return {"content": base64.b64encode(self.content).decode("ascii"), "mode": self.mode}

    @classmethod
    def from_dict(cls, data: Any) -> CapturedFile:
        if not isinstance(data, dict) or "content" not in data:
            raise ValueError("Malformed configuration entry")
        return cls(
            content=base64.b64decode(data["content"], validate=True),
            mode=int(data.get("mode", 0o644)),
        )


class SnapshotManager:
    """Captures, restores and validates snapshots.

    Args:
        artifacts_dir: Where configuration and application-code artifacts are written.
        project_root: Base directory for configuration file paths.
        config_files: Configuration paths to capture, may contain ``{environment}``.
        version_file: File the release version is read from.
        data_platform: Client for data-store dump/restore.
        vcs: Version-control client.
        shell: Shell used for dependency re-materialization.
        install_command: Command run after a code checkout, if any.
    """

    def __init__(
        self,
        artifacts_dir: Path,
        project_root: Path,
        config_files: list[str],
        version_file: str | None,
        data_platform: DataPlatformClient,
        vcs: VersionControlClient,
        shell: ProcessShell,
        install_command: str | None = None,
    ):
        self.artifacts_dir = Path(artifacts_dir)
        self.project_root = Path(project_root)
        self.config_files = list(config_files)
        self.version_file = version_file
        self.data_platform = data_platform
        self.vcs = vcs
        self.shell = shell
        self.install_command = install_command

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def capture(self, kind: SnapshotKind, environment: str) -> Snapshot:
        """Capture a fresh snapshot of one kind.

        Raises:
            CaptureFailed: If the artifact cannot be produced.
        """
        logger.info("Capturing %s snapshot for %s", kind.value, environment)
        try:
            if kind == SnapshotKind.DATA_STORE:
                return self._capture_data_store(environment)
            if kind == SnapshotKind.CONFIGURATION:
                return self._capture_configuration(environment)
            return self._capture_application_code(environment)
        except CaptureFailed:
            raise
        except Exception as e:
            raise CaptureFailed(
                f"{kind.value} snapshot failed for {environment}: {describe_error(e)}"
            ) from e

    def capture_all(self, environment: str) -> dict[SnapshotKind, Snapshot]:
        """Capture all three kinds concurrently.

        Either every kind is captured or none is: artifacts from kinds that
        succeeded are discarded when another kind fails.
        """
        with ThreadPoolExecutor(
            max_workers=CAPTURE_CONCURRENCY, thread_name_prefix="capture"
        ) as pool:
            futures = {kind: pool.submit(self.capture, kind, environment) for kind in ALL_KINDS}

        captured: dict[SnapshotKind, Snapshot] = {}
        first_error: BaseException | None = None
        for kind in ALL_KINDS:
            error = futures[kind].exception()
            if error is None:
                captured[kind] = futures[kind].result()
            elif first_error is None:
                first_error = error

        if first_error is not None:
            for snapshot in captured.values():
                self.discard(snapshot)
            if isinstance(first_error, CaptureFailed):
                raise first_error
            raise CaptureFailed(describe_error(first_error)) from first_error

        return captured

    def _new_artifact_path(self, environment: str, kind: SnapshotKind, suffix: str) -> Path:
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        return self.artifacts_dir / f"{environment}-{uuid.uuid4().hex}-{kind.value}{suffix}"

    def _capture_data_store(self, environment: str) -> Snapshot:
        locator = self.data_platform.dump(environment)
        path = Path(locator)
        return Snapshot(
            kind=SnapshotKind.DATA_STORE,
            locator=locator,
            size=path.stat().st_size,
            checksum=file_checksum(path),
        )

    def resolve_config_files(self, environment: str) -> list[str]:
        return [name.format(environment=environment) for name in self.config_files]

    def _capture_configuration(self, environment: str) -> Snapshot:
        contents: dict[str, dict[str, Any]] = {}
        for name in self.resolve_config_files(environment):
            try:
                contents[name] = CapturedFile.read(self.project_root / name).to_dict()
            except OSError as e:
                raise CaptureFailed(f"Configuration file unreadable: {name} ({e})") from e

        return self._write_json_artifact(
            environment,
            SnapshotKind.CONFIGURATION,
            contents,
            files=list(contents),
        )

    def _capture_application_code(self, environment: str) -> Snapshot:
        revision = self.vcs.current_revision()
        branch = self.vcs.current_branch()
        version = self.current_release_version()

        payload = {"revision": revision, "branch": branch, "release_version": version}
        return self._write_json_artifact(
            environment,
            SnapshotKind.APPLICATION_CODE,
            payload,
            revision=revision,
            branch=branch,
            release_version=version,
        )

    def current_release_version(self) -> str:
        if not self.version_file:
            raise CaptureFailed("No version_file configured; release version unknown")
        try:
            return read_release_version(self.project_root / self.version_file)
        except (OSError, ValueError, tomllib.TOMLDecodeError) as e:
            raise CaptureFailed(f"Cannot determine release version: {e}") from e

    def _write_json_artifact(
        self,
        environment: str,
        kind: SnapshotKind,
        payload: dict[str, Any],
        **fields: Any,
    ) -> Snapshot:
        path = self._new_artifact_path(environment, kind, ".json")
        try:
            _write_atomic(path, json.dumps(payload, indent=2).encode("utf-8"))
            return Snapshot(
                kind=kind,
                locator=str(path),
                created_at=utcnow(),
                size=path.stat().st_size,
                checksum=file_checksum(path),
                **fields,
            )
        except BaseException:
            path.unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, snapshot: Snapshot, environment: str) -> None:
        """Reverse a capture. A partial restore is reported as a failure.

        Raises:
            RestoreFailed: With the underlying cause chained.
        """
        logger.info("Restoring %s snapshot for %s", snapshot.kind.value, environment)
        try:
            if snapshot.kind == SnapshotKind.DATA_STORE:
                self._restore_data_store(snapshot, environment)
            elif snapshot.kind == SnapshotKind.CONFIGURATION:
                self._restore_configuration(snapshot)
            else:
                self._restore_application_code(snapshot)
        except RestoreFailed:
            raise
        except Exception as e:
            raise RestoreFailed(
                f"{snapshot.kind.value} restore failed for {environment}: {describe_error(e)}"
            ) from e

    def _restore_data_store(self, snapshot: Snapshot, environment: str) -> None:
        if not Path(snapshot.locator).is_file():
            raise RestoreFailed(f"Data-store snapshot not found: {snapshot.locator}")
        self.data_platform.restore(environment, snapshot.locator)

    def read_configuration(self, snapshot: Snapshot) -> dict[str, CapturedFile]:
        """Load the captured files of a configuration snapshot.

        Raises:
            ValueError: If the artifact is not a configuration capture.
        """
        data = json.loads(Path(snapshot.locator).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Malformed configuration artifact: {snapshot.locator}")
        return {str(name): CapturedFile.from_dict(entry) for name, entry in data.items()}

    def _restore_configuration(self, snapshot: Snapshot) -> None:
        contents = self.read_configuration(snapshot)
        missing = [name for name in snapshot.files if name not in contents]
        if missing:
            raise RestoreFailed(f"Configuration artifact lacks {', '.join(missing)}")

        for name in snapshot.files:
            captured = contents[name]
            _write_atomic(self.project_root / name, captured.content, captured.mode)
            logger.debug("Restored %s (mode %o)", name, captured.mode)

    def _restore_application_code(self, snapshot: Snapshot) -> None:
        data = json.loads(Path(snapshot.locator).read_text(encoding="utf-8"))
        revision = data.get("revision") or snapshot.revision
        if not revision:
            raise RestoreFailed(f"No revision recorded in {snapshot.locator}")

        self.vcs.checkout(revision)
        if self.install_command:
            self.shell.check(self.install_command, cwd=self.project_root)

    # ------------------------------------------------------------------
    # Validation & cleanup
    # ------------------------------------------------------------------

    def validate(self, snapshot: Snapshot) -> bool:
        """Check that the artifact still exists, is readable and unchanged."""
        path = Path(snapshot.locator)
        try:
            if not path.is_file():
                logger.warning("Snapshot artifact missing: %s", path)
                return False
            if snapshot.size and path.stat().st_size != snapshot.size:
                logger.warning("Snapshot artifact size changed: %s", path)
                return False
            if snapshot.checksum and file_checksum(path) != snapshot.checksum:
                logger.warning("Snapshot artifact checksum mismatch: %s", path)
                return False
            if snapshot.kind == SnapshotKind.CONFIGURATION:
                contents = self.read_configuration(snapshot)
                if any(name not in contents for name in snapshot.files):
                    logger.warning("Configuration artifact incomplete: %s", path)
                    return False
        except (OSError, ValueError) as e:
            logger.warning("Snapshot artifact unreadable: %s (%s)", path, e)
            return False
        return True

    def discard(self, snapshot: Snapshot) -> None:
        """Delete a snapshot's artifact. Missing artifacts are ignored."""
        try:
            Path(snapshot.locator).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not delete artifact %s: %s", snapshot.locator, e)
