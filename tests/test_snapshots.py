"""Tests for snapshot capture, restore and validation."""

from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest
from conftest import REVISION_V1, REVISION_V2

from rollbackctl.recovery.errors import CaptureFailed, RestoreFailed
from rollbackctl.recovery.models import SnapshotKind
from rollbackctl.recovery.snapshots import file_checksum, read_release_version


class TestReleaseVersion:
    """Tests for reading release versions."""

    def test_pyproject(self, tmp_path: Path):
        path = tmp_path / "pyproject.toml"
        path.write_text('[project]\nname = "x"\nversion = "2.1.0"\n')
        assert read_release_version(path) == "2.1.0"

    def test_poetry(self, tmp_path: Path):
        path = tmp_path / "pyproject.toml"
        path.write_text('[tool.poetry]\nname = "x"\nversion = "0.9.1"\n')
        assert read_release_version(path) == "0.9.1"

    def test_package_json(self, tmp_path: Path):
        path = tmp_path / "package.json"
        path.write_text(json.dumps({"name": "x", "version": "3.0.0"}))
        assert read_release_version(path) == "3.0.0"

    def test_plain_file(self, tmp_path: Path):
        path = tmp_path / "VERSION"
        path.write_text("4.5.6\n")
        assert read_release_version(path) == "4.5.6"

    def test_missing_version(self, tmp_path: Path):
        path = tmp_path / "package.json"
        path.write_text("{}")
        with pytest.raises(ValueError):
            read_release_version(path)


class TestCapture:
    """Tests for capturing snapshots."""

    def test_capture_data_store(self, snapshots):
        snapshot = snapshots.capture(SnapshotKind.DATA_STORE, "staging")
        path = Path(snapshot.locator)
        assert snapshot.kind == SnapshotKind.DATA_STORE
        assert path.read_text() == "orders-v1"
        assert snapshot.size == path.stat().st_size
        assert snapshot.checksum == file_checksum(path)

    def test_capture_configuration(self, snapshots):
        snapshot = snapshots.capture(SnapshotKind.CONFIGURATION, "staging")
        assert snapshot.files == [".env.staging", "pyproject.toml"]
        contents = snapshots.read_configuration(snapshot)
        assert contents[".env.staging"].content == b"DEBUG=false\n"
        assert b'version = "1.0.0"' in contents["pyproject.toml"].content

    def test_capture_application_code(self, snapshots):
        snapshot = snapshots.capture(SnapshotKind.APPLICATION_CODE, "staging")
        assert snapshot.revision == REVISION_V1
        assert snapshot.branch == "main"
        assert snapshot.release_version == "1.0.0"
        payload = json.loads(Path(snapshot.locator).read_text())
        assert payload["revision"] == REVISION_V1

    def test_every_capture_is_fresh(self, snapshots):
        """Capturing identical state twice yields two distinct artifacts."""
        first = snapshots.capture(SnapshotKind.CONFIGURATION, "staging")
        second = snapshots.capture(SnapshotKind.CONFIGURATION, "staging")
        assert first.locator != second.locator
        assert first.checksum == second.checksum

    def test_missing_config_file(self, snapshots, project_root):
        (project_root / ".env.staging").unlink()
        with pytest.raises(CaptureFailed, match=r"\.env\.staging"):
            snapshots.capture(SnapshotKind.CONFIGURATION, "staging")

    def test_collaborator_error_wrapped(self, snapshots, data_platform):
        data_platform.fail_dump = True
        with pytest.raises(CaptureFailed) as exc_info:
            snapshots.capture(SnapshotKind.DATA_STORE, "staging")
        assert "disk full" in str(exc_info.value)
        assert exc_info.value.__cause__ is not None

    def test_no_version_file(self, snapshots):
        snapshots.version_file = None
        with pytest.raises(CaptureFailed, match="version"):
            snapshots.capture(SnapshotKind.APPLICATION_CODE, "staging")


class TestCaptureAll:
    """Tests for capturing all kinds together."""

    def test_all_kinds(self, snapshots):
        captured = snapshots.capture_all("staging")
        assert set(captured) == set(SnapshotKind)
        for kind, snapshot in captured.items():
            assert snapshot.kind == kind
            assert Path(snapshot.locator).is_file()

    def test_all_or_nothing(self, snapshots, data_platform, artifacts_dir):
        """A failing kind discards the artifacts of the kinds that succeeded."""
        data_platform.fail_dump = True
        with pytest.raises(CaptureFailed):
            snapshots.capture_all("staging")
        assert list(artifacts_dir.glob("*")) == []


class TestRestore:
    """Tests for restoring snapshots."""

    def test_restore_configuration(self, snapshots, project_root):
        snapshot = snapshots.capture(SnapshotKind.CONFIGURATION, "staging")
        (project_root / ".env.staging").write_text("DEBUG=true\n")

        snapshots.restore(snapshot, "staging")
        assert (project_root / ".env.staging").read_text() == "DEBUG=false\n"

    def test_restore_recreates_deleted_file(self, snapshots, project_root):
        snapshot = snapshots.capture(SnapshotKind.CONFIGURATION, "staging")
        (project_root / ".env.staging").unlink()
        snapshots.restore(snapshot, "staging")
        assert (project_root / ".env.staging").read_text() == "DEBUG=false\n"

    def test_restore_is_byte_exact(self, snapshots, project_root):
        env_file = project_root / ".env.staging"
        env_file.write_bytes(b"A=1\r\nB=caf\xc3\xa9\r\n")
        env_file.chmod(0o644)
        snapshot = snapshots.capture(SnapshotKind.CONFIGURATION, "staging")
        env_file.write_bytes(b"A=2\n")
        env_file.chmod(0o600)

        snapshots.restore(snapshot, "staging")

        assert env_file.read_bytes() == b"A=1\r\nB=caf\xc3\xa9\r\n"
        assert stat.S_IMODE(env_file.stat().st_mode) == 0o644

    def test_restore_keeps_restrictive_mode(self, snapshots, project_root):
        env_file = project_root / ".env.staging"
        env_file.chmod(0o600)
        snapshot = snapshots.capture(SnapshotKind.CONFIGURATION, "staging")
        env_file.unlink()

        snapshots.restore(snapshot, "staging")
        assert stat.S_IMODE(env_file.stat().st_mode) == 0o600

    def test_restore_data_store(self, snapshots, data_platform):
        snapshot = snapshots.capture(SnapshotKind.DATA_STORE, "staging")
        data_platform.data["staging"] = "orders-v2"
        snapshots.restore(snapshot, "staging")
        assert data_platform.data["staging"] == "orders-v1"

    def test_restore_application_code(self, snapshots, vcs, shell):
        snapshot = snapshots.capture(SnapshotKind.APPLICATION_CODE, "staging")
        vcs.revision = REVISION_V2
        snapshots.install_command = "pip install -e ."

        snapshots.restore(snapshot, "staging")
        assert vcs.revision == REVISION_V1
        shell.check.assert_called_once_with("pip install -e .", cwd=snapshots.project_root)

    def test_restore_is_idempotent(self, snapshots, deployment):
        """Restoring the same snapshots twice leaves the same state as once."""
        captured = snapshots.capture_all("staging")
        deployment.deploy("staging", "1.1.0", REVISION_V2, "DEBUG=true\n", "orders-v2")

        for snapshot in captured.values():
            snapshots.restore(snapshot, "staging")
        once = deployment.state("staging")
        for snapshot in captured.values():
            snapshots.restore(snapshot, "staging")
        assert deployment.state("staging") == once
        assert once["revision"] == REVISION_V1
        assert once["data"] == "orders-v1"

    def test_missing_data_artifact(self, snapshots):
        snapshot = snapshots.capture(SnapshotKind.DATA_STORE, "staging")
        Path(snapshot.locator).unlink()
        with pytest.raises(RestoreFailed, match="not found"):
            snapshots.restore(snapshot, "staging")

    def test_checkout_failure_wrapped(self, snapshots, vcs):
        snapshot = snapshots.capture(SnapshotKind.APPLICATION_CODE, "staging")
        vcs.fail_checkout = True
        with pytest.raises(RestoreFailed) as exc_info:
            snapshots.restore(snapshot, "staging")
        assert "checkout" in str(exc_info.value)


class TestValidate:
    """Tests for snapshot validation."""

    def test_valid(self, snapshots):
        for snapshot in snapshots.capture_all("staging").values():
            assert snapshots.validate(snapshot)

    def test_missing_artifact(self, snapshots):
        snapshot = snapshots.capture(SnapshotKind.DATA_STORE, "staging")
        snapshots.discard(snapshot)
        assert not snapshots.validate(snapshot)

    def test_corrupt_artifact(self, snapshots):
        snapshot = snapshots.capture(SnapshotKind.CONFIGURATION, "staging")
        Path(snapshot.locator).write_text('{"tampered": "yes"}')
        assert not snapshots.validate(snapshot)

    def test_discard_missing_is_ignored(self, snapshots):
        snapshot = snapshots.capture(SnapshotKind.DATA_STORE, "staging")
        snapshots.discard(snapshot)
        snapshots.discard(snapshot)
