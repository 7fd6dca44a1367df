"""Data-platform client: dump and restore of an environment's data store."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Protocol

from ..recovery.errors import ExternalCollaboratorError
from .shell import ProcessShell, render_command

logger = logging.getLogger(__name__)


class DataPlatformClient(Protocol):
    def dump(self, environment: str) -> str:
        """Dump the environment's data store and return the artifact locator."""
        ...

    def restore(self, environment: str, locator: str) -> None: ...


class CommandDataPlatform:
    """Data platform driven by operator-configured dump/restore commands.

    The dump command receives ``{environment}`` and ``{output}``; the
    restore command receives ``{environment}`` and ``{input}``.
    """

    def __init__(
        self,
        shell: ProcessShell,
        artifacts_dir: Path,
        dump_command: str | None,
        restore_command: str | None,
    ):
        self.shell = shell
        self.artifacts_dir = Path(artifacts_dir)
        self.dump_command = dump_command
        self.restore_command = restore_command

    def dump(self, environment: str) -> str:
        if not self.dump_command:
            raise ExternalCollaboratorError("No data_dump command configured")

        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        output = self.artifacts_dir / f"{environment}-{uuid.uuid4().hex}-data-store.dump"
        self.shell.check(
            render_command(self.dump_command, environment=environment, output=output)
        )
        if not output.is_file():
            raise ExternalCollaboratorError(f"Dump command produced no artifact at {output}")

        logger.debug("Dumped %s data store to %s", environment, output)
        return str(output)

    def restore(self, environment: str, locator: str) -> None:
        if not self.restore_command:
            raise ExternalCollaboratorError("No data_restore command configured")

        self.shell.check(
            render_command(self.restore_command, environment=environment, input=locator)
        )
