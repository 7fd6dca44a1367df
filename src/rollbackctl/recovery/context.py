"""Context shared by validation checks and execution steps."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..collaborators.shell import CommandResult, render_command
from .models import RollbackExecution, RollbackPoint

if TYPE_CHECKING:
    from ..collaborators.shell import ProcessShell
    from .snapshots import SnapshotManager

logger = logging.getLogger(__name__)


@dataclass
class EnvironmentHooks:
    """Operator-configured commands that act on a live environment.

    Templates may use ``{environment}``, ``{version}``, ``{revision}`` and
    ``{short_revision}``. A hook without a command is a no-op.
    """

    shell: ProcessShell
    commands: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None

    def has(self, name: str) -> bool:
        return bool(self.commands.get(name))

    def run(self, name: str, **values: object) -> CommandResult | None:
        """Run a hook, raising on failure; returns None when it is not configured."""
        template = self.commands.get(name)
        if not template:
            logger.debug("No %s command configured, skipping", name)
            return None
        return self.shell.check(render_command(template, **values), timeout=self.timeout)


@dataclass
class RollbackContext:
    """Everything a check or step needs to act on one environment."""

    environment: str
    target: RollbackPoint
    snapshots: SnapshotManager
    hooks: EnvironmentHooks
    execution: RollbackExecution | None = None

    def template_values(self) -> dict[str, object]:
        revision = self.target.source_revision or ""
        return {
            "environment": self.environment,
            "version": self.target.release_version or "",
            "revision": revision,
            "short_revision": revision[:8],
        }

    def run_hook(self, name: str) -> CommandResult | None:
        return self.hooks.run(name, **self.template_values())
