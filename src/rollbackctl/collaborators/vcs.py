"""Version-control client."""

from __future__ import annotations

from typing import Protocol

from ..recovery.errors import ExternalCollaboratorError
from .shell import ProcessShell


class VersionControlClient(Protocol):
    def current_revision(self) -> str: ...

    def current_branch(self) -> str | None: ...

    def checkout(self, revision: str) -> None: ...


class GitClient:
    """Git working tree accessed through the process shell."""

    def __init__(self, shell: ProcessShell):
        self.shell = shell

    def current_revision(self) -> str:
        result = self.shell.check(["git", "rev-parse", "HEAD"])
        revision = result.stdout.strip()
        if not revision:
            raise ExternalCollaboratorError("git rev-parse HEAD returned no revision")
        return revision

    def current_branch(self) -> str | None:
        result = self.shell.run(["git", "rev-parse", "--abbrev-ref", "HEAD"])
        if not result.success:
            return None
        branch = result.stdout.strip()
        return None if branch in ("", "HEAD") else branch

    def checkout(self, revision: str) -> None:
        self.shell.check(["git", "checkout", "--force", revision])
