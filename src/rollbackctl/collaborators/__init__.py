"""External collaborators used by the orchestrator.

- Process shell for external commands
- Version-control client (git)
- Data-platform client for data-store dump/restore
"""

from .data_platform import CommandDataPlatform, DataPlatformClient
from .shell import (
    CommandResult,
    ProcessShell,
    command_deadline,
    remaining_budget,
    render_command,
)
from .vcs import GitClient, VersionControlClient

__all__ = [
    "CommandDataPlatform",
    "DataPlatformClient",
    "CommandResult",
    "ProcessShell",
    "render_command",
    "command_deadline",
    "remaining_budget",
    "GitClient",
    "VersionControlClient",
]
