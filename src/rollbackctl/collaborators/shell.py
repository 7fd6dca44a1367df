"""Process execution for external operations.

Runs operator-configured commands (dumps, checkouts, dependency installs,
health checks) with captured exit status and output and a hard timeout.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path

from ..recovery.errors import ExternalCollaboratorError, Timeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0

# Absolute time.monotonic() deadline that caps every command run in this context.
_deadline: ContextVar[float | None] = ContextVar("rollbackctl_command_deadline", default=None)


@contextmanager
def command_deadline(deadline: float) -> Iterator[None]:
    """Cap the timeout of every command run inside the block at ``deadline``."""
    current = _deadline.get()
    token = _deadline.set(deadline if current is None else min(current, deadline))
    try:
        yield
    finally:
        _deadline.reset(token)


def remaining_budget() -> float | None:
    """Seconds left before the active command deadline, or None without one."""
    deadline = _deadline.get()
    return None if deadline is None else deadline - time.monotonic()


@dataclass
class CommandResult:
    """Outcome of a single command."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    timeout: float | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def summary(self) -> str:
        if self.timed_out:
            return f"'{self.command}' timed out after {self.duration_seconds:.1f}s"
        output = (self.stderr or self.stdout).strip()
        tail = output.splitlines()[-1] if output else "no output"
        return f"'{self.command}' exited with {self.exit_code}: {tail}"


def render_command(template: str, **values: object) -> str:
    """Fill ``{name}`` placeholders in a command template with shell-quoted values."""
    quoted = {key: shlex.quote(str(value)) for key, value in values.items()}
    try:
        return template.format(**quoted)
    except KeyError as e:
        raise ExternalCollaboratorError(
            f"Unknown placeholder {e} in command template: {template}"
        ) from e


def _decode(raw: str | bytes | None) -> str:
    if isinstance(raw, bytes):
        return raw.decode(errors="replace")
    return raw or ""


class ProcessShell:
    """Runs commands through the system shell."""

    def __init__(
        self,
        cwd: Path | str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        env: Mapping[str, str] | None = None,
    ):
        self.cwd = Path(cwd) if cwd else None
        self.timeout = timeout
        self.env = dict(env or {})

    def run(
        self,
        command: str | Sequence[str],
        timeout: float | None = None,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run a command and capture its result. Never raises for exit status.

        The timeout is capped by an enclosing ``command_deadline``.
        """
        limit = timeout if timeout is not None else self.timeout
        use_shell = isinstance(command, str)
        display = command if isinstance(command, str) else " ".join(command)

        remaining = remaining_budget()
        if remaining is not None and remaining < limit:
            limit = max(remaining, 0.0)
            if limit == 0.0:
                logger.warning("Not starting %s: step deadline already passed", display)
                return CommandResult(command=display, exit_code=-1, timed_out=True, timeout=0.0)

        proc_env = os.environ.copy()
        proc_env.update(self.env)
        if env:
            proc_env.update(env)

        logger.debug("Running: %s", display)
        start_time = time.time()
        try:
            result = subprocess.run(
                command,
                shell=use_shell,
                cwd=str(cwd or self.cwd) if (cwd or self.cwd) else None,
                capture_output=True,
                text=True,
                timeout=limit,
                env=proc_env,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                command=display,
                exit_code=-1,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                duration_seconds=time.time() - start_time,
                timed_out=True,
                timeout=limit,
            )
        except OSError as e:
            raise ExternalCollaboratorError(f"Could not start '{display}': {e}") from e

        return CommandResult(
            command=display,
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_seconds=time.time() - start_time,
            timeout=limit,
        )

    def check(
        self,
        command: str | Sequence[str],
        timeout: float | None = None,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run a command, raising on timeout or non-zero exit."""
        result = self.run(command, timeout=timeout, cwd=cwd, env=env)
        if result.timed_out:
            limit = result.timeout if result.timeout is not None else self.timeout
            raise Timeout(result.command, limit)
        if result.exit_code != 0:
            raise ExternalCollaboratorError(result.summary())
        return result
