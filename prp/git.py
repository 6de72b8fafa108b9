"""
Thin wrapper for running git in a local working copy.

Commands never raise on failure: a non-zero exit, a timeout or a missing
git executable all come back as a CommandResult with a non-zero returncode
and the diagnostic text in stderr.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 300.0

# Return codes used when git never produced one
TIMEOUT_RETURNCODE = -1
NOT_FOUND_RETURNCODE = -2


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined, for diagnostics."""
        return "".join(part for part in (self.stdout, self.stderr) if part)


class CommandRunner(Protocol):
    def run(self, cwd: str, *args: str) -> CommandResult:
        ...


class GitRunner:
    """Runs git subcommands with a per-invocation timeout."""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT, executable: str = "git"):
        self.timeout = timeout
        self.executable = executable

    def run(self, cwd: str, *args: str) -> CommandResult:
        cmd = [self.executable, *args]
        logger.debug("Running %s in %s", " ".join(cmd), cwd)
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                args=cmd,
                returncode=TIMEOUT_RETURNCODE,
                stderr=f"{' '.join(cmd)} timed out after {self.timeout:g}s",
            )
        except OSError as e:
            return CommandResult(args=cmd, returncode=NOT_FOUND_RETURNCODE, stderr=str(e))

        return CommandResult(
            args=cmd,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
