"""Local subprocess execution."""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from loguru import logger

log = logger.bind(component="shell")

EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Immutable result of a command execution."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class Runner(Protocol):
    def __call__(
        self, args: Sequence[str], *, timeout: float | None = None,
    ) -> CommandResult: ...


def run(args: Sequence[str], *, timeout: float | None = None) -> CommandResult:
    """Run a command, capturing output. Never raises for command failures.

    A missing executable maps to exit code 127 and a timeout to 124, the
    same codes a shell would report. The child gets an empty stdin: our own
    stdin may be an SSH byte stream that must reach a later process intact.
    """
    cmd_preview = " ".join(args)
    if len(cmd_preview) > 120:
        cmd_preview = cmd_preview[:120] + "..."
    log.debug("exec: {cmd}", cmd=cmd_preview)

    try:
        proc = subprocess.run(
            list(args),
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        return CommandResult(EXIT_NOT_FOUND, "", f"{args[0]}: command not found")
    except subprocess.TimeoutExpired:
        return CommandResult(EXIT_TIMEOUT, "", f"timed out after {timeout}s")

    return CommandResult(proc.returncode, proc.stdout, proc.stderr)
