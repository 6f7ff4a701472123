"""Identity-aware proxy transport to the VM.

devbox never implements its own tunnel: remote commands and the SSH byte
stream both go through ``gcloud`` IAP tunneling.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import NoReturn, Protocol

from loguru import logger

from devbox import shell
from devbox.shell import CommandResult, Runner

log = logger.bind(component="tunnel")

READY_COMMAND = "echo 'VM is ready'"
SSH_PORT = 22


class RemoteShell(Protocol):
    def run(self, command: str, timeout: float = 60) -> CommandResult: ...
    def probe(self) -> bool: ...
    def handoff(self) -> NoReturn: ...


def _execvp(file: str, args: list[str]) -> NoReturn:
    os.execvp(file, args)


@dataclass(frozen=True, slots=True)
class IapShell:
    """Commands and stream hand-off to one VM over an IAP tunnel."""

    vm_name: str
    zone: str
    project: str
    runner: Runner = shell.run
    exec_fn: Callable[[str, list[str]], NoReturn] = _execvp

    def _scope(self) -> list[str]:
        return [f"--zone={self.zone}", f"--project={self.project}"]

    def ssh_args(self, command: str | None = None) -> list[str]:
        args = ["gcloud", "compute", "ssh", self.vm_name, *self._scope(), "--tunnel-through-iap"]
        if command is not None:
            args += [f"--command={command}", "--ssh-flag=-n"]
        args.append("--quiet")
        return args

    def run(self, command: str, timeout: float = 60) -> CommandResult:
        """Run ``command`` on the VM. Output is captured, never echoed."""
        return self.runner(self.ssh_args(command), timeout=timeout)

    def probe(self) -> bool:
        """Return ``True`` if the VM accepts an SSH command right now."""
        return self.run(READY_COMMAND, timeout=60).success

    def tunnel_args(self) -> list[str]:
        return [
            "gcloud", "compute", "start-iap-tunnel", self.vm_name, str(SSH_PORT),
            "--listen-on-stdin", *self._scope(), "--verbosity=warning",
        ]

    def handoff(self) -> NoReturn:
        """Replace this process with a stdin/stdout IAP tunnel to port 22.

        The local SSH client then negotiates its own protocol over our
        stdin/stdout, so nothing may be written to stdout before this call.
        """
        args = self.tunnel_args()
        log.debug("Handing off to IAP tunnel for {vm}", vm=self.vm_name)
        self.exec_fn(args[0], args)
