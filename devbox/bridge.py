"""On-demand connect bridge.

Installed as the SSH ``ProxyCommand`` for each devbox host. For every
incoming connection it makes sure the VM is running, waits until it accepts
SSH, then replaces itself with an IAP tunnel so the local SSH client talks
to the VM over our stdin/stdout.

Nothing in here may write to stdout before the hand-off.
"""

from __future__ import annotations

import argparse
import sys
from typing import NoReturn

from loguru import logger

from devbox.clock import Clock, SystemClock
from devbox.compute import ComputeClient, GcpComputeClient
from devbox.constants import (
    READY_ATTEMPTS,
    READY_INTERVAL,
    STATE_POLL_ATTEMPTS,
    STATE_POLL_INTERVAL,
)
from devbox.errors import DevboxError
from devbox.lifecycle import ensure_running, wait_until_ready
from devbox.logging import LogConfig, setup_logging
from devbox.models import VmState
from devbox.tunnel import IapShell, RemoteShell

log = logger.bind(component="bridge")


class ConnectBridge:
    """Stateless per-connection VM wake-up. Remote VM state is the only truth."""

    def __init__(
        self,
        client: ComputeClient,
        shell: RemoteShell,
        clock: Clock,
        *,
        state_attempts: int = STATE_POLL_ATTEMPTS,
        state_interval: float = STATE_POLL_INTERVAL,
        ready_attempts: int = READY_ATTEMPTS,
        ready_interval: float = READY_INTERVAL,
    ) -> None:
        self._client = client
        self._shell = shell
        self._clock = clock
        self._state_attempts = state_attempts
        self._state_interval = state_interval
        self._ready_attempts = ready_attempts
        self._ready_interval = ready_interval

    def connect(self, name: str, zone: str) -> bool:
        """Bring the VM up. Returns ``False`` if readiness was not confirmed.

        An already running VM is handed off without probing.

        Raises:
            PreconditionError: The VM does not exist.
        """
        initial = ensure_running(
            self._client, name, zone, self._clock,
            attempts=self._state_attempts, interval=self._state_interval,
        )
        if initial is VmState.RUNNING:
            return True

        return wait_until_ready(
            self._shell, self._clock,
            attempts=self._ready_attempts, interval=self._ready_interval,
        )

    def run(self, name: str, zone: str) -> NoReturn:
        if not self.connect(name, zone):
            log.warning("Handing off to {name} anyway; ssh will retry or time out", name=name)
        self._shell.handoff()


def cli() -> None:
    parser = argparse.ArgumentParser(
        description="SSH ProxyCommand that starts the devbox VM on demand",
    )
    parser.add_argument("--project", type=str, required=True)
    parser.add_argument("--zone", type=str, required=True)
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("host", help="VM name (%%h)")
    parser.add_argument("port", nargs="?", default=None, help="Ignored; IAP always targets port 22 (%%p)")
    args = parser.parse_args()

    setup_logging(LogConfig(level="DEBUG" if args.verbose else "INFO"))

    shell = IapShell(vm_name=args.host, zone=args.zone, project=args.project)
    try:
        client = GcpComputeClient.create(args.project)
        ConnectBridge(client, shell, SystemClock()).run(args.host, args.zone)
    except DevboxError as e:
        log.error("{err}", err=e)
        if e.remedy:
            log.error("Remedy: {remedy}", remedy=e.remedy)
        sys.exit(1)


if __name__ == "__main__":
    cli()
