"""VM power-state helpers shared by the CLI, the reconciler and the bridge."""

from __future__ import annotations

from loguru import logger

from devbox.clock import Clock, poll
from devbox.compute import ComputeClient, vm_state
from devbox.constants import (
    READY_ATTEMPTS,
    READY_INTERVAL,
    STATE_POLL_ATTEMPTS,
    STATE_POLL_INTERVAL,
)
from devbox.errors import PreconditionError
from devbox.models import VmState
from devbox.tunnel import RemoteShell

log = logger.bind(component="lifecycle")


def _missing(name: str, zone: str) -> PreconditionError:
    return PreconditionError(
        f"VM {name} not found in {zone}",
        remedy="Run `devbox up` to create it",
    )


def status(client: ComputeClient, name: str, zone: str) -> VmState:
    return vm_state(client, name, zone)


def wait_for_state(
    client: ComputeClient,
    name: str,
    zone: str,
    target: VmState,
    clock: Clock,
    *,
    attempts: int = STATE_POLL_ATTEMPTS,
    interval: float = STATE_POLL_INTERVAL,
) -> bool:
    return poll(
        lambda: vm_state(client, name, zone) is target,
        attempts=attempts,
        interval=interval,
        clock=clock,
        description=f"{name} to be {target}",
    )


def ensure_running(
    client: ComputeClient,
    name: str,
    zone: str,
    clock: Clock,
    *,
    attempts: int = STATE_POLL_ATTEMPTS,
    interval: float = STATE_POLL_INTERVAL,
) -> VmState:
    """Start the VM unless it is already running.

    Returns the state observed *before* any action. A VM that is still
    stopping is allowed to reach STOPPED first, since a start issued while
    stopping is rejected by the provider.

    Raises:
        PreconditionError: The VM does not exist.
    """
    initial = vm_state(client, name, zone)
    match initial:
        case VmState.RUNNING:
            return initial
        case VmState.NOT_FOUND:
            raise _missing(name, zone)
        case VmState.PROVISIONING:
            log.info("VM {name} is already starting", name=name)
        case VmState.STOPPING:
            log.info("VM {name} is stopping, waiting before restart", name=name)
            wait_for_state(client, name, zone, VmState.STOPPED, clock, attempts=attempts, interval=interval)
            log.info("Starting VM {name}", name=name)
            client.start_instance(name, zone)
        case VmState.STOPPED:
            log.info("Starting VM {name}", name=name)
            client.start_instance(name, zone)

    if not wait_for_state(client, name, zone, VmState.RUNNING, clock, attempts=attempts, interval=interval):
        log.warning("VM {name} not RUNNING yet after {n} checks", name=name, n=attempts)
    return initial


def wait_until_ready(
    shell: RemoteShell,
    clock: Clock,
    *,
    attempts: int = READY_ATTEMPTS,
    interval: float = READY_INTERVAL,
) -> bool:
    """Probe SSH until a trivial command succeeds. Exhaustion is not an error."""
    ready = poll(
        shell.probe,
        attempts=attempts,
        interval=interval,
        clock=clock,
        description="SSH readiness",
    )
    if not ready:
        log.warning(
            "VM not yet ready after {n} attempts; it may just need more time",
            n=attempts,
        )
    return ready


def stop(client: ComputeClient, name: str, zone: str) -> bool:
    """Stop the VM. Returns ``False`` if it was already stopped or stopping."""
    state = vm_state(client, name, zone)
    if state is VmState.NOT_FOUND:
        raise _missing(name, zone)
    if state in (VmState.STOPPED, VmState.STOPPING):
        log.info("VM {name} is already {state}", name=name, state=state)
        return False
    log.info("Stopping VM {name}", name=name)
    client.stop_instance(name, zone)
    return True
