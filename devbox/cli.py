"""``devbox`` command line.

Thin glue: load config, build the collaborators, call one operation, and
render the outcome with rich.
"""

from __future__ import annotations

import argparse
import os
import shutil
import sys
from collections.abc import Sequence
from pathlib import Path

from loguru import logger
from rich.console import Console
from rich.table import Table
from rich.text import Text

from devbox import lifecycle
from devbox.clock import SystemClock
from devbox.compute import GcpComputeClient
from devbox.config import CONNECT_COMMAND, DevboxConfig, desired_state, load
from devbox.constants import MOUNT_POINT
from devbox.environment import validate_environment
from devbox.errors import DevboxError
from devbox.logging import LogConfig, setup_logging
from devbox.models import VmState
from devbox.reconciler import Reconciler, ReconcileReport
from devbox.ssh_config import SshConfigFile
from devbox.ssh_keys import LocalKeyPair
from devbox.tunnel import IapShell

log = logger.bind(component="cli")

console = Console(stderr=True)

STATE_STYLES = {
    VmState.RUNNING: "green",
    VmState.PROVISIONING: "yellow",
    VmState.STOPPING: "yellow",
    VmState.STOPPED: "bright_black",
    VmState.NOT_FOUND: "red",
}


def _shell(config: DevboxConfig) -> IapShell:
    return IapShell(vm_name=config.vm_name, zone=config.zone, project=config.project)


def _render_report(config: DevboxConfig, report: ReconcileReport) -> None:
    table = Table(title=f"devbox {config.vm_name}", show_header=False)
    table.add_column(style="bold")
    table.add_column()
    table.add_row("disk", "created" if report.created_disk else "exists")
    table.add_row("vm", "created" if report.created_vm else "exists")
    if report.attached_disk:
        table.add_row("disk attach", "attached")
    if report.added_ssh_key:
        table.add_row("ssh key", "added to metadata")
    table.add_row("ssh config", str(report.ssh_change))
    if report.dependencies_ok is not None:
        table.add_row("toolchain", "ok" if report.dependencies_ok else "missing")
    console.print(table)

    for warning in report.warnings:
        console.print(Text(f"warning: {warning}", style="yellow"))
    console.print(f"Connect with: [bold]ssh {config.vm_name}[/bold]  (project files in {MOUNT_POINT}/{config.project_dir})")


def cmd_up(config: DevboxConfig, args: argparse.Namespace) -> int:
    validate_environment(config.project)
    client = GcpComputeClient.create(config.project)
    reconciler = Reconciler(client, _shell(config), LocalKeyPair(), SshConfigFile(), SystemClock())
    connect = shutil.which(CONNECT_COMMAND) or CONNECT_COMMAND
    report = reconciler.reconcile(desired_state(config, connect_command=connect))
    _render_report(config, report)
    return 0


def cmd_status(config: DevboxConfig, args: argparse.Namespace) -> int:
    client = GcpComputeClient.create(config.project)
    state = lifecycle.status(client, config.vm_name, config.zone)
    disk = client.get_disk(config.disk_name, config.zone)

    table = Table(show_header=False)
    table.add_column(style="bold")
    table.add_column()
    table.add_row("project", config.project)
    table.add_row("zone", config.zone)
    table.add_row("vm", Text(f"{config.vm_name} {state}", style=STATE_STYLES[state]))
    table.add_row("disk", f"{disk.name} ({disk.size_gb}GB {disk.type})" if disk else Text("not found", style="red"))
    table.add_row("ssh entry", "present" if SshConfigFile().has_entry(config.vm_name) else "missing")
    console.print(table)
    return 0


def cmd_start(config: DevboxConfig, args: argparse.Namespace) -> int:
    client = GcpComputeClient.create(config.project)
    clock = SystemClock()
    initial = lifecycle.ensure_running(client, config.vm_name, config.zone, clock)
    if initial is VmState.RUNNING:
        console.print(f"{config.vm_name} is already running")
        return 0
    ready = lifecycle.wait_until_ready(_shell(config), clock)
    console.print(f"{config.vm_name} is {'ready' if ready else 'starting (not yet accepting SSH)'}")
    return 0


def cmd_stop(config: DevboxConfig, args: argparse.Namespace) -> int:
    client = GcpComputeClient.create(config.project)
    if lifecycle.stop(client, config.vm_name, config.zone):
        console.print(f"{config.vm_name} stopped")
    else:
        console.print(f"{config.vm_name} was not running")
    return 0


def cmd_ssh(config: DevboxConfig, args: argparse.Namespace) -> int:
    if not args.remote_command:
        os.execvp("ssh", ["ssh", config.vm_name])

    client = GcpComputeClient.create(config.project)
    clock = SystemClock()
    remote = _shell(config)
    if lifecycle.ensure_running(client, config.vm_name, config.zone, clock) is not VmState.RUNNING:
        lifecycle.wait_until_ready(remote, clock)

    result = remote.run(" ".join(args.remote_command), timeout=None)
    sys.stdout.write(result.stdout)
    sys.stderr.write(result.stderr)
    return result.exit_code


def cmd_teardown(config: DevboxConfig, args: argparse.Namespace) -> int:
    client = GcpComputeClient.create(config.project)
    reconciler = Reconciler(client, _shell(config), LocalKeyPair(), SshConfigFile(), SystemClock())
    report = reconciler.teardown(desired_state(config), confirmed=args.yes)
    console.print(
        f"vm deleted: {report.deleted_vm}, disk deleted: {report.deleted_disk}, "
        f"ssh entry removed: {report.removed_ssh_entry}"
    )
    return 0


COMMANDS = {
    "up": cmd_up,
    "status": cmd_status,
    "start": cmd_start,
    "stop": cmd_stop,
    "ssh": cmd_ssh,
    "teardown": cmd_teardown,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devbox", description="Elastic cloud development VM")
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--config", type=Path, default=None, help="Global config file")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("up", help="Create or converge the disk, VM and SSH entry")
    sub.add_parser("status", help="Show VM and disk state")
    sub.add_parser("start", help="Start the VM and wait for SSH")
    sub.add_parser("stop", help="Stop the VM")
    ssh = sub.add_parser("ssh", help="Open a shell or run a command on the VM")
    ssh.add_argument("remote_command", nargs=argparse.REMAINDER)
    teardown = sub.add_parser("teardown", help="Delete the VM, the disk and the SSH entry")
    teardown.add_argument("--yes", action="store_true", help="Confirm deletion of all data")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(LogConfig(level="DEBUG" if args.verbose else "INFO"))

    try:
        config = load(global_path=args.config)
        return COMMANDS[args.command](config, args)
    except DevboxError as e:
        console.print(Text(f"error: {e}", style="bold red"))
        if e.remedy:
            console.print(Text(f"try: {e.remedy}", style="yellow"))
        return 1


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
