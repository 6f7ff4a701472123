"""Desired-state reconciliation for the devbox disk, VM and SSH entry.

Every step starts with a describe call and only mutates what is missing, so
running :meth:`Reconciler.reconcile` twice issues no mutating calls the
second time, and an interrupted run is resumed by simply running again.

Order is strict: disk, VM, SSH client config, dependency verification. The
VM references the disk by name and the SSH entry references the VM.
"""

from __future__ import annotations

import shlex
from collections.abc import Iterable
from dataclasses import dataclass, field

from loguru import logger

from devbox.bootstrap import generate
from devbox.clock import Clock
from devbox.compute import ComputeClient
from devbox.constants import (
    IDLE_SERVICE,
    MOUNT_POINT,
    READY_ATTEMPTS,
    READY_INTERVAL,
    STARTUP_LOG,
)
from devbox.errors import PreconditionError, RemoteOperationError
from devbox.lifecycle import wait_until_ready
from devbox.models import DesiredState, DiskSpec, InstanceInfo, SshHostEntry, SshKey, VmState
from devbox.ssh_config import SshConfigChange, SshConfigFile
from devbox.ssh_keys import SSH_KEYS_METADATA, LocalKeyPair, merge_ssh_keys
from devbox.tunnel import RemoteShell

log = logger.bind(component="reconciler")

STARTUP_SCRIPT_METADATA = "startup-script"
TOOLCHAIN_CHECK = "command -v docker && command -v git"


@dataclass(slots=True)
class ReconcileReport:
    """What a reconciliation pass changed, plus non-fatal warnings."""

    created_disk: bool = False
    created_vm: bool = False
    attached_disk: bool = False
    added_ssh_key: bool = False
    ssh_change: SshConfigChange = SshConfigChange.UNCHANGED
    ready: bool | None = None
    dependencies_ok: bool | None = None
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        log.warning(message)
        self.warnings.append(message)

    @property
    def changed(self) -> bool:
        return (
            self.created_disk or self.created_vm or self.attached_disk
            or self.added_ssh_key or self.ssh_change is not SshConfigChange.UNCHANGED
        )


@dataclass(frozen=True, slots=True)
class TeardownReport:
    deleted_vm: bool
    deleted_disk: bool
    removed_ssh_entry: bool


def _merge_all(existing: str, keys: Iterable[SshKey]) -> str | None:
    """Fold ``keys`` into an ``ssh-keys`` value. ``None`` if nothing was added."""
    value, changed = existing, False
    for key in keys:
        merged = merge_ssh_keys(value, key)
        if merged is not None:
            value, changed = merged, True
    return value if changed else None


class Reconciler:
    def __init__(
        self,
        client: ComputeClient,
        shell: RemoteShell,
        keypair: LocalKeyPair,
        ssh_config: SshConfigFile,
        clock: Clock,
        *,
        ready_attempts: int = READY_ATTEMPTS,
        ready_interval: float = READY_INTERVAL,
    ) -> None:
        self._client = client
        self._shell = shell
        self._keypair = keypair
        self._ssh_config = ssh_config
        self._clock = clock
        self._ready_attempts = ready_attempts
        self._ready_interval = ready_interval

    def reconcile(self, desired: DesiredState) -> ReconcileReport:
        """Converge remote and local state toward ``desired``.

        Raises:
            RemoteOperationError: Disk/VM creation or disk attach failed.
        """
        report = ReconcileReport()
        self._ensure_disk(desired.disk, report)
        instance = self._ensure_vm(desired, report)
        self._ensure_ssh_entry(desired.ssh, report)
        self._verify_vm(desired, instance, report)

        log.info(
            "Reconcile finished: {status}, {n} warning(s)",
            status="changes applied" if report.changed else "already converged",
            n=len(report.warnings),
        )
        return report

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _ensure_disk(self, spec: DiskSpec, report: ReconcileReport) -> None:
        existing = self._client.get_disk(spec.name, spec.zone)
        if existing is not None:
            # Size/type drift is never reconciled; changing them means recreating
            log.debug(
                "Disk {name} exists ({size}GB {type})",
                name=existing.name, size=existing.size_gb, type=existing.type,
            )
            return

        log.info("Creating disk {name} ({size}GB {type})", name=spec.name, size=spec.size_gb, type=spec.type)
        self._client.create_disk(spec)
        report.created_disk = True

    def _wanted_keys(self, desired: DesiredState) -> list[SshKey]:
        local = self._keypair.ensure()
        extra = sorted(desired.vm.ssh_public_keys - {local}, key=SshKey.render)
        return [local, *extra]

    def _ensure_vm(self, desired: DesiredState, report: ReconcileReport) -> InstanceInfo | None:
        vm = desired.vm
        instance = self._client.get_instance(vm.name, vm.zone)

        if instance is None:
            metadata = {
                STARTUP_SCRIPT_METADATA: generate(desired.provisioning),
                SSH_KEYS_METADATA: _merge_all("", self._wanted_keys(desired)) or "",
            }
            self._client.create_instance(vm, metadata)
            report.created_vm = True

            report.ready = wait_until_ready(
                self._shell, self._clock,
                attempts=self._ready_attempts, interval=self._ready_interval,
            )
            if not report.ready:
                report.warn(f"VM {vm.name} is not ready yet; provisioning log: {STARTUP_LOG}")
            return self._client.get_instance(vm.name, vm.zone)

        if not instance.has_disk(desired.disk.name):
            log.info("Attaching disk {disk} to {vm}", disk=desired.disk.name, vm=vm.name)
            self._client.attach_disk(vm.name, vm.zone, desired.disk.name, vm.device_name)
            report.attached_disk = True

        merged = _merge_all(instance.metadata.get(SSH_KEYS_METADATA, ""), self._wanted_keys(desired))
        if merged is not None:
            try:
                self._client.add_metadata(vm.name, vm.zone, {SSH_KEYS_METADATA: merged})
                report.added_ssh_key = True
            except RemoteOperationError as e:
                report.warn(f"Could not add SSH key to {vm.name} metadata: {e}")

        return instance

    def _ensure_ssh_entry(self, entry: SshHostEntry, report: ReconcileReport) -> None:
        try:
            report.ssh_change = self._ssh_config.ensure(entry)
        except OSError as e:
            report.warn(f"Could not update {self._ssh_config.path}: {e}")

    def _verify_vm(
        self, desired: DesiredState, instance: InstanceInfo | None, report: ReconcileReport,
    ) -> None:
        if instance is None or instance.state is not VmState.RUNNING:
            state = instance.state if instance else VmState.NOT_FOUND
            log.info("VM is {state}, skipping dependency check", state=state)
            return

        result = self._shell.run(TOOLCHAIN_CHECK)
        report.dependencies_ok = result.success
        if not result.success:
            report.warn(f"Toolchain not installed yet; provisioning may still be running (see {STARTUP_LOG})")

        if not self._shell.run(f"systemctl is-active --quiet {IDLE_SERVICE}").success:
            report.warn(f"{IDLE_SERVICE} service is not active; the VM will not stop on idle")

        if desired.project_dir:
            self._create_project_dir(desired.project_dir, report)

    def _create_project_dir(self, name: str, report: ReconcileReport) -> None:
        path = shlex.quote(f"{MOUNT_POINT}/{name}")
        command = (
            f"sudo chown -R $(whoami) {MOUNT_POINT} && "
            f"mkdir -p {path}"
        )
        result = self._shell.run(command, timeout=120)
        if not result.success:
            report.warn(f"Could not create project directory {path}: {result.stderr.strip()}")

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def teardown(self, desired: DesiredState, *, confirmed: bool) -> TeardownReport:
        """Delete VM, then disk, then the SSH entry. Destroys all data on the disk.

        Raises:
            PreconditionError: ``confirmed`` is false.
        """
        vm, disk = desired.vm, desired.disk
        if not confirmed:
            raise PreconditionError(
                f"Refusing to delete {vm.name} and {disk.name} without confirmation",
                remedy="Re-run with --yes",
            )

        deleted_vm = self._client.get_instance(vm.name, vm.zone) is not None
        if deleted_vm:
            log.warning("Deleting VM {name}", name=vm.name)
            self._client.delete_instance(vm.name, vm.zone)

        deleted_disk = self._client.get_disk(disk.name, disk.zone) is not None
        if deleted_disk:
            log.warning("Deleting disk {name}", name=disk.name)
            self._client.delete_disk(disk.name, disk.zone)

        removed = self._ssh_config.remove(desired.ssh.name)
        return TeardownReport(deleted_vm, deleted_disk, removed)
