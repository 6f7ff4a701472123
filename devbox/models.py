"""Desired-state descriptors and observed-state snapshots.

Everything here is an immutable value. Specs describe what should exist;
``DiskInfo``/``InstanceInfo`` describe what the Cloud Compute API reported
during the current reconciliation pass and are never cached beyond it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from devbox.constants import (
    BOOT_DISK_SIZE_GB,
    DEVICE_NAME,
    IMAGE_FAMILY,
    IMAGE_PROJECT,
    VM_TAG,
)

if TYPE_CHECKING:
    from devbox.bootstrap import ProvisioningSpec


class VmState(StrEnum):
    """Observed VM lifecycle state."""

    NOT_FOUND = "NOT_FOUND"
    PROVISIONING = "PROVISIONING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"

    @classmethod
    def from_status(cls, status: str | None) -> VmState:
        """Map a Compute Engine instance status onto the devbox lifecycle."""
        match (status or "").upper():
            case "RUNNING":
                return cls.RUNNING
            case "PROVISIONING" | "STAGING" | "REPAIRING":
                return cls.PROVISIONING
            case "STOPPING" | "SUSPENDING":
                return cls.STOPPING
            case "TERMINATED" | "STOPPED" | "SUSPENDED":
                return cls.STOPPED
            case _:
                return cls.NOT_FOUND


@dataclass(frozen=True, slots=True)
class DiskSpec:
    """Persistent data disk. Identity is ``(name, zone)``.

    Size and type are only used at creation time; an existing disk is never
    resized or retyped.
    """

    name: str
    size_gb: int
    type: str
    zone: str


@dataclass(frozen=True, slots=True)
class SshKey:
    """One ``user:public_key`` entry of the instance ``ssh-keys`` metadata."""

    user: str
    public_key: str

    def render(self) -> str:
        return f"{self.user}:{self.public_key.strip()}"


@dataclass(frozen=True, slots=True)
class VmSpec:
    """Developer VM. Identity is ``(name, zone)``.

    ``boot_disk_type=None`` derives the boot disk class from the machine
    family at creation time.
    """

    name: str
    zone: str
    machine_type: str
    attached_disk_name: str
    boot_disk_type: str | None = None
    ssh_public_keys: frozenset[SshKey] = frozenset()
    tags: tuple[str, ...] = (VM_TAG,)
    image_family: str = IMAGE_FAMILY
    image_project: str = IMAGE_PROJECT
    boot_disk_size_gb: int = BOOT_DISK_SIZE_GB
    device_name: str = DEVICE_NAME


@dataclass(frozen=True, slots=True)
class SshHostEntry:
    """Host block in the local SSH client configuration, keyed by VM name.

    ``port=None`` asks the SSH config writer to allocate a free local port.
    """

    name: str
    user: str
    proxy_command: str
    identity_file: str
    port: int | None = None


@dataclass(frozen=True, slots=True)
class DesiredState:
    disk: DiskSpec
    vm: VmSpec
    ssh: SshHostEntry
    provisioning: ProvisioningSpec
    project_dir: str | None = None


@dataclass(frozen=True, slots=True)
class DiskInfo:
    name: str
    zone: str
    size_gb: int
    type: str


@dataclass(frozen=True, slots=True)
class InstanceInfo:
    """Snapshot of a VM as reported by a single describe call."""

    name: str
    zone: str
    state: VmState
    disk_names: tuple[str, ...] = ()
    metadata: dict[str, str] = field(default_factory=dict)

    def has_disk(self, disk_name: str) -> bool:
        return disk_name in self.disk_names


@dataclass(slots=True)
class ActivityState:
    """Idle daemon state. Only ``last_activity`` is persisted."""

    last_activity: float
    last_session_count: int = 0
