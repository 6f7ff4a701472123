"""devbox - an elastic cloud development VM per developer.

One persistent disk plus one Compute Engine VM, started on demand by the
SSH ``ProxyCommand``, provisioned once on first boot, and stopped by an
on-VM daemon once nobody has been connected for a while.

Example:

    from devbox import GcpComputeClient, Reconciler, desired_state, load
    from devbox.clock import SystemClock
    from devbox.ssh_config import SshConfigFile
    from devbox.ssh_keys import LocalKeyPair
    from devbox.tunnel import IapShell

    config = load()
    reconciler = Reconciler(
        GcpComputeClient.create(config.project),
        IapShell(config.vm_name, config.zone, config.project),
        LocalKeyPair(),
        SshConfigFile(),
        SystemClock(),
    )
    report = reconciler.reconcile(desired_state(config))
"""

# Configuration
from devbox.config import DevboxConfig, GlobalConfig, ProjectConfig, desired_state, load

# Cloud Compute API
from devbox.compute import ComputeClient, GcpComputeClient, boot_disk_type_for

# Errors
from devbox.errors import DevboxError, PreconditionError, RemoteOperationError

# Models
from devbox.models import (
    DesiredState,
    DiskSpec,
    SshHostEntry,
    SshKey,
    VmSpec,
    VmState,
)

# Engines
from devbox.bridge import ConnectBridge
from devbox.idle import IdleMonitor
from devbox.reconciler import Reconciler, ReconcileReport

from devbox.constants import VERSION as __version__

__all__ = [
    "__version__",
    # Configuration
    "DevboxConfig",
    "GlobalConfig",
    "ProjectConfig",
    "desired_state",
    "load",
    # Cloud Compute API
    "ComputeClient",
    "GcpComputeClient",
    "boot_disk_type_for",
    # Errors
    "DevboxError",
    "PreconditionError",
    "RemoteOperationError",
    # Models
    "DesiredState",
    "DiskSpec",
    "SshHostEntry",
    "SshKey",
    "VmSpec",
    "VmState",
    # Engines
    "ConnectBridge",
    "IdleMonitor",
    "Reconciler",
    "ReconcileReport",
]
