"""First-boot provisioning script for the devbox VM.

The script is generated by a pure function and shipped as the instance
``startup-script`` metadata. Every step is idempotent, so the script can
run on every boot: an already-formatted disk is only mounted, an installed
toolchain is skipped, and the daemon unit is rewritten in place.

Example:
    >>> from devbox.bootstrap import ProvisioningSpec, generate
    >>> script = generate(ProvisioningSpec(idle_timeout_minutes=10))
"""

from __future__ import annotations

from dataclasses import dataclass

from devbox.constants import (
    DAEMON_LIB_DIR,
    DAEMON_MODULES,
    DAEMON_REQUIREMENTS,
    DEFAULT_PYTHON,
    DISK_DEVICE,
    IDLE_LOG,
    IDLE_SERVICE,
    MOUNT_POINT,
    VENV_DIR,
)

from .compose import Op, bootstrap, resolve
from .ops import (
    complete,
    daemon_sources,
    daemon_venv,
    first_login_ownership,
    install_docker,
    install_git,
    install_uv,
    mount_disk,
    section,
    systemd_service,
    wait_for_device,
    wait_for_network,
)


@dataclass(frozen=True, slots=True)
class ProvisioningSpec:
    """Inputs to the first-boot script.

    Attributes:
        idle_timeout_minutes: Passed to the idle daemon's command line.
        daemon_package: Optional pip requirement that provides
            ``devbox-idle-monitor``. When unset, the daemon modules of this
            installation are shipped inside the script and run from
            ``lib_path``.
        device: Stable by-id path of the attached data disk.
        mount_point: Where the data disk is mounted.
        python: Interpreter version for the daemon venv.
        venv_path: Daemon venv location.
        lib_path: Where shipped daemon modules are written.
    """

    idle_timeout_minutes: int
    daemon_package: str | None = None
    device: str = DISK_DEVICE
    mount_point: str = MOUNT_POINT
    python: str = DEFAULT_PYTHON
    venv_path: str = VENV_DIR
    lib_path: str = DAEMON_LIB_DIR
    network_attempts: int = 30
    network_interval: int = 2
    device_attempts: int = 60
    device_interval: int = 2

    def daemon_command(self) -> str:
        if self.daemon_package:
            entry = f"{self.venv_path}/bin/devbox-idle-monitor"
        else:
            entry = f"{self.venv_path}/bin/python -m devbox.idle"
        return f"{entry} --timeout-minutes {self.idle_timeout_minutes} --log-file {IDLE_LOG}"


def _daemon_install(spec: ProvisioningSpec) -> Op:
    if spec.daemon_package:
        return daemon_venv(spec.python, spec.venv_path, [spec.daemon_package])
    return [
        daemon_venv(spec.python, spec.venv_path, DAEMON_REQUIREMENTS),
        daemon_sources(spec.lib_path, DAEMON_MODULES),
    ]


def generate(spec: ProvisioningSpec) -> str:
    """Render the startup script. Pure: same spec, same text."""
    return bootstrap(
        section(
            "network",
            wait_for_network(spec.network_attempts, spec.network_interval),
        ),
        section(
            "data disk",
            wait_for_device(spec.device, spec.device_attempts, spec.device_interval),
            mount_disk(spec.device, spec.mount_point),
            first_login_ownership(spec.mount_point),
        ),
        section("toolchain", install_docker(), install_git()),
        section(
            "idle shutdown daemon",
            install_uv(),
            _daemon_install(spec),
            systemd_service(
                IDLE_SERVICE,
                "devbox idle shutdown monitor",
                spec.daemon_command(),
                environment=None if spec.daemon_package else f"PYTHONPATH={spec.lib_path}",
            ),
        ),
        complete(),
    )


__all__ = [
    "Op",
    "ProvisioningSpec",
    "bootstrap",
    "generate",
    "resolve",
]
