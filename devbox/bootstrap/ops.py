"""First-boot operations.

Declarative, idempotent steps for the devbox VM: network and disk waits,
data disk mount, toolchain install, and the idle daemon service. Each
function returns an :data:`~devbox.bootstrap.compose.Op`.
"""

from __future__ import annotations

import shlex
from collections.abc import Sequence
from pathlib import Path

from devbox.constants import UV_INSTALL_URL

from .compose import Op, resolve

# =============================================================================
# Error policy
# =============================================================================


def required(cmd: str, what: str) -> Op:
    """Retry ``cmd`` (3 x 5s); abort provisioning if it never succeeds.

    Example:
        >>> required("apt-get install -y git", "git install")()
        'retry_command apt-get install -y git || { echo "ERROR: git install failed"; exit 1; }'
    """
    return lambda: f'retry_command {cmd} || {{ echo "ERROR: {what} failed"; exit 1; }}'


def optional(cmd: str, what: str) -> Op:
    """Run ``cmd`` once; a failure only logs a warning."""
    return lambda: f'{cmd} || echo "WARNING: {what} failed, continuing"'


# =============================================================================
# Files
# =============================================================================


def file(path: str, content: str, mode: str | None = None) -> Op:
    """Write content to a file using a quoted heredoc (no expansion)."""

    def generate() -> str:
        lines = [f"cat > {path} << 'EOF'", content, "EOF"]
        if mode:
            lines.append(f"chmod {mode} {path}")
        return "\n".join(lines)

    return generate


def section(title: str, *ops: Op) -> Op:
    """Label a group of operations in the startup log."""

    def generate() -> str:
        body = "\n".join(resolve(op) for op in ops)
        return f'echo "--- {title} ---"\n{body}'

    return generate


# =============================================================================
# Waits
# =============================================================================


def wait_for_network(attempts: int = 30, interval: int = 2, host: str = "8.8.8.8") -> Op:
    """Poll network reachability; proceed anyway once attempts run out."""

    def generate() -> str:
        return f"""NETWORK_READY=0
for i in $(seq 1 {attempts}); do
    if ping -c 1 -W 2 {host} >/dev/null 2>&1; then
        NETWORK_READY=1
        echo "Network is ready"
        break
    fi
    echo "Waiting for network... ($i/{attempts})"
    sleep {interval}
done
if [ "$NETWORK_READY" -ne 1 ]; then
    echo "WARNING: network not confirmed after {attempts} attempts, proceeding anyway"
fi"""

    return generate


def wait_for_device(device: str, attempts: int = 60, interval: int = 2) -> Op:
    """Poll for a block device; abort provisioning if it never appears."""

    def generate() -> str:
        return f"""for i in $(seq 1 {attempts}); do
    if [ -e {device} ]; then
        echo "Found data disk at {device}"
        break
    fi
    echo "Waiting for data disk {device}... ($i/{attempts})"
    sleep {interval}
done
if [ ! -e {device} ]; then
    echo "ERROR: data disk {device} not found after {attempts} attempts"
    exit 1
fi"""

    return generate


# =============================================================================
# Data disk
# =============================================================================

OWNER_MARKER = ".devbox-owner"


def mount_disk(device: str, mount_point: str) -> Op:
    """Format only when unformatted, mount, and persist in fstab once.

    The mount point stays world-writable until the first login claims it.
    """

    def generate() -> str:
        fstab_line = f"{device} {mount_point} ext4 defaults 0 2"
        return f"""if ! blkid {device} >/dev/null 2>&1; then
    echo "Formatting {device} as ext4"
    mkfs.ext4 -F {device} || {{ echo "ERROR: mkfs failed"; exit 1; }}
fi
mkdir -p {mount_point}
if ! mountpoint -q {mount_point}; then
    mount -o discard,defaults {device} {mount_point} || {{ echo "ERROR: mount failed"; exit 1; }}
fi
if ! grep -qs "^{device} " /etc/fstab; then
    echo "{fstab_line}" >> /etc/fstab
fi
if [ ! -e {mount_point}/{OWNER_MARKER} ]; then
    chmod 777 {mount_point}
fi"""

    return generate


def first_login_ownership(mount_point: str) -> Op:
    """Hand the mount point to the first real user who logs in."""
    marker = f"{mount_point}/{OWNER_MARKER}"
    script = f"""if [ ! -e {marker} ] && [ "$(id -u)" -ne 0 ]; then
    sudo chown -R "$(id -un)":"$(id -gn)" {mount_point} 2>/dev/null && touch {marker}
fi"""
    return file("/etc/profile.d/devbox-mount-owner.sh", script, mode="0644")


# =============================================================================
# Toolchain
# =============================================================================

DOCKER_PREREQS = ("ca-certificates", "curl", "gnupg", "lsb-release")
DOCKER_PACKAGES = (
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
)


def apt_install(*packages: str) -> str:
    return f"apt-get install -y -qq {' '.join(packages)}"


def apt(cmd: str, what: str) -> Op:
    """Wait for the dpkg lock, then run ``cmd`` as a required step.

    unattended-upgrades holds the lock for minutes after a fresh boot.

    Example:
        >>> resolve(apt("apt-get update -qq", "apt update"))
        'while fuser /var/lib/dpkg/lock-frontend >/dev/null 2>&1; do sleep 5; done\\nretry_command apt-get update -qq || { echo "ERROR: apt update failed"; exit 1; }'
    """
    return [
        "while fuser /var/lib/dpkg/lock-frontend >/dev/null 2>&1; do sleep 5; done",
        required(cmd, what),
    ]


def install_docker() -> Op:
    """Container runtime from the official apt repository, skipped if present."""
    keyring = "/etc/apt/keyrings/docker.gpg"
    repo = (
        f'echo "deb [arch=$(dpkg --print-architecture) signed-by={keyring}] '
        'https://download.docker.com/linux/ubuntu $(lsb_release -cs) stable" '
        "> /etc/apt/sources.list.d/docker.list"
    )

    def generate() -> str:
        steps = [
            resolve(apt("apt-get update -qq", "apt update")),
            resolve(apt(apt_install(*DOCKER_PREREQS), "docker prerequisites install")),
            "install -m 0755 -d /etc/apt/keyrings",
            resolve(required(
                "bash -c " + shlex.quote(
                    "curl -fsSL https://download.docker.com/linux/ubuntu/gpg"
                    f" | gpg --dearmor --yes -o {keyring}"
                ),
                "docker GPG key download",
            )),
            f"chmod a+r {keyring}",
            repo,
            resolve(apt("apt-get update -qq", "apt update")),
            resolve(apt(apt_install(*DOCKER_PACKAGES), "docker install")),
            resolve(optional("systemctl enable docker", "docker service enable")),
            resolve(optional("systemctl start docker", "docker service start")),
            resolve(optional("docker --version", "docker version probe")),
        ]
        body = "\n    ".join("\n".join(steps).splitlines())
        return f"""if ! command -v docker >/dev/null 2>&1; then
    {body}
else
    echo "docker already installed"
fi"""

    return generate


def install_git() -> Op:
    """Version control from apt, skipped if present."""

    def generate() -> str:
        steps = resolve([
            apt("apt-get update -qq", "apt update"),
            apt(apt_install("git"), "git install"),
            optional("git --version", "git version probe"),
        ])
        body = "\n    ".join(steps.splitlines())
        return f"""if ! command -v git >/dev/null 2>&1; then
    {body}
else
    echo "git already installed"
fi"""

    return generate


def install_uv() -> Op:
    """Install uv package manager if not present."""
    installer = "bash -c " + shlex.quote(f"curl -LsSf {UV_INSTALL_URL} | sh")

    def generate() -> str:
        return f"""export PATH="/root/.local/bin:$PATH"
if ! command -v uv >/dev/null 2>&1; then
    {resolve(required(installer, "uv install"))}
fi"""

    return generate


def daemon_venv(python: str, venv_path: str, requirements: Sequence[str]) -> Op:
    """Managed Python venv holding the idle daemon's dependencies."""
    reqs = " ".join(shlex.quote(r) for r in requirements)
    return [
        required(f"uv venv --allow-existing --python {python} {venv_path}", "daemon venv creation"),
        required(
            f"uv pip install --python {venv_path}/bin/python {reqs}",
            "daemon package install",
        ),
    ]


def daemon_sources(lib_path: str, modules: Sequence[str]) -> Op:
    """Ship the daemon's modules from this installation as plain source.

    The VM then runs exactly the code the developer has installed, with no
    package index involved. Files land in ``{lib_path}/devbox`` and are
    rewritten on every boot.

    Example:
        >>> "cat > /opt/devbox/lib/devbox/idle.py" in resolve(daemon_sources("/opt/devbox/lib", ["idle"]))
        True
    """
    package_dir = Path(__file__).resolve().parent.parent
    target = f"{lib_path}/devbox"

    def generate() -> str:
        ops: list[Op] = [
            f"mkdir -p {target}",
            file(f"{target}/__init__.py", '"""devbox idle daemon."""', mode="0644"),
        ]
        for name in modules:
            source = (package_dir / f"{name}.py").read_text().rstrip("\n")
            ops.append(file(f"{target}/{name}.py", source, mode="0644"))
        return resolve(ops)

    return generate


# =============================================================================
# Services
# =============================================================================


def service_unit(description: str, exec_start: str, environment: str | None = None) -> str:
    """Auto-restarting systemd unit started after the network is up."""
    env_line = f"Environment={environment}\n" if environment else ""
    return f"""[Unit]
Description={description}
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
{env_line}ExecStart={exec_start}
Restart=always
RestartSec=10
User=root

[Install]
WantedBy=multi-user.target"""


def systemd_service(
    name: str, description: str, exec_start: str, environment: str | None = None,
) -> Op:
    """Install, enable and start a supervised service.

    Enable/start failures degrade to warnings; systemd retries on its own.
    """
    unit_path = f"/etc/systemd/system/{name}.service"
    return [
        file(unit_path, service_unit(description, exec_start, environment), mode="0644"),
        optional("systemctl daemon-reload", "systemd reload"),
        optional(f"systemctl enable {name}", f"{name} enable"),
        optional(f"systemctl restart {name}", f"{name} start"),
    ]


def complete() -> Op:
    return lambda: 'echo "=== devbox provisioning completed at $(date) ==="'
