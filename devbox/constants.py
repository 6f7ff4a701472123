"""Centralized constants for devbox.

All magic strings, paths, and tuning values shared between the developer
machine side (reconciler, bridge) and the VM side (provisioning script,
idle daemon) live here so both ends agree.
"""

from __future__ import annotations

from typing import Final

VERSION: Final = "0.1.0"

# =============================================================================
# VM filesystem paths
# =============================================================================

DEVBOX_DIR: Final = "/opt/devbox"
VENV_DIR: Final = f"{DEVBOX_DIR}/venv"
DAEMON_LIB_DIR: Final = f"{DEVBOX_DIR}/lib"
MOUNT_POINT: Final = "/mnt/dev"
DEVICE_NAME: Final = "devbox-disk"
DISK_DEVICE: Final = f"/dev/disk/by-id/google-{DEVICE_NAME}"

STARTUP_LOG: Final = "/var/log/devbox-startup.log"
IDLE_LOG: Final = "/var/log/devbox-idle-shutdown.log"
ACTIVITY_MARKER: Final = "/tmp/devbox-last-ssh-activity"

IDLE_SERVICE: Final = "devbox-idle-shutdown"
IDLE_SERVICE_UNIT: Final = f"/etc/systemd/system/{IDLE_SERVICE}.service"

# =============================================================================
# Compute defaults
# =============================================================================

IMAGE_FAMILY: Final = "ubuntu-2204-lts"
IMAGE_PROJECT: Final = "ubuntu-os-cloud"
BOOT_DISK_SIZE_GB: Final = 10
STANDARD_BOOT_DISK: Final = "pd-standard"
FLASH_BOOT_DISK: Final = "pd-balanced"
FLASH_ONLY_FAMILIES: Final = ("c3-", "c4-")
VM_TAG: Final = "devbox"
COMPUTE_SCOPE: Final = "https://www.googleapis.com/auth/compute"
UV_INSTALL_URL: Final = "https://astral.sh/uv/install.sh"
DEFAULT_PYTHON: Final = "3.12"

# Modules and third-party requirements the idle daemon needs on the VM
DAEMON_MODULES: Final = (
    "constants", "errors", "models", "logging", "clock", "shell", "shutdown", "idle",
)
DAEMON_REQUIREMENTS: Final = ("loguru>=0.7", "tenacity>=8.2", "httpx>=0.27")

# =============================================================================
# Local SSH client
# =============================================================================

SSH_KEY_NAME: Final = "google_compute_engine"
FIRST_SSH_PORT: Final = 2222
SSH_ENTRY_COMMENT: Final = "# Devbox SSH entry (auto-generated)"
KEEPALIVE_OPTIONS: Final = (
    ("ConnectTimeout", "180"),
    ("ServerAliveInterval", "60"),
    ("ServerAliveCountMax", "3"),
    ("TCPKeepAlive", "yes"),
)

# =============================================================================
# Timing (attempt count x fixed delay, never wall-clock deadlines)
# =============================================================================

READY_ATTEMPTS: Final = 30
READY_INTERVAL: Final = 10.0
STATE_POLL_ATTEMPTS: Final = 30
STATE_POLL_INTERVAL: Final = 5.0
IDLE_TICK_SECONDS: Final = 60.0
HEARTBEAT_EVERY_TICKS: Final = 5
SHUTDOWN_GRACE_SECONDS: Final = 2.0
DEFAULT_IDLE_TIMEOUT_MINUTES: Final = 10
