"""TOML-based devbox configuration.

Loads ``~/.devbox/config.toml`` (global) and ``devbox.toml`` (project),
merges them, and resolves the result into an immutable
:class:`DevboxConfig`. Everything downstream receives that value
explicitly; nothing else reads the environment.

Example ``~/.devbox/config.toml``::

    gcp_project = "my-project"
    machine_type = "n1-standard-8"
    zone = "us-central1-a"
    idle_timeout_minutes = 15

Example ``devbox.toml``::

    project_dir = "api-server"
"""

from __future__ import annotations

import getpass
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from loguru import logger

from devbox import shell
from devbox.bootstrap import ProvisioningSpec
from devbox.constants import DEFAULT_IDLE_TIMEOUT_MINUTES, SSH_KEY_NAME, STANDARD_BOOT_DISK
from devbox.errors import PreconditionError
from devbox.models import DesiredState, DiskSpec, SshHostEntry, VmSpec
from devbox.shell import Runner

log = logger.bind(component="config")

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".devbox" / "config.toml"
PROJECT_CONFIG_NAME = "devbox.toml"
CONNECT_COMMAND = "devbox-connect"


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise PreconditionError(f"Invalid TOML in {path}: {e}", remedy=f"Fix or remove {path}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)
    return _deep_merge(global_cfg, project_cfg)


# =============================================================================
# Typed sections
# =============================================================================


@dataclass(frozen=True, slots=True)
class GlobalConfig:
    """Developer-wide settings. ``None`` means "use the derived default"."""

    gcp_project: str | None = None
    vm_name: str | None = None
    disk_name: str | None = None
    machine_type: str = "n1-standard-8"
    region: str = "us-central1"
    zone: str = "us-central1-a"
    disk_size_gb: int = 300
    disk_type: str = STANDARD_BOOT_DISK
    idle_timeout_minutes: int = DEFAULT_IDLE_TIMEOUT_MINUTES
    daemon_package: str | None = None


@dataclass(frozen=True, slots=True)
class ProjectConfig:
    project_dir: str | None = None


_GLOBAL_KEYS = frozenset(f.name for f in fields(GlobalConfig))
_PROJECT_KEYS = frozenset(f.name for f in fields(ProjectConfig))


def split_raw(raw: RawConfig) -> tuple[GlobalConfig, ProjectConfig]:
    unknown = set(raw) - _GLOBAL_KEYS - _PROJECT_KEYS
    if unknown:
        raise PreconditionError(
            f"Unknown config key(s): {', '.join(sorted(unknown))}",
            remedy=f"Valid keys: {', '.join(sorted(_GLOBAL_KEYS | _PROJECT_KEYS))}",
        )
    return (
        GlobalConfig(**{k: v for k, v in raw.items() if k in _GLOBAL_KEYS}),
        ProjectConfig(**{k: v for k, v in raw.items() if k in _PROJECT_KEYS}),
    )


# =============================================================================
# Resolution
# =============================================================================


@dataclass(frozen=True, slots=True)
class DevboxConfig:
    """Fully resolved configuration. Every field is present."""

    project: str
    user: str
    vm_name: str
    disk_name: str
    machine_type: str
    region: str
    zone: str
    disk_size_gb: int
    disk_type: str
    idle_timeout_minutes: int
    project_dir: str
    daemon_package: str | None = None


def resolve_project(explicit: str | None, env: Mapping[str, str] | None = None) -> str:
    """Resolve GCP project: explicit > env > ADC."""
    env = os.environ if env is None else env
    if explicit:
        return explicit

    if env_project := env.get("GOOGLE_CLOUD_PROJECT"):
        return env_project

    if env_project := env.get("GCLOUD_PROJECT"):
        return env_project

    import google.auth  # type: ignore[reportMissingImports]
    from google.auth.exceptions import DefaultCredentialsError  # type: ignore[reportMissingImports]

    try:
        _, project = google.auth.default()
    except DefaultCredentialsError:
        project = None
    if project:
        return project

    raise PreconditionError(
        "Could not determine GCP project",
        remedy="Set gcp_project in ~/.devbox/config.toml or export GOOGLE_CLOUD_PROJECT",
    )


def detect_project_dir(cwd: Path, runner: Runner = shell.run) -> str:
    """Repository name from the ``origin`` remote, else the directory name."""
    result = runner(["git", "-C", str(cwd), "remote", "get-url", "origin"], timeout=10)
    url = result.stdout.strip().rstrip("/")
    if result.success and url:
        name = url.rsplit("/", 1)[-1].rsplit(":", 1)[-1]
        return name.removesuffix(".git") or cwd.name
    return cwd.name


def resolve_config(
    global_cfg: GlobalConfig,
    project_cfg: ProjectConfig,
    *,
    cwd: Path,
    user: str | None = None,
    env: Mapping[str, str] | None = None,
    runner: Runner = shell.run,
) -> DevboxConfig:
    """Fill derived defaults and validate.

    Raises:
        PreconditionError: No project can be resolved or the zone is not in
            the configured region.
    """
    user = user or getpass.getuser()
    vm_name = global_cfg.vm_name or f"devbox-{user}"

    if not global_cfg.zone.startswith(f"{global_cfg.region}-"):
        raise PreconditionError(
            f"Zone {global_cfg.zone} is not in region {global_cfg.region}",
            remedy="Fix zone/region in ~/.devbox/config.toml",
        )
    if global_cfg.idle_timeout_minutes <= 0:
        raise PreconditionError(
            f"idle_timeout_minutes must be positive, got {global_cfg.idle_timeout_minutes}",
        )

    config = DevboxConfig(
        project=resolve_project(global_cfg.gcp_project, env),
        user=user,
        vm_name=vm_name,
        disk_name=global_cfg.disk_name or f"{vm_name}-disk",
        machine_type=global_cfg.machine_type,
        region=global_cfg.region,
        zone=global_cfg.zone,
        disk_size_gb=global_cfg.disk_size_gb,
        disk_type=global_cfg.disk_type,
        idle_timeout_minutes=global_cfg.idle_timeout_minutes,
        project_dir=project_cfg.project_dir or detect_project_dir(cwd, runner),
        daemon_package=global_cfg.daemon_package,
    )
    log.debug("Resolved config: {config}", config=config)
    return config


def load(
    *,
    cwd: Path | None = None,
    global_path: Path | None = None,
) -> DevboxConfig:
    cwd = cwd or Path.cwd()
    global_cfg, project_cfg = split_raw(load_config(project_dir=cwd, global_path=global_path))
    return resolve_config(global_cfg, project_cfg, cwd=cwd)


# =============================================================================
# Desired state
# =============================================================================


def proxy_command(config: DevboxConfig, connect_command: str = CONNECT_COMMAND) -> str:
    return f"{connect_command} --project {config.project} --zone {config.zone} %h %p"


def desired_state(
    config: DevboxConfig,
    *,
    connect_command: str = CONNECT_COMMAND,
    identity_file: str = f"~/.ssh/{SSH_KEY_NAME}",
) -> DesiredState:
    provisioning = ProvisioningSpec(config.idle_timeout_minutes, daemon_package=config.daemon_package)
    return DesiredState(
        disk=DiskSpec(
            name=config.disk_name,
            size_gb=config.disk_size_gb,
            type=config.disk_type,
            zone=config.zone,
        ),
        vm=VmSpec(
            name=config.vm_name,
            zone=config.zone,
            machine_type=config.machine_type,
            attached_disk_name=config.disk_name,
        ),
        ssh=SshHostEntry(
            name=config.vm_name,
            user=config.user,
            proxy_command=proxy_command(config, connect_command),
            identity_file=identity_file,
        ),
        provisioning=provisioning,
        project_dir=config.project_dir,
    )
