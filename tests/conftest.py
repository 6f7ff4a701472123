from __future__ import annotations

from pathlib import Path

import pytest

from devbox.bootstrap import ProvisioningSpec
from devbox.models import DesiredState, DiskSpec, SshHostEntry, VmSpec
from devbox.ssh_config import SshConfigFile
from devbox.ssh_keys import LocalKeyPair

from tests.fakes import PUBLIC_KEY, FakeClock, FakeComputeClient, FakeShell


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def compute() -> FakeComputeClient:
    return FakeComputeClient()


@pytest.fixture
def remote() -> FakeShell:
    return FakeShell()


@pytest.fixture
def keypair(tmp_path: Path) -> LocalKeyPair:
    ssh_dir = tmp_path / "ssh"
    ssh_dir.mkdir()
    (ssh_dir / "google_compute_engine").write_text("PRIVATE")
    (ssh_dir / "google_compute_engine.pub").write_text(PUBLIC_KEY + "\n")
    return LocalKeyPair(path=ssh_dir / "google_compute_engine", user="alice")


@pytest.fixture
def ssh_config(tmp_path: Path) -> SshConfigFile:
    return SshConfigFile(tmp_path / "ssh" / "config")


@pytest.fixture
def desired() -> DesiredState:
    return DesiredState(
        disk=DiskSpec(name="devbox-alice-disk", size_gb=300, type="pd-standard", zone="us-central1-a"),
        vm=VmSpec(
            name="devbox-alice",
            zone="us-central1-a",
            machine_type="n1-standard-8",
            attached_disk_name="devbox-alice-disk",
        ),
        ssh=SshHostEntry(
            name="devbox-alice",
            user="alice",
            proxy_command="devbox-connect --project p --zone us-central1-a %h %p",
            identity_file="~/.ssh/google_compute_engine",
        ),
        provisioning=ProvisioningSpec(idle_timeout_minutes=10),
        project_dir="api",
    )
