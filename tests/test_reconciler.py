from __future__ import annotations

import pytest

from devbox.errors import PreconditionError, RemoteOperationError
from devbox.models import DesiredState, SshKey, VmState
from devbox.reconciler import Reconciler
from devbox.shell import CommandResult
from devbox.ssh_config import SshConfigChange, SshConfigFile
from devbox.ssh_keys import LocalKeyPair

from tests.fakes import PUBLIC_KEY, FakeClock, FakeComputeClient, FakeShell

DISK = "devbox-alice-disk"
VM = "devbox-alice"


@pytest.fixture
def reconciler(
    compute: FakeComputeClient,
    remote: FakeShell,
    keypair: LocalKeyPair,
    ssh_config: SshConfigFile,
    clock: FakeClock,
) -> Reconciler:
    return Reconciler(compute, remote, keypair, ssh_config, clock)


class TestFreshState:
    def test_creates_disk_vm_and_entry_in_order(self, reconciler, compute, ssh_config, desired):
        report = reconciler.reconcile(desired)

        assert [op for op, _ in compute.mutations] == ["create_disk", "create_instance"]
        assert report.created_disk and report.created_vm
        assert report.ssh_change is SshConfigChange.ADDED
        assert ssh_config.has_entry(VM)
        assert report.ready is True

    def test_instance_metadata(self, reconciler, compute, desired):
        reconciler.reconcile(desired)

        metadata = compute.instances[VM].metadata
        assert metadata["ssh-keys"] == f"alice:{PUBLIC_KEY}"
        assert metadata["startup-script"].startswith("#!/bin/bash")
        assert "--timeout-minutes 10" in metadata["startup-script"]

    def test_vm_references_disk(self, reconciler, compute, desired):
        reconciler.reconcile(desired)
        assert compute.created_specs[0].attached_disk_name == DISK

    def test_extra_public_keys_included(self, reconciler, compute, desired):
        from dataclasses import replace

        bob = SshKey("bob", "ssh-ed25519 AAAAbob bob")
        desired = replace(desired, vm=replace(desired.vm, ssh_public_keys=frozenset({bob})))

        reconciler.reconcile(desired)

        assert compute.instances[VM].metadata["ssh-keys"].splitlines() == [
            f"alice:{PUBLIC_KEY}",
            "bob:ssh-ed25519 AAAAbob bob",
        ]


class TestIdempotency:
    def test_second_run_makes_no_mutating_calls(self, reconciler, compute, desired):
        reconciler.reconcile(desired)
        before = list(compute.mutations)

        report = reconciler.reconcile(desired)

        assert compute.mutations == before
        assert report.changed is False
        assert report.ssh_change is SshConfigChange.UNCHANGED

    def test_existing_disk_is_not_resized(self, reconciler, compute, desired):
        compute.add_disk(DISK, size_gb=50)

        reconciler.reconcile(desired)

        assert ("create_disk", DISK) not in compute.mutations
        assert compute.disks[DISK].size_gb == 50


class TestPartialState:
    def test_disk_exists_vm_missing(self, reconciler, compute, desired):
        compute.add_disk(DISK)

        reconciler.reconcile(desired)

        assert compute.mutations == [("create_instance", VM)]

    def test_detached_disk_is_attached(self, reconciler, compute, desired):
        compute.add_disk(DISK)
        compute.add_instance(VM, disks=(f"{VM}",), metadata={"ssh-keys": f"alice:{PUBLIC_KEY}"})

        report = reconciler.reconcile(desired)

        assert compute.mutations == [("attach_disk", VM)]
        assert report.attached_disk
        assert compute.instances[VM].has_disk(DISK)

    def test_missing_key_is_appended(self, reconciler, compute, desired):
        compute.add_disk(DISK)
        compute.add_instance(VM, disks=(DISK,), metadata={"ssh-keys": "carol:ssh-rsa AAAAcarol carol"})

        report = reconciler.reconcile(desired)

        assert report.added_ssh_key
        assert compute.instances[VM].metadata["ssh-keys"].splitlines() == [
            "carol:ssh-rsa AAAAcarol carol",
            f"alice:{PUBLIC_KEY}",
        ]

    def test_metadata_failure_is_warning(self, reconciler, compute, desired):
        compute.add_disk(DISK)
        compute.add_instance(VM, disks=(DISK,))
        compute.fail("add_metadata", "quota exceeded")

        report = reconciler.reconcile(desired)

        assert not report.added_ssh_key
        assert any("metadata" in w for w in report.warnings)

    def test_stopped_vm_skips_dependency_check(self, reconciler, compute, remote, desired):
        compute.add_disk(DISK)
        compute.add_instance(VM, state=VmState.STOPPED, disks=(DISK,), metadata={"ssh-keys": f"alice:{PUBLIC_KEY}"})

        report = reconciler.reconcile(desired)

        assert remote.commands == []
        assert report.dependencies_ok is None
        assert ("start_instance", VM) not in compute.mutations


class TestFailures:
    def test_disk_creation_failure_aborts(self, reconciler, compute, desired):
        compute.fail("create_disk", "QUOTA_EXCEEDED")

        with pytest.raises(RemoteOperationError, match="QUOTA_EXCEEDED"):
            reconciler.reconcile(desired)

        assert VM not in compute.instances

    def test_attach_failure_aborts(self, reconciler, compute, desired):
        compute.add_disk(DISK)
        compute.add_instance(VM, disks=())
        compute.fail("attach_disk", "disk in use")

        with pytest.raises(RemoteOperationError):
            reconciler.reconcile(desired)

    def test_ssh_config_failure_is_warning(self, compute, remote, keypair, clock, desired, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        reconciler = Reconciler(compute, remote, keypair, SshConfigFile(blocker / "config"), clock)

        report = reconciler.reconcile(desired)

        assert report.ssh_change is SshConfigChange.UNCHANGED
        assert any("config" in w for w in report.warnings)


class TestReadiness:
    def test_timeout_is_soft(self, compute, keypair, ssh_config, clock, desired):
        remote = FakeShell(probes=[False] * 30)
        reconciler = Reconciler(compute, remote, keypair, ssh_config, clock)

        report = reconciler.reconcile(desired)

        assert report.ready is False
        assert remote.probe_count == 30
        assert clock.sleeps == [10.0] * 29
        assert any("not ready" in w for w in report.warnings)

    def test_ready_after_a_few_probes(self, compute, keypair, ssh_config, clock, desired):
        remote = FakeShell(probes=[False, False, True])
        reconciler = Reconciler(compute, remote, keypair, ssh_config, clock)

        assert reconciler.reconcile(desired).ready is True
        assert remote.probe_count == 3


class TestVerification:
    def test_running_vm_checks_toolchain_and_project_dir(self, reconciler, remote, desired):
        reconciler.reconcile(desired)

        assert "command -v docker && command -v git" in remote.commands
        assert "systemctl is-active --quiet devbox-idle-shutdown" in remote.commands
        assert any("mkdir -p /mnt/dev/api" in c for c in remote.commands)

    def test_missing_toolchain_is_warning(self, compute, keypair, ssh_config, clock, desired):
        remote = FakeShell(responses={"command -v docker": CommandResult(1)})
        report = Reconciler(compute, remote, keypair, ssh_config, clock).reconcile(desired)

        assert report.dependencies_ok is False
        assert any("Toolchain" in w for w in report.warnings)


class TestTeardown:
    def test_requires_confirmation(self, reconciler, compute, desired):
        reconciler.reconcile(desired)
        before = list(compute.mutations)

        with pytest.raises(PreconditionError):
            reconciler.teardown(desired, confirmed=False)

        assert compute.mutations == before

    def test_deletes_vm_before_disk(self, reconciler, compute, ssh_config, desired: DesiredState):
        reconciler.reconcile(desired)

        report = reconciler.teardown(desired, confirmed=True)

        assert compute.mutations[-2:] == [("delete_instance", VM), ("delete_disk", DISK)]
        assert report.deleted_vm and report.deleted_disk and report.removed_ssh_entry
        assert not ssh_config.has_entry(VM)

    def test_nothing_to_delete(self, reconciler, compute, desired):
        report = reconciler.teardown(desired, confirmed=True)
        assert compute.mutations == []
        assert not report.deleted_vm and not report.deleted_disk
