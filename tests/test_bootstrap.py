from __future__ import annotations

import re

import pytest

from devbox.bootstrap import ProvisioningSpec, generate
from devbox.bootstrap.compose import bootstrap, resolve
from devbox.bootstrap.ops import (
    apt,
    daemon_sources,
    file,
    mount_disk,
    optional,
    required,
    service_unit,
    wait_for_device,
    wait_for_network,
)
from devbox.constants import DAEMON_MODULES


@pytest.fixture
def script() -> str:
    return generate(ProvisioningSpec(idle_timeout_minutes=10))


class TestResolve:
    def test_string(self):
        assert resolve("echo hi") == "echo hi"

    def test_callable(self):
        assert resolve(lambda: "echo hi") == "echo hi"

    def test_nested_list(self):
        assert resolve(["a", ["b", lambda: "c"]]) == "a\nb\nc"

    def test_none(self):
        assert resolve(None) == ""

    def test_bootstrap_joins_ops_after_header(self):
        out = bootstrap("echo one", None, lambda: "echo two", header="#!/bin/sh\n")
        assert out == "#!/bin/sh\necho one\n\necho two\n"


class TestErrorPolicy:
    def test_required_aborts(self):
        assert required("apt-get install -y git", "git install")() == (
            'retry_command apt-get install -y git || { echo "ERROR: git install failed"; exit 1; }'
        )

    def test_optional_warns(self):
        assert optional("systemctl enable docker", "docker enable")() == (
            'systemctl enable docker || echo "WARNING: docker enable failed, continuing"'
        )

    def test_file_heredoc(self):
        out = file("/etc/x.conf", "a=$HOME", mode="0644")()
        assert out == "cat > /etc/x.conf << 'EOF'\na=$HOME\nEOF\nchmod 0644 /etc/x.conf"


class TestWaits:
    def test_network_wait_proceeds_on_exhaustion(self):
        out = wait_for_network(30, 2)()
        assert "seq 1 30" in out
        assert "sleep 2" in out
        assert "proceeding anyway" in out
        assert "exit" not in out

    def test_device_wait_is_fatal(self):
        out = wait_for_device("/dev/disk/by-id/google-devbox-disk", 60, 2)()
        assert "seq 1 60" in out
        assert "sleep 2" in out
        assert out.rstrip().endswith("exit 1\nfi")


class TestMount:
    def test_formats_only_without_signature(self):
        out = mount_disk("/dev/sdb", "/mnt/dev")()
        assert out.index("if ! blkid /dev/sdb") < out.index("mkfs.ext4 -F /dev/sdb")

    def test_fstab_entry_written_once(self):
        out = mount_disk("/dev/sdb", "/mnt/dev")()
        assert 'grep -qs "^/dev/sdb " /etc/fstab' in out
        assert 'echo "/dev/sdb /mnt/dev ext4 defaults 0 2" >> /etc/fstab' in out

    def test_world_writable_until_first_login(self):
        out = mount_disk("/dev/sdb", "/mnt/dev")()
        assert out.endswith("if [ ! -e /mnt/dev/.devbox-owner ]; then\n    chmod 777 /mnt/dev\nfi")

    def test_claim_marker_matches_login_hook(self, script: str):
        assert "touch /mnt/dev/.devbox-owner" in script
        assert script.count("chmod 777 /mnt/dev") == 1


class TestApt:
    def test_waits_for_dpkg_lock(self):
        lines = resolve(apt("apt-get update -qq", "apt update")).splitlines()
        assert lines[0] == "while fuser /var/lib/dpkg/lock-frontend >/dev/null 2>&1; do sleep 5; done"
        assert lines[1].startswith("retry_command apt-get update -qq")

    def test_every_apt_call_waits_first(self, script: str):
        lines = [line.strip() for line in script.splitlines()]
        apt_calls = [i for i, line in enumerate(lines) if line.startswith("retry_command apt-get")]
        assert len(apt_calls) == 6
        for i in apt_calls:
            assert lines[i - 1].startswith("while fuser /var/lib/dpkg/lock-frontend")


class TestGenerate:
    def test_pure(self):
        spec = ProvisioningSpec(idle_timeout_minutes=10)
        assert generate(spec) == generate(spec)

    def test_output_teed_to_log(self, script: str):
        assert "exec > >(tee -a /var/log/devbox-startup.log) 2>&1" in script

    def test_retry_helper_bounds(self, script: str):
        assert "local max_attempts=3" in script
        assert "local delay=5" in script

    def test_step_order(self, script: str):
        markers = [
            "ping -c 1",
            "google-devbox-disk ]",
            "mkfs.ext4",
            "command -v docker",
            "command -v git",
            "uv venv",
            "systemctl enable devbox-idle-shutdown",
        ]
        positions = [script.index(m) for m in markers]
        assert positions == sorted(positions)

    def test_toolchain_skipped_when_present(self, script: str):
        assert "if ! command -v docker >/dev/null 2>&1; then" in script
        assert "if ! command -v git >/dev/null 2>&1; then" in script

    def test_docker_packages(self, script: str):
        for pkg in ("docker-ce", "docker-ce-cli", "containerd.io", "docker-buildx-plugin", "docker-compose-plugin"):
            assert pkg in script

    def test_service_enable_failure_is_warning(self, script: str):
        assert 'systemctl enable docker || echo "WARNING' in script
        assert 'systemctl enable devbox-idle-shutdown || echo "WARNING' in script

    def test_daemon_shipped_by_default(self, script: str):
        assert "cat > /opt/devbox/lib/devbox/idle.py << 'EOF'" in script
        assert "cat > /opt/devbox/lib/devbox/shutdown.py << 'EOF'" in script
        assert "def sanitize_count" in script
        assert "uv pip install --python /opt/devbox/venv/bin/python 'loguru>=0.7'" in script
        assert "devbox-vm" not in script

    def test_shipped_modules_import_only_shipped_siblings(self):
        out = resolve(daemon_sources("/opt/devbox/lib", DAEMON_MODULES))
        siblings = re.findall(r"^from devbox\.(\w+) import", out, re.MULTILINE)
        siblings += re.findall(r"^from devbox import (\w+)", out, re.MULTILINE)
        assert siblings
        assert set(siblings) <= set(DAEMON_MODULES)

    def test_daemon_installed_from_package(self):
        out = generate(ProvisioningSpec(idle_timeout_minutes=10, daemon_package="devbox-vm==9.9.9"))
        assert "uv pip install --python /opt/devbox/venv/bin/python devbox-vm==9.9.9" in out
        assert "ExecStart=/opt/devbox/venv/bin/devbox-idle-monitor --timeout-minutes 10" in out
        assert "PYTHONPATH" not in out
        assert "/opt/devbox/lib/devbox" not in out

    def test_daemon_unit(self, script: str):
        assert "Environment=PYTHONPATH=/opt/devbox/lib\nExecStart=/opt/devbox/venv/bin/python -m devbox.idle --timeout-minutes 10" in script
        assert "/etc/systemd/system/devbox-idle-shutdown.service" in script

    def test_first_login_ownership_hook(self, script: str):
        assert "/etc/profile.d/devbox-mount-owner.sh" in script
        assert 'chown -R "$(id -un)"' in script

    def test_timeout_flows_into_daemon_command(self):
        out = generate(ProvisioningSpec(idle_timeout_minutes=45))
        assert "--timeout-minutes 45" in out


class TestServiceUnit:
    def test_restarts_and_waits_for_network(self):
        unit = service_unit("x", "/usr/bin/x")
        assert "After=network-online.target" in unit
        assert "Restart=always" in unit
        assert "RestartSec=10" in unit
        assert "ExecStart=/usr/bin/x" in unit
