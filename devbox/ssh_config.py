"""Host blocks in the local SSH client configuration.

Each devbox VM gets one ``Host <vm-name>`` block pointing at loopback with a
locally unique port and the connect bridge as ``ProxyCommand``. Existing
blocks are never rewritten: missing keepalive options are inserted in place
and every other line is left untouched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from loguru import logger

from devbox.constants import FIRST_SSH_PORT, KEEPALIVE_OPTIONS, SSH_ENTRY_COMMENT
from devbox.models import SshHostEntry

log = logger.bind(component="ssh_config")

INDENT = "    "

_PORT_RE = re.compile(r"^\s*Port(?:\s*=\s*|\s+)(\d+)\s*$", re.IGNORECASE)
_SECTION_RE = re.compile(r"^\s*(Host|Match)\s+(.*)$", re.IGNORECASE)


def default_config_path() -> Path:
    return Path.home() / ".ssh" / "config"


class SshConfigChange(StrEnum):
    ADDED = "added"
    UPGRADED = "upgraded"
    UNCHANGED = "unchanged"


@dataclass(frozen=True, slots=True)
class _Block:
    """Line range ``[start, end)`` of one ``Host`` section."""

    start: int
    end: int


def _directive(line: str) -> str | None:
    """Lower-cased keyword of a config line, or ``None`` for blanks/comments."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    return re.split(r"[\s=]+", stripped, maxsplit=1)[0].lower()


def render_block(entry: SshHostEntry, port: int) -> list[str]:
    lines = [
        SSH_ENTRY_COMMENT,
        f"Host {entry.name}",
        f"{INDENT}HostName localhost",
        f"{INDENT}Port {port}",
        f"{INDENT}User {entry.user}",
        f"{INDENT}ProxyCommand {entry.proxy_command}",
        f"{INDENT}IdentityFile {entry.identity_file}",
        f"{INDENT}IdentitiesOnly yes",
        f"{INDENT}StrictHostKeyChecking no",
        f"{INDENT}UserKnownHostsFile /dev/null",
    ]
    lines.extend(f"{INDENT}{key} {value}" for key, value in KEEPALIVE_OPTIONS)
    return lines


class SshConfigFile:
    """Add-or-upgrade editor for one SSH client config file."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or default_config_path()

    def _read(self) -> list[str]:
        if not self.path.exists():
            return []
        return self.path.read_text().splitlines()

    def _write(self, lines: list[str]) -> None:
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.path.write_text("\n".join(lines) + "\n" if lines else "")

    @staticmethod
    def _find(lines: list[str], name: str) -> _Block | None:
        start: int | None = None
        for i, line in enumerate(lines):
            section = _SECTION_RE.match(line)
            if not section:
                continue
            if start is not None:
                return _Block(start, i)
            if section.group(1).lower() == "host" and name in section.group(2).split():
                start = i
        return _Block(start, len(lines)) if start is not None else None

    def claimed_ports(self) -> set[int]:
        ports: set[int] = set()
        for line in self._read():
            if match := _PORT_RE.match(line):
                ports.add(int(match.group(1)))
        return ports

    def allocate_port(self) -> int:
        """First port at or above 2222 not claimed by any ``Port`` line."""
        claimed = self.claimed_ports()
        port = FIRST_SSH_PORT
        while port in claimed:
            port += 1
        return port

    def has_entry(self, name: str) -> bool:
        return self._find(self._read(), name) is not None

    def ensure(self, entry: SshHostEntry) -> SshConfigChange:
        """Add the host block, or upgrade an existing one with missing keepalives."""
        lines = self._read()
        block = self._find(lines, entry.name)

        if block is None:
            port = entry.port or self.allocate_port()
            if lines and lines[-1].strip():
                lines.append("")
            lines.extend(render_block(entry, port))
            self._write(lines)
            log.info("Added SSH entry for {name} on port {port}", name=entry.name, port=port)
            return SshConfigChange.ADDED

        body = lines[block.start + 1:block.end]
        present = {d for line in body if (d := _directive(line))}
        missing = [(k, v) for k, v in KEEPALIVE_OPTIONS if k.lower() not in present]
        if not missing:
            return SshConfigChange.UNCHANGED

        # After the block's last directive, ahead of any trailing blanks/comments
        insert_at = block.start + 1
        for offset, line in enumerate(body):
            if _directive(line):
                insert_at = block.start + 1 + offset + 1
        lines[insert_at:insert_at] = [f"{INDENT}{k} {v}" for k, v in missing]
        self._write(lines)
        log.info(
            "Upgraded SSH entry for {name}: added {keys}",
            name=entry.name, keys=", ".join(k for k, _ in missing),
        )
        return SshConfigChange.UPGRADED

    def remove(self, name: str) -> bool:
        """Delete the host block (and its generated comment). Returns ``True`` if found."""
        lines = self._read()
        block = self._find(lines, name)
        if block is None:
            return False

        start = block.start
        if start > 0 and lines[start - 1].strip() == SSH_ENTRY_COMMENT:
            start -= 1
        del lines[start:block.end]
        while lines and not lines[-1].strip():
            lines.pop()
        self._write(lines)
        log.info("Removed SSH entry for {name}", name=name)
        return True
