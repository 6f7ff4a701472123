"""Local SSH keypair and the instance ``ssh-keys`` metadata value."""

from __future__ import annotations

import getpass
import os
from dataclasses import dataclass, field
from pathlib import Path

import paramiko
from loguru import logger

from devbox.constants import SSH_KEY_NAME
from devbox.models import SshKey

log = logger.bind(component="ssh_keys")

RSA_BITS = 3072
SSH_KEYS_METADATA = "ssh-keys"


def default_key_path() -> Path:
    return Path.home() / ".ssh" / SSH_KEY_NAME


@dataclass(frozen=True, slots=True)
class LocalKeyPair:
    """The developer's keypair used for IAP SSH (the one ``gcloud`` also uses).

    Attributes:
        path: Private key path; the public key lives at ``<path>.pub``.
        user: Remote login user the key is registered for.
    """

    path: Path = field(default_factory=default_key_path)
    user: str = field(default_factory=getpass.getuser)

    @property
    def public_path(self) -> Path:
        return self.path.with_name(self.path.name + ".pub")

    def exists(self) -> bool:
        return self.path.exists() and self.public_path.exists()

    def ensure(self) -> SshKey:
        """Return the public key, generating the pair first if it is missing."""
        if not self.exists():
            self._generate()
        return SshKey(user=self.user, public_key=self.public_path.read_text().strip())

    def _generate(self) -> None:
        log.info("Generating SSH keypair at {path}", path=self.path)
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        key = paramiko.RSAKey.generate(RSA_BITS)
        key.write_private_key_file(str(self.path))
        os.chmod(self.path, 0o600)

        self.public_path.write_text(f"{key.get_name()} {key.get_base64()} {self.user}\n")


def merge_ssh_keys(existing: str, key: SshKey) -> str | None:
    """Append ``key`` to a newline-separated ``user:key`` list.

    Returns ``None`` when the exact public key string is already present,
    so callers can skip the metadata write entirely.
    """
    public_key = key.public_key.strip()
    entries = [line for line in existing.splitlines() if line.strip()]

    for entry in entries:
        _, _, registered = entry.partition(":")
        if registered.strip() == public_key:
            return None

    entries.append(key.render())
    return "\n".join(entries)
