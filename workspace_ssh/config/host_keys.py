"""known_hosts persistence.

Trusted workspace host keys are stored as hashed entries
(``|1|salt|hmac host``) so the file does not leak workspace names.
"""

import base64
import hashlib
import hmac
import logging
import os
from pathlib import Path

from asyncssh.public_key import decode_ssh_public_key

logger = logging.getLogger(__name__)

HASH_MAGIC = "|1|"
HASH_DELIM = "|"
SALT_SIZE = 20


def hash_host(host: str, salt: bytes) -> bytes:
    """HMAC-SHA1 of a host name keyed by salt, as used by ssh-keygen -H."""
    return hmac.new(salt, host.encode("utf-8"), hashlib.sha1).digest()


def format_entry(host: str, key_type: str, key_blob: bytes, salt: bytes | None = None) -> str:
    """Build one hashed known_hosts line (without newline)."""
    if salt is None:
        salt = os.urandom(SALT_SIZE)
    host_hash = hash_host(host, salt)
    return (
        f"{HASH_MAGIC}{base64.b64encode(salt).decode()}{HASH_DELIM}"
        f"{base64.b64encode(host_hash).decode()} "
        f"{key_type} {base64.b64encode(key_blob).decode()}"
    )


class KnownHostsFile:
    """Reads and appends hashed entries in a known_hosts file."""

    def __init__(self, path: Path | str | None = None):
        """Initialize known_hosts access.

        Args:
            path: Path to known_hosts (default: ~/.ssh/known_hosts)
        """
        if path is None:
            path = Path.home() / ".ssh" / "known_hosts"
        self.path = Path(os.path.expanduser(str(path)))

    def is_new_host(self, host: str) -> bool:
        """Check whether no hashed entry matches host.

        Plain-text entries are ignored; only hashed lines are compared.

        Returns:
            True if host is not present (or the file does not exist)
        """
        if not self.path.exists():
            return True

        content = self.path.read_text(encoding="utf-8")
        for line in content.splitlines():
            line = line.strip()
            if not line.startswith(HASH_MAGIC):
                continue
            hashed = line.split(" ", 1)[0][len(HASH_MAGIC):]
            salt_b64, _, hash_b64 = hashed.partition(HASH_DELIM)
            try:
                salt = base64.b64decode(salt_b64)
            except ValueError:
                logger.debug("Skipping malformed known_hosts entry")
                continue
            expected = base64.b64encode(hash_host(host, salt)).decode()
            if hmac.compare_digest(expected, hash_b64):
                return False

        return True

    def add_host(self, host: str, key_blob: bytes, key_type: str | None = None) -> None:
        """Append a hashed entry for host.

        Args:
            host: Host name as the SSH client will look it up
            key_blob: Raw SSH public key blob
            key_type: Key algorithm; derived from the blob when omitted
        """
        if key_type is None:
            key_type = decode_ssh_public_key(key_blob).get_algorithm()

        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(format_entry(host, key_type, key_blob) + "\n")
        logger.info("Added host key for %s to %s", host, self.path)

    def add_host_if_new(self, host: str, key_blob: bytes, key_type: str | None = None) -> bool:
        """Append an entry unless host is already known.

        Returns:
            True if an entry was written
        """
        if not self.is_new_host(host):
            logger.debug("Host %s already in %s", host, self.path)
            return False
        self.add_host(host, key_blob, key_type)
        return True
