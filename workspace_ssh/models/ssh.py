"""SSH credential and host key models."""

import base64
import hashlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import asyncssh


@dataclass(frozen=True)
class HostKeyRecord:
    """Trusted host key published by a workspace."""

    type: str
    host_key: str  # base64 public key blob

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HostKeyRecord":
        return cls(type=data["type"], host_key=data["host_key"])


@dataclass
class IdentityKey:
    """Candidate SSH credential sourced from a file or an agent.

    ``private_key`` is set when the entry was loaded from an unencrypted
    private key file rather than its ``.pub`` companion.
    """

    filename: str
    public_key: "asyncssh.SSHKey"
    fingerprint: str
    agent_support: bool = False
    is_private: bool = False
    private_key: Any = field(default=None, repr=False, compare=False)

    @property
    def key_type(self) -> str:
        """SSH algorithm name, e.g. ``ssh-ed25519``."""
        return self.public_key.get_algorithm()


@dataclass(frozen=True)
class RegisteredKey:
    """Public key registered with the user's account on the service."""

    name: str
    fingerprint: str


@dataclass
class ProbeConfig:
    """Target of an SSH test connection."""

    host: str
    username: str
    port: int = 22
    password: str | None = None
    ready_timeout: float = 40.0


def fingerprint(public_blob: bytes) -> str:
    """Base64 SHA-256 of an SSH public key blob (padded, no ``SHA256:`` prefix)."""
    return base64.b64encode(hashlib.sha256(public_blob).digest()).decode()


def normalize_fingerprint(value: str) -> str:
    """Strip the ``SHA256:`` prefix and base64 padding for comparison."""
    if value.startswith("SHA256:"):
        value = value[len("SHA256:"):]
    return value.rstrip("=")
