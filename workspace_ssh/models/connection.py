"""Connection request and destination models."""

import json
from dataclasses import asdict, dataclass
from typing import Any
from urllib.parse import urlparse


@dataclass(frozen=True)
class ConnectionParams:
    """Identifies the workspace a connection attempt targets."""

    workspace_id: str
    instance_id: str
    host: str
    debug_workspace: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the shared store."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConnectionParams":
        """Rebuild from a stored record, ignoring bookkeeping fields."""
        return cls(
            workspace_id=data["workspace_id"],
            instance_id=data["instance_id"],
            host=data["host"],
            debug_workspace=bool(data.get("debug_workspace", False)),
        )


@dataclass(frozen=True)
class WorkspaceStatus:
    """Snapshot of a workspace's latest instance."""

    workspace_id: str
    instance_id: str | None
    phase: str
    workspace_url: str
    owner_id: str | None = None

    @property
    def is_running(self) -> bool:
        return self.phase == "running"


def host_authority(host: str) -> str:
    """Return the authority part of a service URL.

    Args:
        host: Service URL such as ``https://example.com/``

    Returns:
        ``example.com`` (with port when present)
    """
    parsed = urlparse(host if "://" in host else f"https://{host}")
    return parsed.netloc


def service_url(host: str) -> str:
    """Normalise a service URL by dropping the trailing slash."""
    return host.rstrip("/")


@dataclass(frozen=True)
class SSHDestination:
    """Final connectable SSH target."""

    hostname: str
    user: str | None = None
    port: int | None = None

    @classmethod
    def parse(cls, dest: str) -> "SSHDestination":
        """Parse ``[user@]hostname[:port]``."""
        user: str | None = None
        at_pos = dest.rfind("@")
        if at_pos != -1:
            user = dest[:at_pos]

        port: int | None = None
        colon_pos = dest.rfind(":")
        if colon_pos != -1 and colon_pos > at_pos:
            try:
                port = int(dest[colon_pos + 1 :])
            except ValueError:
                port = None
        else:
            colon_pos = -1

        start = at_pos + 1 if at_pos != -1 else 0
        end = colon_pos if colon_pos != -1 else len(dest)
        return cls(dest[start:end], user, port)

    def __str__(self) -> str:
        result = self.hostname
        if self.user:
            result = f"{self.user}@{result}"
        if self.port:
            result = f"{result}:{self.port}"
        return result

    def encode(self) -> str:
        """Encode for the editor's remote authority.

        Plain hostname when there is nothing else to carry, otherwise the
        hex of a compact JSON object.
        """
        if self.user is None and self.port is None:
            return self.hostname

        obj: dict[str, Any] = {"hostName": self.hostname}
        if self.user is not None:
            obj["user"] = self.user
        if self.port is not None:
            obj["port"] = self.port
        return json.dumps(obj, separators=(",", ":")).encode("utf-8").hex()

    @classmethod
    def decode(cls, encoded: str) -> "SSHDestination":
        """Inverse of encode(); falls back to a plain hostname."""
        try:
            data = json.loads(bytes.fromhex(encoded).decode("utf-8"))
        except ValueError:
            return cls(encoded)
        if not isinstance(data, dict) or "hostName" not in data:
            return cls(encoded)
        return cls(data["hostName"], data.get("user"), data.get("port"))
