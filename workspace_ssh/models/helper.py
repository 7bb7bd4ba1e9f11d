"""Local helper and lock records persisted in the shared store."""

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class LocalHelperInstallation:
    """An installed helper binary."""

    binary_path: str
    etag: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "LocalHelperInstallation | None":
        if not isinstance(data, dict) or "binary_path" not in data:
            return None
        return cls(binary_path=data["binary_path"], etag=data.get("etag"))


@dataclass(frozen=True)
class LocalHelperConfig:
    """A running helper instance; valid only while pid is alive."""

    host: str
    ssh_config_path: str
    api_port: int
    pid: int
    log_path: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "LocalHelperConfig | None":
        if not isinstance(data, dict):
            return None
        try:
            return cls(
                host=data["host"],
                ssh_config_path=data["ssh_config_path"],
                api_port=int(data["api_port"]),
                pid=int(data["pid"]),
                log_path=data["log_path"],
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class Lock:
    """Advisory lease in the shared store.

    Deadline is epoch milliseconds.
    """

    value: str
    deadline: float
    pid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "Lock | None":
        if not isinstance(data, dict) or "value" not in data:
            return None
        try:
            return cls(
                value=str(data["value"]),
                deadline=float(data["deadline"]),
                pid=data.get("pid"),
            )
        except (KeyError, TypeError, ValueError):
            return None
