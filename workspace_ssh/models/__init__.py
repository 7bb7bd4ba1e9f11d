"""Data models for workspace_ssh."""

from workspace_ssh.models.connection import (
    ConnectionParams,
    SSHDestination,
    WorkspaceStatus,
    host_authority,
    service_url,
)
from workspace_ssh.models.helper import Lock, LocalHelperConfig, LocalHelperInstallation
from workspace_ssh.models.ssh import (
    HostKeyRecord,
    IdentityKey,
    ProbeConfig,
    RegisteredKey,
    fingerprint,
    normalize_fingerprint,
)

__all__ = [
    "ConnectionParams",
    "HostKeyRecord",
    "IdentityKey",
    "LocalHelperConfig",
    "LocalHelperInstallation",
    "Lock",
    "ProbeConfig",
    "RegisteredKey",
    "SSHDestination",
    "WorkspaceStatus",
    "fingerprint",
    "host_authority",
    "normalize_fingerprint",
    "service_url",
]
