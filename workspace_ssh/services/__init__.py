"""Services for workspace_ssh."""

from workspace_ssh.services.features import ServiceVersion, VersionCache, is_feature_supported
from workspace_ssh.services.helper import HelperClient, LocalHelperSupervisor
from workspace_ssh.services.locks import Lease, LockCoordinator
from workspace_ssh.services.prober import SSHProber
from workspace_ssh.services.resolver import DestinationResolver, ResolvedDestination
from workspace_ssh.services.store import JsonFileStore, MemoryStore

__all__ = [
    "DestinationResolver",
    "HelperClient",
    "JsonFileStore",
    "Lease",
    "LocalHelperSupervisor",
    "LockCoordinator",
    "MemoryStore",
    "ResolvedDestination",
    "SSHProber",
    "ServiceVersion",
    "VersionCache",
    "is_feature_supported",
]
