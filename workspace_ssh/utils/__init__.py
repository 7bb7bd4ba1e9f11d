"""Utility modules."""

from workspace_ssh.utils.cancellation import (
    NONE,
    CancellationToken,
    CancellationTokenSource,
)
from workspace_ssh.utils.native_ssh import get_openssh_version, verify_ssh_connection
from workspace_ssh.utils.ping import check_host_online
from workspace_ssh.utils.process import (
    IS_WINDOWS,
    find_free_port,
    is_process_running,
    kill_process,
    platform_binary_suffix,
    untildify,
)

__all__ = [
    "IS_WINDOWS",
    "NONE",
    "CancellationToken",
    "CancellationTokenSource",
    "check_host_online",
    "find_free_port",
    "get_openssh_version",
    "is_process_running",
    "kill_process",
    "platform_binary_suffix",
    "untildify",
    "verify_ssh_connection",
]
