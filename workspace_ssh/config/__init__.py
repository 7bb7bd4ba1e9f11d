"""Configuration module for workspace_ssh.

Provides focused classes for different configuration concerns:
- SSHConfigStore: Parses and updates SSH client config files
- KnownHostsFile: Persists trusted host keys
- Settings: Environment variable configuration
"""

from workspace_ssh.config.host_keys import KnownHostsFile
from workspace_ssh.config.parser import SSHConfigStore
from workspace_ssh.config.settings import Settings

__all__ = ["KnownHostsFile", "SSHConfigStore", "Settings"]
