"""Application settings from environment variables.

Centralized environment variable parsing and validation.
"""

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Application settings from environment.

    Handles parsing, validation, and defaults for all env vars.
    """

    # Service
    host: str = field(default="")
    token: str | None = field(default=None)
    use_public_api: bool = field(default=False)

    # SSH client files
    ssh_config_path: str | None = field(default=None)
    known_hosts_path: str | None = field(default=None)
    handshake_timeout: int = field(default=40)

    # Local helper
    installation_path: str | None = field(default=None)
    use_local_app: bool = field(default=False)
    helper_verbose: bool = field(default=False)
    helper_timeout: str = field(default="3h")
    auth_redirect_url: str = field(default="")

    # Local SSH proxy
    local_ssh_proxy: bool = field(default=False)
    proxy_command: str = field(default="")
    local_ssh_scope: str = field(default="vss")
    ipc_port: int = field(default=43025)
    verify_local_ssh: bool = field(default=False)
    ssh_path: str = field(default="ssh")

    # Shared state
    state_dir: str = field(
        default_factory=lambda: os.path.join(os.path.expanduser("~"), ".workspace_ssh", "state")
    )

    # Transport
    transport: str = field(default="http")
    http_host: str = field(default="127.0.0.1")
    http_port: int = field(default=8000)

    # Logging
    log_level: str = field(default="INFO")
    log_colors: bool = field(default=True)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from WSSH_* environment variables.

        Returns:
            Settings instance with values from environment
        """
        defaults = cls()
        return cls(
            host=os.getenv("WSSH_HOST", "").strip(),
            token=os.getenv("WSSH_TOKEN") or None,
            use_public_api=cls._get_bool("WSSH_USE_PUBLIC_API", False),
            ssh_config_path=os.getenv("WSSH_SSH_CONFIG") or None,
            known_hosts_path=os.getenv("WSSH_KNOWN_HOSTS") or None,
            handshake_timeout=cls._get_int("WSSH_HANDSHAKE_TIMEOUT", 40),
            installation_path=os.getenv("WSSH_INSTALLATION_PATH") or None,
            use_local_app=cls._get_bool("WSSH_USE_LOCAL_APP", False),
            helper_verbose=cls._get_bool("WSSH_VERBOSE", False),
            helper_timeout=os.getenv("WSSH_HELPER_TIMEOUT", "3h"),
            auth_redirect_url=os.getenv("WSSH_AUTH_REDIRECT_URL", ""),
            local_ssh_proxy=cls._get_bool("WSSH_LOCAL_SSH_PROXY", False),
            proxy_command=os.getenv("WSSH_PROXY_COMMAND", ""),
            local_ssh_scope=os.getenv("WSSH_LOCAL_SSH_SCOPE", "vss"),
            ipc_port=cls._get_int("WSSH_IPC_PORT", 43025),
            verify_local_ssh=cls._get_bool("WSSH_VERIFY_LOCAL_SSH", False),
            ssh_path=os.getenv("WSSH_SSH_PATH") or "ssh",
            state_dir=os.getenv("WSSH_STATE_DIR") or defaults.state_dir,
            transport=cls._get_transport(),
            http_host=os.getenv("WSSH_HTTP_HOST", "127.0.0.1"),
            http_port=cls._get_int("WSSH_HTTP_PORT", 8000),
            log_level=os.getenv("WSSH_LOG_LEVEL", "INFO").upper(),
            log_colors=cls._get_bool("WSSH_LOG_COLORS", True),
        )

    @property
    def local_ssh_supported(self) -> bool:
        """Local SSH proxy strategy is enabled and has a proxy command."""
        return self.local_ssh_proxy and bool(self.proxy_command)

    @staticmethod
    def _get_int(key: str, default: int) -> int:
        """Get integer from environment.

        Args:
            key: Environment variable key
            default: Default value if not set

        Returns:
            Integer value from environment or default
        """
        value = os.getenv(key)
        if value is None:
            return default

        try:
            return int(value)
        except ValueError:
            logger.warning("Invalid int for %s: %s, using default %d", key, value, default)
            return default

    @staticmethod
    def _get_bool(key: str, default: bool) -> bool:
        """Get boolean from environment."""
        value = os.getenv(key)
        if value is None:
            return default
        return value.lower() in ("1", "true", "yes", "on")

    @staticmethod
    def _get_transport() -> str:
        """Get transport ("http" or "stdio"), defaulting to http."""
        transport = os.getenv("WSSH_TRANSPORT", "").lower()
        if transport in ("http", "stdio"):
            return transport
        return "http"
