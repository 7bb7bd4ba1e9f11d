"""SSH test connections.

Performs a real SSH handshake against a workspace, walking any ProxyJump
chain from the SSH config, and only trusts the host key the workspace
published. The verified key bytes are returned so callers can persist
them to known_hosts.
"""

import asyncio
import base64
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import asyncssh

from workspace_ssh.config.parser import SSHConfigStore
from workspace_ssh.errors import SSHError, SSHHandshakeTimeout
from workspace_ssh.models import HostKeyRecord, IdentityKey, ProbeConfig, SSHDestination
from workspace_ssh.protocols import Prompter
from workspace_ssh.services import identity
from workspace_ssh.services.identity import get_agent_socket

logger = logging.getLogger(__name__)

PASSWORD_RETRY_COUNT = 3
PASSPHRASE_RETRY_COUNT = 3
HOP_TIMEOUT = 90.0


def _yes(value: Any) -> bool:
    return isinstance(value, str) and value.lower() == "yes"


def _port(value: Any) -> int | None:
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except ValueError:
            return None
    return None


def hop_options(
    client: asyncssh.SSHClient, username: str | None, forward_agent_path: str | None
) -> dict[str, Any]:
    """Connection options for one ProxyJump hop.

    ``client_keys=None`` leaves asyncssh with no keys of its own, so every
    key comes from the client's ordered ``public_key_auth_requested``.
    The agent is only used as a forwarding source.
    """
    options: dict[str, Any] = {
        "client_factory": lambda: client,
        "known_hosts": None,
        "client_keys": None,
        "agent_path": None,
        "agent_forwarding": forward_agent_path or False,
        "preferred_auth": "publickey,password,keyboard-interactive",
        "gss_host": None,
        "config": [],
    }
    if username:
        options["username"] = username
    return options


class HostKeyVerifyingClient(asyncssh.SSHClient):
    """Accepts only server keys present in the published records."""

    def __init__(self, trusted: Sequence[HostKeyRecord]):
        self._trusted = {record.host_key for record in trusted}
        self.verified_host_key: bytes | None = None

    def validate_host_public_key(
        self, host: str, addr: str, port: int, key: asyncssh.SSHKey
    ) -> bool:
        blob = key.public_data
        encoded = base64.b64encode(blob).decode()
        if encoded in self._trusted:
            self.verified_host_key = blob
            return True
        logger.warning("Host key for %s did not match any published key", host)
        return False


class AuthNegotiatingClient(asyncssh.SSHClient):
    """Per-connection authentication: agent key, file key, password, keyboard-interactive.

    Secrets are requested through the prompter; a missing prompter skips
    the methods that need one.
    """

    def __init__(
        self,
        username: str,
        hostname: str,
        identities: Sequence[IdentityKey],
        agent_keys: dict[str, Any],
        prompter: Prompter | None,
    ):
        self._username = username
        self._hostname = hostname
        self._identities = list(identities)
        self._agent_keys = agent_keys
        self._prompter = prompter
        self._password_retries = PASSWORD_RETRY_COUNT
        self._kbdint_retries = PASSWORD_RETRY_COUNT

    async def _prompt(self, title: str, password: bool = True) -> str | None:
        if self._prompter is None:
            return None
        return await self._prompter.prompt(title, password=password)

    async def public_key_auth_requested(self) -> Any:
        while self._identities:
            key = self._identities.pop(0)
            logger.info(
                "Trying publickey authentication: %s %s SHA256:%s",
                key.filename,
                key.key_type,
                key.fingerprint,
            )
            if key.agent_support:
                agent_key = self._agent_keys.get(key.fingerprint)
                if agent_key is not None:
                    return agent_key
            if key.is_private and key.private_key is not None:
                return key.private_key

            private_key = await self._load_private_key(key.filename)
            if private_key is not None:
                return private_key
        return None

    async def _load_private_key(self, filename: str) -> asyncssh.SSHKey | None:
        path = Path(filename)
        if not path.is_file():
            return None
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.debug("Cannot read private key %s: %s", filename, e)
            return None

        try:
            return asyncssh.import_private_key(data)
        except asyncssh.KeyEncryptionError:
            pass
        except (asyncssh.KeyImportError, ValueError) as e:
            logger.debug("Cannot parse private key %s: %s", filename, e)
            return None

        for _ in range(PASSPHRASE_RETRY_COUNT):
            passphrase = await self._prompt(f"Enter passphrase for {filename}")
            if not passphrase:
                break
            try:
                return asyncssh.import_private_key(data, passphrase)
            except (asyncssh.KeyEncryptionError, asyncssh.KeyImportError, ValueError):
                logger.info("Wrong passphrase for %s", filename)
        return None

    async def password_auth_requested(self) -> str | None:
        if self._password_retries <= 0:
            return None
        if self._password_retries == PASSWORD_RETRY_COUNT:
            logger.info("Trying password authentication")
        self._password_retries -= 1
        return await self._prompt(f"Enter password for {self._username}@{self._hostname}")

    async def kbdint_auth_requested(self) -> str | None:
        if self._kbdint_retries <= 0 or self._prompter is None:
            return None
        if self._kbdint_retries == PASSWORD_RETRY_COUNT:
            logger.info("Trying keyboard-interactive authentication")
        return ""

    async def kbdint_challenge_received(
        self, name: str, instructions: str, lang: str, prompts: Sequence[tuple[str, bool]]
    ) -> list[str] | None:
        if not prompts:
            return []
        responses = []
        for prompt, echo in prompts:
            response = await self._prompt(
                f"({self._username}@{self._hostname}) {prompt}", password=not echo
            )
            if response is None:
                self._kbdint_retries = 0
                return None
            responses.append(response)
        self._kbdint_retries -= 1
        return responses


class SSHProber:
    """Runs SSH test connections."""

    def __init__(self, prompter: Prompter | None = None, hop_timeout: float = HOP_TIMEOUT):
        self.prompter = prompter
        self.hop_timeout = hop_timeout

    async def _agent_key_map(self, agent_socket: str | None) -> tuple[Any, dict[str, Any]]:
        if not agent_socket:
            return None, {}
        try:
            agent = await asyncssh.connect_agent(agent_socket)
        except (OSError, asyncssh.Error) as e:
            logger.debug("Cannot connect to SSH agent at %s: %s", agent_socket, e)
            return None, {}
        if agent is None:
            return None, {}
        try:
            key_pairs = await agent.get_keys()
        except (OSError, asyncssh.Error) as e:
            logger.debug("Cannot list SSH agent keys: %s", e)
            key_pairs = []
        keys = {identity.fingerprint(kp.public_data): kp for kp in key_pairs}
        return agent, keys

    async def _open(
        self,
        host: str,
        port: int,
        timeout: float,
        tunnel: asyncssh.SSHClientConnection | None,
        **options: Any,
    ) -> asyncssh.SSHClientConnection:
        try:
            return await asyncio.wait_for(
                asyncssh.connect(host, port=port, tunnel=tunnel, **options),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise SSHHandshakeTimeout(host, timeout) from e
        except asyncssh.PermissionDenied as e:
            raise SSHError(f"All configured authentication methods failed for {host}", e) from e
        except (asyncssh.Error, OSError) as e:
            raise SSHError(f"SSH connection to {host}:{port} failed: {e}", e) from e

    async def test_connection(
        self,
        config: ProbeConfig,
        trusted_host_keys: Sequence[HostKeyRecord],
        ssh_config: SSHConfigStore,
    ) -> bytes:
        """Open and close a verified SSH connection to the target.

        Args:
            config: Target host, user, password and handshake timeout
            trusted_host_keys: Host keys the workspace published
            ssh_config: SSH client configuration for ProxyJump resolution

        Returns:
            Raw bytes of the verified server host key

        Raises:
            SSHHandshakeTimeout: If a handshake does not complete in time
            SSHError: On any other connection or authentication failure
        """
        host_config = ssh_config.get_host_configuration(config.host)
        agent_socket = get_agent_socket(host_config)

        jumps: list[tuple[SSHDestination, dict[str, str | list[str]]]] = []
        proxy_jump = host_config.get("ProxyJump")
        if isinstance(proxy_jump, str) and proxy_jump.lower() != "none":
            for entry in proxy_jump.split(","):
                if not entry.strip():
                    continue
                dest = SSHDestination.parse(entry.strip())
                jumps.append((dest, ssh_config.get_host_configuration(dest.hostname)))

        connections: list[asyncssh.SSHClientConnection] = []
        agent = None
        agent_keys: dict[str, Any] = {}
        final: asyncssh.SSHClientConnection | None = None
        try:
            if jumps:
                agent, agent_keys = await self._agent_key_map(agent_socket)

            previous: asyncssh.SSHClientConnection | None = None
            for dest, hop_config in jumps:
                hostname = str(hop_config.get("HostName") or dest.hostname)
                port = _port(hop_config.get("Port")) or dest.port or 22
                user = hop_config.get("User") or dest.user
                forward_agent = _yes(hop_config.get("ForwardAgent"))
                identity_files = hop_config.get("IdentityFile") or []
                assert isinstance(identity_files, list)
                keys = await identity.gather(
                    identity_files,
                    agent_socket,
                    _yes(hop_config.get("IdentitiesOnly")),
                )

                client = AuthNegotiatingClient(
                    str(user or ""), hostname, keys, agent_keys, self.prompter
                )
                options = hop_options(
                    client, str(user) if user else None, agent_socket if forward_agent else None
                )

                logger.info("Opening jump connection to %s:%d", hostname, port)
                previous = await self._open(hostname, port, self.hop_timeout, previous, **options)
                connections.append(previous)

            verifier = HostKeyVerifyingClient(trusted_host_keys)
            final = await self._open(
                config.host,
                config.port,
                config.ready_timeout,
                previous,
                client_factory=lambda: verifier,
                known_hosts=([], [], []),
                username=config.username,
                password=config.password,
                client_keys=None,
                agent_path=None,
                config=[],
                preferred_auth="password",
                gss_host=None,
            )
        finally:
            outermost = connections[0] if connections else final
            if outermost is not None:
                outermost.close()
                await outermost.wait_closed()
            if agent is not None:
                agent.close()
                await agent.wait_closed()

        logger.info("SSH test connection to '%s' host successful", config.host)

        verified = verifier.verified_host_key
        if verified is None:
            server_key = final.get_server_host_key()
            verified = server_key.public_data if server_key is not None else b""
        return verified
