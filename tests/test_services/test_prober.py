"""Tests for SSH test connections."""

import asyncio
import base64
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import pytest

from workspace_ssh.config.parser import SSHConfigStore
from workspace_ssh.errors import SSHError, SSHHandshakeTimeout
from workspace_ssh.models import HostKeyRecord, IdentityKey, ProbeConfig, fingerprint
from workspace_ssh.services.prober import (
    PASSWORD_RETRY_COUNT,
    AuthNegotiatingClient,
    HostKeyVerifyingClient,
    SSHProber,
    hop_options,
)

JUMP_CONFIG = """
Host jump1
    HostName 10.0.0.1
    User ops
    Port 2022

Host ws-1.ssh.example.com
    ProxyJump jump1,admin@jump2:2200
"""


class FakeSSH:
    """Stands in for asyncssh.connect and records every call."""

    def __init__(self, host_key: asyncssh.SSHKey, error: Exception | None = None):
        self.host_key = host_key
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.connections: list[MagicMock] = []

    async def connect(self, host: str, port: int = 22, tunnel: Any = None, **options: Any) -> Any:
        self.calls.append({"host": host, "port": port, "tunnel": tunnel, **options})
        client = options["client_factory"]()
        if isinstance(client, HostKeyVerifyingClient):
            if self.error is not None:
                raise self.error
            if not client.validate_host_public_key(host, "", port, self.host_key):
                raise asyncssh.HostKeyNotVerifiable("Host key is not trusted")
        conn = MagicMock(name=f"conn-{host}")
        conn.wait_closed = AsyncMock()
        self.connections.append(conn)
        return conn


@pytest.fixture
def host_key() -> asyncssh.SSHKey:
    """Public half of the workspace host key."""
    return asyncssh.generate_private_key("ssh-ed25519").convert_to_public()


@pytest.fixture
def trusted(host_key: asyncssh.SSHKey) -> list[HostKeyRecord]:
    """Records published by the workspace."""
    return [HostKeyRecord("ssh-ed25519", base64.b64encode(host_key.public_data).decode())]


@pytest.fixture(autouse=True)
def no_agent(monkeypatch: pytest.MonkeyPatch) -> None:
    """Tests never talk to a real SSH agent."""
    monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)


def _probe_config(**kwargs: Any) -> ProbeConfig:
    defaults: dict[str, Any] = {
        "host": "ws-1.ssh.example.com",
        "username": "ws-1",
        "password": "owner-token",
    }
    defaults.update(kwargs)
    return ProbeConfig(**defaults)


class TestTestConnection:
    """Tests for SSHProber.test_connection."""

    @pytest.mark.asyncio
    async def test_direct_connection_returns_verified_key(
        self, host_key: asyncssh.SSHKey, trusted: list[HostKeyRecord]
    ) -> None:
        """A published key is accepted and returned; the connection is closed."""
        fake = FakeSSH(host_key)

        with patch("workspace_ssh.services.prober.asyncssh.connect", fake.connect):
            result = await SSHProber().test_connection(
                _probe_config(), trusted, SSHConfigStore.parse("")
            )

        assert result == host_key.public_data
        call = fake.calls[0]
        assert call["host"] == "ws-1.ssh.example.com"
        assert call["port"] == 22
        assert call["username"] == "ws-1"
        assert call["password"] == "owner-token"
        assert call["known_hosts"] == ([], [], [])
        assert call["tunnel"] is None
        fake.connections[0].close.assert_called_once()

    @pytest.mark.asyncio
    async def test_unpublished_host_key_rejected(self, host_key: asyncssh.SSHKey) -> None:
        """A server key not in the published records fails the probe."""
        other = asyncssh.generate_private_key("ssh-ed25519").convert_to_public()
        records = [HostKeyRecord("ssh-ed25519", base64.b64encode(other.public_data).decode())]
        fake = FakeSSH(host_key)

        with patch("workspace_ssh.services.prober.asyncssh.connect", fake.connect):
            with pytest.raises(SSHError):
                await SSHProber().test_connection(
                    _probe_config(), records, SSHConfigStore.parse("")
                )

    @pytest.mark.asyncio
    async def test_proxy_jump_chain(
        self, host_key: asyncssh.SSHKey, trusted: list[HostKeyRecord]
    ) -> None:
        """Each hop tunnels through the previous; only the outermost is closed."""
        fake = FakeSSH(host_key)

        with (
            patch("workspace_ssh.services.prober.asyncssh.connect", fake.connect),
            patch(
                "workspace_ssh.services.prober.identity.gather",
                AsyncMock(return_value=[]),
            ),
        ):
            result = await SSHProber().test_connection(
                _probe_config(), trusted, SSHConfigStore.parse(JUMP_CONFIG)
            )

        assert result == host_key.public_data
        first, second, final = fake.calls
        assert (first["host"], first["port"], first["username"]) == ("10.0.0.1", 2022, "ops")
        assert first["tunnel"] is None
        assert first["known_hosts"] is None
        assert first["client_keys"] is None
        assert first["agent_path"] is None
        assert (second["host"], second["port"], second["username"]) == ("jump2", 2200, "admin")
        assert second["tunnel"] is fake.connections[0]
        assert final["tunnel"] is fake.connections[1]

        outer, inner, target = fake.connections
        outer.close.assert_called_once()
        inner.close.assert_not_called()
        target.close.assert_not_called()

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, trusted: list[HostKeyRecord]) -> None:
        """A handshake slower than ready_timeout raises SSHHandshakeTimeout."""

        async def slow_connect(*args: Any, **kwargs: Any) -> Any:
            await asyncio.sleep(10)

        with patch("workspace_ssh.services.prober.asyncssh.connect", slow_connect):
            with pytest.raises(SSHHandshakeTimeout) as exc_info:
                await SSHProber().test_connection(
                    _probe_config(ready_timeout=0.01), trusted, SSHConfigStore.parse("")
                )

        assert exc_info.value.host == "ws-1.ssh.example.com"

    @pytest.mark.asyncio
    async def test_auth_rejected(
        self, host_key: asyncssh.SSHKey, trusted: list[HostKeyRecord]
    ) -> None:
        """Authentication failure is reported as SSHError, not a timeout."""
        fake = FakeSSH(host_key, error=asyncssh.PermissionDenied("denied"))

        with patch("workspace_ssh.services.prober.asyncssh.connect", fake.connect):
            with pytest.raises(SSHError, match="authentication methods failed") as exc_info:
                await SSHProber().test_connection(
                    _probe_config(), trusted, SSHConfigStore.parse("")
                )

        assert not isinstance(exc_info.value, SSHHandshakeTimeout)

    @pytest.mark.asyncio
    async def test_hop_failure_closes_opened_hops(
        self, host_key: asyncssh.SSHKey, trusted: list[HostKeyRecord]
    ) -> None:
        """When the final handshake fails the opened jump chain is closed."""
        fake = FakeSSH(host_key, error=OSError("connection reset"))

        with (
            patch("workspace_ssh.services.prober.asyncssh.connect", fake.connect),
            patch(
                "workspace_ssh.services.prober.identity.gather",
                AsyncMock(return_value=[]),
            ),
        ):
            with pytest.raises(SSHError):
                await SSHProber().test_connection(
                    _probe_config(), trusted, SSHConfigStore.parse(JUMP_CONFIG)
                )

        fake.connections[0].close.assert_called_once()
        fake.connections[0].wait_closed.assert_awaited_once()


class TestAuthNegotiatingClient:
    """Tests for per-hop authentication callbacks."""

    def _identity(self, agent: bool = False) -> tuple[IdentityKey, asyncssh.SSHKey]:
        private = asyncssh.generate_private_key("ssh-ed25519")
        public = private.convert_to_public()
        key = IdentityKey(
            "~/.ssh/id",
            public,
            fingerprint(public.public_data),
            agent_support=agent,
            is_private=not agent,
            private_key=None if agent else private,
        )
        return key, private

    @pytest.mark.asyncio
    async def test_agent_key_preferred(self) -> None:
        """Agent-backed identities authenticate through the agent key pair."""
        key, _ = self._identity(agent=True)
        agent_pair = object()
        client = AuthNegotiatingClient("u", "h", [key], {key.fingerprint: agent_pair}, None)

        assert await client.public_key_auth_requested() is agent_pair
        assert await client.public_key_auth_requested() is None

    @pytest.mark.asyncio
    async def test_unencrypted_private_key_used(self) -> None:
        """Private keys loaded at gather time are offered directly."""
        key, private = self._identity()
        client = AuthNegotiatingClient("u", "h", [key], {}, None)

        assert await client.public_key_auth_requested() is private

    @pytest.mark.asyncio
    async def test_password_retries_bounded(self) -> None:
        """The password prompt is shown at most PASSWORD_RETRY_COUNT times."""
        prompter = MagicMock()
        prompter.prompt = AsyncMock(return_value="secret")
        client = AuthNegotiatingClient("u", "h", [], {}, prompter)

        answers = [await client.password_auth_requested() for _ in range(PASSWORD_RETRY_COUNT + 1)]

        assert answers == ["secret"] * PASSWORD_RETRY_COUNT + [None]
        assert prompter.prompt.await_count == PASSWORD_RETRY_COUNT

    @pytest.mark.asyncio
    async def test_no_prompter_skips_interactive_methods(self) -> None:
        """Without a prompter there is nothing to answer with."""
        client = AuthNegotiatingClient("u", "h", [], {}, None)

        assert await client.password_auth_requested() is None
        assert await client.kbdint_auth_requested() is None

    @pytest.mark.asyncio
    async def test_kbdint_cancel_stops_retries(self) -> None:
        """Dismissing a keyboard-interactive prompt ends that method."""
        prompter = MagicMock()
        prompter.prompt = AsyncMock(return_value=None)
        client = AuthNegotiatingClient("u", "h", [], {}, prompter)

        assert await client.kbdint_auth_requested() == ""
        assert await client.kbdint_challenge_received("", "", "", [("Code: ", False)]) is None
        assert await client.kbdint_auth_requested() is None

    @pytest.mark.asyncio
    async def test_kbdint_answers_prompts(self) -> None:
        """Each challenge prompt is answered in order."""
        prompter = MagicMock()
        prompter.prompt = AsyncMock(side_effect=["123456", "yes"])
        client = AuthNegotiatingClient("u", "h", [], {}, prompter)

        answers = await client.kbdint_challenge_received(
            "", "", "", [("Code: ", False), ("Trust? ", True)]
        )

        assert answers == ["123456", "yes"]
        assert prompter.prompt.await_args_list[1].kwargs == {"password": False}


class TestHopOptions:
    """Tests for the options each jump connection is opened with."""

    @pytest.fixture
    def home_with_default_key(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
        """A home directory holding a default identity file."""
        ssh_dir = tmp_path / ".ssh"
        ssh_dir.mkdir()
        asyncssh.generate_private_key("ssh-ed25519").write_private_key(ssh_dir / "id_ed25519")
        monkeypatch.setenv("HOME", str(tmp_path))
        return tmp_path

    def test_default_keys_not_loaded(self, home_with_default_key: Path) -> None:
        """asyncssh loads no keys of its own; the client supplies them in order."""
        client = AuthNegotiatingClient("ops", "jump1", [], {}, None)

        options = asyncssh.SSHClientConnectionOptions(**hop_options(client, "ops", None))

        assert options.client_keys is None
        assert options.agent_path is None
        assert options.agent_forward_path is None
        assert options.username == "ops"

    def test_agent_only_forwarded(self, home_with_default_key: Path) -> None:
        """ForwardAgent forwards the configured socket without offering its keys first."""
        client = AuthNegotiatingClient("ops", "jump1", [], {}, None)

        options = asyncssh.SSHClientConnectionOptions(
            **hop_options(client, None, "/tmp/agent.sock")
        )

        assert options.client_keys is None
        assert options.agent_path is None
        assert options.agent_forward_path == "/tmp/agent.sock"
