"""Tests for destination resolution."""

import base64
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import httpx
import pytest

from workspace_ssh.config.host_keys import KnownHostsFile
from workspace_ssh.config.settings import Settings
from workspace_ssh.errors import (
    Cancelled,
    LocalAppUnavailable,
    NoRunningInstance,
    NoSSHGateway,
    SSHError,
    SSHHandshakeTimeout,
    SSHOutputVerificationFailed,
)
from workspace_ssh.models import (
    ConnectionParams,
    IdentityKey,
    SSHDestination,
    WorkspaceStatus,
    fingerprint,
)
from workspace_ssh.services.features import MINIMUM, ServiceVersion
from workspace_ssh.services.helper import CONFIG_PREFIX
from workspace_ssh.services.resolver import (
    FAILURE_ACTIONS,
    SSH_DEST_PREFIX,
    STRATEGY_GATEWAY,
    STRATEGY_LOCAL_APP,
    STRATEGY_LOCAL_SSH,
    DestinationResolver,
)
from workspace_ssh.services.store import MemoryStore
from workspace_ssh.utils.cancellation import CancellationTokenSource
from workspace_ssh.utils.process import is_process_running

HOST = "https://example.com"
PARAMS = ConnectionParams("ws-1", "inst-1", HOST)
RUNNING = WorkspaceStatus("ws-1", "inst-1", "running", "https://ws-1.example.com", "user-1")
HELPER_CONNECTION = {"host": "ws-1.local-companion", "configFile": "/tmp/lca_ssh_config1"}


@dataclass
class Harness:
    """A resolver wired to test doubles."""

    resolver: DestinationResolver
    store: MemoryStore
    api: MagicMock
    supervisor: MagicMock
    prober: MagicMock
    notifier: MagicMock
    telemetry: MagicMock
    known_hosts_path: Path
    host_key_requests: list[str] = field(default_factory=list)

    def statuses(self) -> list[tuple[str, str]]:
        """(status, kind) pairs sent to telemetry."""
        return [
            (call.args[0], call.args[1]["kind"])
            for call in self.telemetry.send_user_flow_status.call_args_list
        ]


@pytest.fixture
def host_key() -> asyncssh.SSHKey:
    """Workspace host key."""
    return asyncssh.generate_private_key("ssh-ed25519").convert_to_public()


@pytest.fixture
def make_harness(tmp_path: Path, host_key: asyncssh.SSHKey) -> Any:
    """Factory for resolver harnesses."""

    def make(
        settings: Settings | None = None,
        status: WorkspaceStatus = RUNNING,
        version: ServiceVersion = ServiceVersion.parse("2022.8.0"),
        host_keys_status: int = 200,
    ) -> Harness:
        requests: list[str] = []
        records = [
            {"type": "ssh-ed25519", "host_key": base64.b64encode(host_key.public_data).decode()}
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(str(request.url))
            return httpx.Response(host_keys_status, json=records)

        api = MagicMock()
        api.get_workspace_status = AsyncMock(return_value=status)
        api.get_owner_token = AsyncMock(return_value="owner-token")
        api.get_registered_keys = AsyncMock(return_value=[])
        api.send_heartbeat = AsyncMock()
        api.close = AsyncMock()

        supervisor = MagicMock()
        supervisor.with_helper = AsyncMock(return_value=HELPER_CONNECTION)
        supervisor.is_helper_running.side_effect = is_process_running
        prober = MagicMock()
        prober.test_connection = AsyncMock(return_value=host_key.public_data)
        versions = MagicMock()
        versions.get = AsyncMock(return_value=version)
        notifier = MagicMock()
        for method in ("show_info", "show_warning", "show_error", "show_password"):
            setattr(notifier, method, AsyncMock(return_value=None))
        telemetry = MagicMock()

        store = MemoryStore()
        known_hosts_path = tmp_path / "known_hosts"
        resolver = DestinationResolver(
            settings=settings or Settings(host=HOST, ssh_config_path=str(tmp_path / "config")),
            store=store,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            api_factory=lambda host: api,
            supervisor=supervisor,
            prober=prober,
            versions=versions,
            notifier=notifier,
            telemetry=telemetry,
            known_hosts=KnownHostsFile(known_hosts_path),
            managed_config_path=str(tmp_path / "workspace_ssh.d" / "config"),
        )
        return Harness(
            resolver, store, api, supervisor, prober, notifier, telemetry, known_hosts_path, requests
        )

    return make


@pytest.fixture
def no_keys() -> Any:
    """No usable local identities."""
    with patch("workspace_ssh.services.resolver.identity.gather", AsyncMock(return_value=[])) as mock:
        yield mock


@pytest.fixture
def one_key() -> Any:
    """A single registered local identity."""
    public = asyncssh.generate_private_key("ssh-ed25519").convert_to_public()
    key = IdentityKey("~/.ssh/id_ed25519", public, fingerprint(public.public_data))
    with patch("workspace_ssh.services.resolver.identity.gather", AsyncMock(return_value=[key])) as mock:
        yield mock


@pytest.mark.asyncio
async def test_not_running_aborts_before_any_strategy(make_harness: Any) -> None:
    """A stopped workspace raises without touching host keys, SSH or the helper."""
    harness = make_harness(status=WorkspaceStatus("ws-1", "inst-1", "stopped", ""))

    with pytest.raises(NoRunningInstance):
        await harness.resolver.resolve(PARAMS)

    harness.notifier.show_error.assert_awaited_once()
    assert harness.host_key_requests == []
    harness.prober.test_connection.assert_not_awaited()
    harness.supervisor.with_helper.assert_not_awaited()
    assert harness.store.keys() == []


class TestGateway:
    """Tests for the SSH gateway strategy."""

    @pytest.mark.asyncio
    async def test_password_fallback(
        self, make_harness: Any, no_keys: Any, host_key: asyncssh.SSHKey
    ) -> None:
        """Without registered keys the owner token is the password."""
        harness = make_harness()

        resolved = await harness.resolver.resolve(PARAMS)

        assert resolved.destination == SSHDestination("ws-1.ssh.example.com", "ws-1")
        assert resolved.strategy == STRATEGY_GATEWAY
        assert resolved.password == "owner-token"
        harness.notifier.show_password.assert_awaited_once_with("ws-1", "owner-token")
        assert harness.host_key_requests == ["https://ws-1.example.com/_ssh/host_keys"]

        tested_config, trusted, _ = harness.prober.test_connection.await_args.args
        assert tested_config.host == "ws-1.ssh.example.com"
        assert tested_config.username == "ws-1"
        assert tested_config.password == "owner-token"
        assert trusted[0].host_key == base64.b64encode(host_key.public_data).decode()

        assert not KnownHostsFile(harness.known_hosts_path).is_new_host("ws-1.ssh.example.com")
        record = harness.store.get(SSH_DEST_PREFIX + resolved.destination.encode())
        assert record["is_first_connection"] is True
        assert record["strategy"] == STRATEGY_GATEWAY
        assert record["workspace_id"] == "ws-1"
        assert harness.statuses() == [("connecting", "gateway"), ("connected", "gateway")]

    @pytest.mark.asyncio
    async def test_registered_key_means_no_password(self, make_harness: Any, one_key: Any) -> None:
        """A usable registered key suppresses the password."""
        harness = make_harness()

        resolved = await harness.resolver.resolve(PARAMS)

        assert resolved.password is None
        assert resolved.destination.user == "ws-1"
        harness.notifier.show_password.assert_not_awaited()
        harness.api.get_registered_keys.assert_awaited_once()
        assert one_key.await_args.kwargs["registered"] == []

    @pytest.mark.asyncio
    async def test_old_service_embeds_owner_token_in_user(
        self, make_harness: Any, one_key: Any
    ) -> None:
        """Services without key registration get user#token when keys exist."""
        harness = make_harness(version=MINIMUM)

        resolved = await harness.resolver.resolve(PARAMS)

        assert resolved.destination.user == "ws-1#owner-token"
        assert resolved.password is None
        harness.api.get_registered_keys.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_debug_workspace_user(self, make_harness: Any, no_keys: Any) -> None:
        """Debug workspaces use the debug- prefixed user and host."""
        harness = make_harness()
        params = ConnectionParams("ws-1", "inst-1", HOST, debug_workspace=True)

        resolved = await harness.resolver.resolve(params)

        assert resolved.destination == SSHDestination("debug-ws-1.ssh.example.com", "debug-ws-1")

    @pytest.mark.asyncio
    async def test_no_gateway_falls_back_to_helper(self, make_harness: Any, no_keys: Any) -> None:
        """Missing host keys warn and use the local helper."""
        harness = make_harness(host_keys_status=404)

        resolved = await harness.resolver.resolve(PARAMS)

        assert resolved.strategy == STRATEGY_LOCAL_APP
        assert resolved.destination == SSHDestination(HELPER_CONNECTION["host"])
        assert resolved.helper_ssh_config_path == HELPER_CONNECTION["configFile"]
        harness.notifier.show_warning.assert_awaited_once()
        harness.prober.test_connection.assert_not_awaited()
        assert harness.statuses() == [
            ("connecting", "gateway"),
            ("failed", "gateway"),
            ("connecting", "local-app"),
            ("connected", "local-app"),
        ]

    @pytest.mark.asyncio
    async def test_no_gateway_is_fatal_for_debug_workspace(
        self, make_harness: Any, no_keys: Any
    ) -> None:
        """Debug workspaces cannot fall back."""
        harness = make_harness(host_keys_status=404)

        with pytest.raises(NoSSHGateway):
            await harness.resolver.resolve(ConnectionParams("ws-1", "inst-1", HOST, True))

        harness.supervisor.with_helper.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_handshake_timeout_falls_back(self, make_harness: Any, no_keys: Any) -> None:
        """A handshake timeout is treated as a blocked network."""
        harness = make_harness()
        harness.prober.test_connection.side_effect = SSHHandshakeTimeout("ws-1.ssh.example.com", 40)

        resolved = await harness.resolver.resolve(PARAMS)

        assert resolved.strategy == STRATEGY_LOCAL_APP
        assert "port 22" in harness.notifier.show_warning.await_args.args[0]

    @pytest.mark.asyncio
    async def test_auth_failure_is_fatal(self, make_harness: Any, no_keys: Any) -> None:
        """Other SSH errors show an actionable error and do not fall back."""
        harness = make_harness()
        harness.prober.test_connection.side_effect = SSHError("All configured authentication methods failed")

        with pytest.raises(SSHError):
            await harness.resolver.resolve(PARAMS)

        assert harness.notifier.show_error.await_args.args[1] == FAILURE_ACTIONS
        harness.supervisor.with_helper.assert_not_awaited()
        assert harness.store.keys() == []


class TestLocalApp:
    """Tests for the local helper strategy."""

    @pytest.mark.asyncio
    async def test_forced_local_app_skips_gateway(self, make_harness: Any, tmp_path: Path) -> None:
        """use_local_app goes straight to the helper."""
        harness = make_harness(settings=Settings(host=HOST, use_local_app=True))

        resolved = await harness.resolver.resolve(PARAMS)

        assert resolved.strategy == STRATEGY_LOCAL_APP
        assert harness.host_key_requests == []
        assert harness.statuses() == [("connecting", "local-app"), ("connected", "local-app")]

    @pytest.mark.asyncio
    async def test_helper_unavailable(self, make_harness: Any) -> None:
        """Helper failures are shown with actions and re-raised."""
        harness = make_harness(settings=Settings(host=HOST, use_local_app=True))
        harness.supervisor.with_helper.side_effect = LocalAppUnavailable("gone", "/tmp/x.log")

        with pytest.raises(LocalAppUnavailable):
            await harness.resolver.resolve(PARAMS)

        assert harness.notifier.show_error.await_args.args[1] == FAILURE_ACTIONS


class TestLocalSSH:
    """Tests for the local SSH proxy strategy."""

    def _settings(self, tmp_path: Path) -> Settings:
        return Settings(
            host=HOST,
            ssh_config_path=str(tmp_path / "config"),
            local_ssh_proxy=True,
            proxy_command="/opt/proxy --stdio",
            ipc_port=45000,
        )

    @pytest.mark.asyncio
    async def test_local_ssh_destination(self, make_harness: Any, tmp_path: Path) -> None:
        """The proxy Host block is written and the scoped hostname returned."""
        harness = make_harness(settings=self._settings(tmp_path))

        with patch(
            "workspace_ssh.services.resolver.check_host_online", AsyncMock(return_value=True)
        ):
            resolved = await harness.resolver.resolve(PARAMS)

        assert resolved.strategy == STRATEGY_LOCAL_SSH
        assert resolved.destination == SSHDestination("ws-1.vss.example.com", "ws-1")
        managed = (tmp_path / "workspace_ssh.d" / "config").read_text()
        assert "Host *.vss.example.com" in managed
        assert "ProxyCommand /opt/proxy --stdio %h 45000" in managed
        assert "Include" in (tmp_path / "config").read_text()
        assert harness.host_key_requests == []

    @pytest.mark.asyncio
    async def test_ipc_server_down_falls_back_to_gateway(
        self, make_harness: Any, tmp_path: Path, no_keys: Any
    ) -> None:
        """An unreachable IPC server moves on to the gateway."""
        harness = make_harness(settings=self._settings(tmp_path))

        with (
            patch(
                "workspace_ssh.services.resolver.check_host_online", AsyncMock(return_value=False)
            ),
            patch.object(
                harness.resolver.client_versions, "get", AsyncMock(return_value="OpenSSH_9.6p1")
            ),
        ):
            resolved = await harness.resolver.resolve(PARAMS)

        assert resolved.strategy == STRATEGY_GATEWAY
        assert harness.statuses()[:2] == [("connecting", "local-ssh"), ("failed", "local-ssh")]

    @pytest.mark.asyncio
    async def test_output_verification_failure_falls_back(
        self, make_harness: Any, tmp_path: Path, no_keys: Any
    ) -> None:
        """A failed marker check through the local ssh client moves on to the gateway."""
        settings = self._settings(tmp_path)
        settings.verify_local_ssh = True
        harness = make_harness(settings=settings)
        verify = AsyncMock(side_effect=SSHOutputVerificationFailed())

        with (
            patch(
                "workspace_ssh.services.resolver.check_host_online", AsyncMock(return_value=True)
            ),
            patch("workspace_ssh.services.resolver.verify_ssh_connection", verify),
            patch.object(harness.resolver.client_versions, "get", AsyncMock(return_value=None)),
        ):
            resolved = await harness.resolver.resolve(PARAMS)

        verify.assert_awaited_once_with("ws-1", "ws-1.vss.example.com", "ssh")
        assert resolved.strategy == STRATEGY_GATEWAY


@pytest.mark.asyncio
async def test_cancelled_is_not_reported_as_failure(make_harness: Any, no_keys: Any) -> None:
    """Cancellation propagates silently."""
    harness = make_harness()
    source = CancellationTokenSource()
    harness.api.get_owner_token.side_effect = lambda ws: source.cancel() or "owner-token"

    with pytest.raises(Cancelled):
        await harness.resolver.resolve(PARAMS, source.token)

    assert ("failed", "gateway") not in harness.statuses()
    harness.notifier.show_error.assert_not_awaited()
    harness.supervisor.with_helper.assert_not_awaited()


class TestReconnect:
    """Tests for reconnect bookkeeping."""

    @pytest.mark.asyncio
    async def test_updates_instance_and_starts_heartbeat(self, make_harness: Any) -> None:
        """A new instance id is recorded and a heartbeat started."""
        harness = make_harness(
            status=WorkspaceStatus("ws-1", "inst-2", "running", "https://ws-1.example.com")
        )
        encoded = SSHDestination("ws-1.ssh.example.com", "ws-1").encode()
        harness.store.data[SSH_DEST_PREFIX + encoded] = {
            **PARAMS.to_dict(),
            "strategy": "gateway",
            "is_first_connection": True,
        }

        params = await harness.resolver.on_reconnect(encoded)

        assert params is not None
        assert params.instance_id == "inst-2"
        record = harness.store.get(SSH_DEST_PREFIX + encoded)
        assert record["instance_id"] == "inst-2"
        assert record["is_first_connection"] is False
        assert record["strategy"] == "gateway"
        assert harness.resolver._heartbeats["ws-1"].is_active

        await harness.resolver.close()
        harness.api.send_heartbeat.assert_any_await("ws-1", "inst-2", was_closed=True)
        harness.api.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_unknown_destination(self, make_harness: Any) -> None:
        """Destinations that were never resolved are ignored."""
        harness = make_harness()

        assert await harness.resolver.on_reconnect("nowhere") is None
        harness.api.get_workspace_status.assert_not_awaited()


class TestAutoTunnel:
    """Tests for auto tunnel toggling."""

    @pytest.mark.asyncio
    async def test_no_running_helper(self, make_harness: Any) -> None:
        """Without a live helper nothing is toggled."""
        harness = make_harness()

        assert await harness.resolver.auto_tunnel(HOST, "inst-1", True) is False
        harness.supervisor.with_helper.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_live_helper_toggled(self, make_harness: Any) -> None:
        """A live helper receives the request."""
        harness = make_harness()
        harness.store.data[CONFIG_PREFIX + "example.com"] = {
            "host": HOST,
            "ssh_config_path": "/tmp/cfg",
            "api_port": 40000,
            "pid": os.getpid(),
            "log_path": "/tmp/x.log",
        }

        assert await harness.resolver.auto_tunnel(HOST, "inst-1", True) is True
        harness.supervisor.with_helper.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_helper_failure_reported_as_false(self, make_harness: Any) -> None:
        """Helper errors are logged, not raised."""
        harness = make_harness(settings=Settings(host=HOST, use_local_app=True))
        harness.supervisor.with_helper.side_effect = LocalAppUnavailable("gone")

        assert await harness.resolver.auto_tunnel(HOST, "inst-1", False) is False

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, make_harness: Any) -> None:
        """A cancelled helper call is raised, not logged as a failure."""
        harness = make_harness(settings=Settings(host=HOST, use_local_app=True))
        harness.supervisor.with_helper.side_effect = Cancelled()

        with pytest.raises(Cancelled):
            await harness.resolver.auto_tunnel(HOST, "inst-1", True)
