"""Destination resolution.

Turns a connection request into a usable SSH destination by trying, in
order, the local SSH proxy, the workspace's SSH gateway and the legacy
local helper. Resolved destinations are recorded in the shared store so
that a reconnecting editor window can find its workspace again.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, TypeVar
from urllib.parse import urlparse

import httpx

from workspace_ssh.config.host_keys import KnownHostsFile
from workspace_ssh.config.parser import MANAGED_CONFIG_PATH, SSHConfigStore
from workspace_ssh.config.settings import Settings
from workspace_ssh.errors import (
    Cancelled,
    LocalAppUnavailable,
    NoExtensionIPCServer,
    NoLocalSSHSupport,
    NoRunningInstance,
    NoSSHGateway,
    SSHError,
    SSHHandshakeTimeout,
    SSHOutputVerificationFailed,
    WorkspaceSSHError,
)
from workspace_ssh.models import (
    ConnectionParams,
    HostKeyRecord,
    LocalHelperConfig,
    ProbeConfig,
    SSHDestination,
    WorkspaceStatus,
    host_authority,
)
from workspace_ssh.protocols import KeyValueStore, Notifier, Telemetry, WorkspaceAPI
from workspace_ssh.services import identity
from workspace_ssh.services.features import (
    ClientVersionCache,
    ServiceVersion,
    VersionCache,
    is_feature_supported,
)
from workspace_ssh.services.heartbeat import HeartbeatManager
from workspace_ssh.services.helper import CONFIG_PREFIX, LocalHelperSupervisor
from workspace_ssh.services.prober import SSHProber
from workspace_ssh.utils.cancellation import NONE, CancellationToken
from workspace_ssh.utils.native_ssh import verify_ssh_connection
from workspace_ssh.utils.ping import check_host_online

logger = logging.getLogger(__name__)

T = TypeVar("T")

SSH_DEST_PREFIX = "ssh-dest:"
HOST_KEYS_TIMEOUT = 1.5

STRATEGY_LOCAL_SSH = "local-ssh"
STRATEGY_GATEWAY = "gateway"
STRATEGY_LOCAL_APP = "local-app"

FAILURE_ACTIONS = ("See Logs", "Show Troubleshooting")


@dataclass(frozen=True)
class ResolvedDestination:
    """Outcome of a successful resolution.

    Attributes:
        destination: Where the editor should connect
        strategy: Strategy that produced the destination
        password: One-time password when no registered key can be used
        helper_ssh_config_path: SSH config generated by the local helper
    """

    destination: SSHDestination
    strategy: str
    password: str | None = None
    helper_ssh_config_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "destination": str(self.destination),
            "encoded": self.destination.encode(),
            "strategy": self.strategy,
            "password": self.password,
            "helper_ssh_config_path": self.helper_ssh_config_path,
        }


class DestinationResolver:
    """Chooses a strategy and returns a connectable SSH destination."""

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        client: httpx.AsyncClient,
        api_factory: Callable[[str], WorkspaceAPI],
        supervisor: LocalHelperSupervisor,
        prober: SSHProber,
        versions: VersionCache,
        notifier: Notifier,
        telemetry: Telemetry,
        known_hosts: KnownHostsFile | None = None,
        managed_config_path: str | None = None,
    ):
        """Initialize resolver.

        Args:
            settings: Strategy switches, SSH file locations and timeouts
            store: Shared store for destination records
            client: HTTP client for host key lookups
            api_factory: Builds the service API for a service URL
            supervisor: Local helper supervisor for the legacy strategy
            prober: SSH test connection runner
            versions: Service version cache
            notifier: User-facing notifications
            telemetry: Flow status reporting
            known_hosts: known_hosts file receiving verified gateway keys
            managed_config_path: Generated SSH sub-config for the local proxy
        """
        self.settings = settings
        self.store = store
        self.client = client
        self.api_factory = api_factory
        self.supervisor = supervisor
        self.prober = prober
        self.versions = versions
        self.client_versions = ClientVersionCache()
        self.notifier = notifier
        self.telemetry = telemetry
        self.known_hosts = known_hosts or KnownHostsFile(settings.known_hosts_path)
        self.managed_config_path = managed_config_path or str(MANAGED_CONFIG_PATH)
        self._apis: dict[str, WorkspaceAPI] = {}
        self._heartbeats: dict[str, HeartbeatManager] = {}

    def get_api(self, host: str) -> WorkspaceAPI:
        """Return the session API for a service URL, creating it once."""
        api = self._apis.get(host)
        if api is None:
            api = self.api_factory(host)
            self._apis[host] = api
        return api

    def local_ssh_domain(self, host: str) -> str:
        hostname = urlparse(host if "://" in host else f"https://{host}").hostname or host
        return f"{self.settings.local_ssh_scope}.{hostname}"

    async def resolve(
        self, params: ConnectionParams, token: CancellationToken | None = None
    ) -> ResolvedDestination:
        """Resolve an SSH destination for a workspace.

        Args:
            params: Target workspace
            token: Cooperative cancellation

        Returns:
            The destination, with a password when key auth is impossible

        Raises:
            NoRunningInstance: If the workspace is not running
            Cancelled: If token is cancelled
            WorkspaceSSHError: When every applicable strategy failed
        """
        token = token or NONE
        api = self.get_api(params.host)
        version = await self.versions.get(params.host)
        token.raise_if_cancelled()

        flow: dict[str, Any] = {
            "flow": "ssh",
            "workspace_id": params.workspace_id,
            "instance_id": params.instance_id,
            "host": params.host,
            "debug_workspace": params.debug_workspace,
            "version": version.raw,
        }

        logger.info("Opening workspace %s on %s", params.workspace_id, params.host)
        status = await api.get_workspace_status(params.workspace_id)
        token.raise_if_cancelled()
        if not status.is_running:
            error = NoRunningInstance(params.workspace_id, status.phase)
            logger.error("No running instance: %s", error)
            await self.notifier.show_error(
                f"Failed to connect to {params.workspace_id} workspace: workspace not running"
            )
            raise error

        resolved: ResolvedDestination | None = None

        if self.settings.local_ssh_supported and not self.settings.use_local_app:
            try:
                resolved = await self._run_strategy(
                    STRATEGY_LOCAL_SSH, flow, lambda f: self._local_ssh_destination(params)
                )
            except Cancelled:
                raise
            except (
                NoLocalSSHSupport,
                NoExtensionIPCServer,
                SSHError,
                SSHOutputVerificationFailed,
            ) as e:
                logger.warning(
                    "Local SSH proxy unavailable (%s), trying the SSH gateway: %s",
                    await self.client_versions.get(self.settings.ssh_path),
                    e,
                )
            token.raise_if_cancelled()

        if resolved is None and not self.settings.use_local_app:
            try:
                resolved = await self._run_strategy(
                    STRATEGY_GATEWAY,
                    flow,
                    lambda f: self._gateway_destination(params, status, version, api, f, token),
                )
            except Cancelled:
                raise
            except NoSSHGateway as e:
                logger.warning("No SSH gateway: %s", e)
                if params.debug_workspace:
                    raise
                await self.notifier.show_warning(
                    f"{e.host} does not support direct SSH access, "
                    "connecting via the local companion tunnel instead."
                )
            except SSHHandshakeTimeout as e:
                logger.warning("SSH test connection error: %s", e)
                if params.debug_workspace:
                    raise
                await self.notifier.show_warning(
                    "Timed out while waiting for the SSH handshake. It's possible that SSH "
                    "connections on port 22 are blocked, or your network is too slow. "
                    "Connecting via the local companion tunnel instead."
                )
            except NoRunningInstance as e:
                logger.error("No running instance: %s", e)
                await self.notifier.show_error(
                    f"Failed to connect to {e.workspace_id} workspace: workspace not running"
                )
                raise
            except Exception as e:
                if isinstance(e, SSHError):
                    logger.error("SSH test connection error: %s", e)
                else:
                    logger.error("Failed to connect to %s workspace: %s", params.workspace_id, e)
                await self.notifier.show_error(
                    f"Failed to connect to {params.workspace_id} workspace", FAILURE_ACTIONS
                )
                raise

        if resolved is None:
            if params.debug_workspace:
                raise LocalAppUnavailable(
                    f"Debug workspace {params.workspace_id} cannot use the local companion"
                )
            try:
                resolved = await self._run_strategy(
                    STRATEGY_LOCAL_APP, flow, lambda f: self._helper_destination(params, token)
                )
            except Cancelled:
                raise
            except Exception as e:
                logger.error("Failed to connect to %s workspace: %s", params.workspace_id, e)
                if isinstance(e, LocalAppUnavailable):
                    await self.notifier.show_error(
                        f"Failed to connect to {params.workspace_id} workspace", FAILURE_ACTIONS
                    )
                raise

        await self.store.update(
            SSH_DEST_PREFIX + resolved.destination.encode(),
            {**params.to_dict(), "strategy": resolved.strategy, "is_first_connection": True},
        )
        logger.info(
            "Resolved %s via %s: %s", params.workspace_id, resolved.strategy, resolved.destination
        )
        return resolved

    async def _run_strategy(
        self,
        kind: str,
        flow: dict[str, Any],
        op: Callable[[dict[str, Any]], Awaitable[T]],
    ) -> T:
        strategy_flow = {**flow, "kind": kind}
        self.telemetry.send_user_flow_status("connecting", strategy_flow)
        try:
            result = await op(strategy_flow)
        except Cancelled:
            raise
        except Exception as e:
            self.telemetry.send_user_flow_status("failed", {**strategy_flow, "reason": str(e)})
            raise
        self.telemetry.send_user_flow_status("connected", strategy_flow)
        return result

    def setup_local_ssh(self, host: str) -> None:
        """Write the proxy Host block for host into the managed sub-config.

        Raises:
            NoLocalSSHSupport: If the SSH config files cannot be set up
        """
        SSHConfigStore.ensure_managed_include(
            self.settings.ssh_config_path, self.managed_config_path
        )
        managed = SSHConfigStore.load_managed(self.managed_config_path)
        managed.add_host_configuration(
            {
                "Host": f"*.{self.local_ssh_domain(host)}",
                "StrictHostKeyChecking": "no",
                "ProxyCommand": f"{self.settings.proxy_command} %h {self.settings.ipc_port}",
            }
        )
        managed.save_managed(self.managed_config_path)

    async def _local_ssh_destination(self, params: ConnectionParams) -> ResolvedDestination:
        self.setup_local_ssh(params.host)
        if not await check_host_online("127.0.0.1", self.settings.ipc_port):
            raise NoExtensionIPCServer(self.settings.ipc_port)
        hostname = f"{params.workspace_id}.{self.local_ssh_domain(params.host)}"
        if self.settings.verify_local_ssh:
            await verify_ssh_connection(params.workspace_id, hostname, self.settings.ssh_path)
        return ResolvedDestination(
            SSHDestination(hostname, params.workspace_id), STRATEGY_LOCAL_SSH
        )

    async def _fetch_host_keys(self, workspace_host: str, service_host: str) -> list[HostKeyRecord]:
        url = f"https://{workspace_host}/_ssh/host_keys"
        try:
            response = await self.client.get(url, timeout=HOST_KEYS_TIMEOUT)
        except httpx.HTTPError as e:
            logger.debug("Host key lookup at %s failed: %s", url, e)
            raise NoSSHGateway(service_host) from e
        if not response.is_success:
            raise NoSSHGateway(service_host)
        try:
            return [HostKeyRecord.from_dict(record) for record in response.json()]
        except (ValueError, KeyError, TypeError) as e:
            logger.debug("Invalid host keys from %s: %s", url, e)
            raise NoSSHGateway(service_host) from e

    async def _gateway_destination(
        self,
        params: ConnectionParams,
        status: WorkspaceStatus,
        version: ServiceVersion,
        api: WorkspaceAPI,
        flow: dict[str, Any],
        token: CancellationToken,
    ) -> ResolvedDestination:
        keys_supported = is_feature_supported(version, "SSHPublicKeys")
        owner_token = await api.get_owner_token(params.workspace_id)
        registered = await api.get_registered_keys() if keys_supported else None
        token.raise_if_cancelled()

        workspace_host = urlparse(status.workspace_url).netloc
        if not workspace_host:
            raise NoSSHGateway(params.host)
        host_keys = await self._fetch_host_keys(workspace_host, params.host)
        token.raise_if_cancelled()

        user = params.workspace_id
        hostname = workspace_host.replace(params.workspace_id, f"{params.workspace_id}.ssh")
        if params.debug_workspace:
            user = f"debug-{params.workspace_id}"
            hostname = hostname.replace(params.workspace_id, user)

        ssh_config = SSHConfigStore.load_from_filesystem(self.settings.ssh_config_path)
        verified_host_key = await self.prober.test_connection(
            ProbeConfig(
                host=hostname,
                username=user,
                password=owner_token,
                ready_timeout=float(self.settings.handshake_timeout),
            ),
            host_keys,
            ssh_config,
        )
        token.raise_if_cancelled()

        try:
            if self.known_hosts.add_host_if_new(hostname, verified_host_key):
                logger.info("'%s' host added to known_hosts file", hostname)
        except (OSError, ValueError) as e:
            logger.error("Couldn't write '%s' host to known_hosts file: %s", hostname, e)

        host_config = ssh_config.get_host_configuration(hostname)
        keys = await identity.gather(
            [], identity.get_agent_socket(host_config), False, registered=registered
        )
        token.raise_if_cancelled()
        if registered is None:
            if keys:
                user = f"{user}#{owner_token}"
            logger.warning(
                "Registered SSH public keys not supported in %s, using version %s",
                params.host,
                version.raw,
            )

        password = owner_token if not keys else None
        flow["auth"] = "password" if password else "key"
        if password:
            await self.notifier.show_password(params.workspace_id, password)
        return ResolvedDestination(SSHDestination(hostname, user), STRATEGY_GATEWAY, password)

    async def _helper_destination(
        self, params: ConnectionParams, token: CancellationToken
    ) -> ResolvedDestination:
        connection = await self.supervisor.with_helper(
            params.host,
            lambda helper: helper.resolve_ssh_connection(params.workspace_id, params.instance_id),
            token,
        )
        return ResolvedDestination(
            SSHDestination(connection["host"]),
            STRATEGY_LOCAL_APP,
            helper_ssh_config_path=connection["configFile"],
        )

    async def on_reconnect(self, encoded: str) -> ConnectionParams | None:
        """Refresh bookkeeping when an editor reconnects to a destination.

        Args:
            encoded: Encoded destination the editor connected to

        Returns:
            Updated params, or None if unknown or not running
        """
        key = SSH_DEST_PREFIX + encoded
        record = self.store.get(key)
        if not isinstance(record, dict):
            return None

        params = ConnectionParams.from_dict(record)
        api = self.get_api(params.host)
        status = await api.get_workspace_status(params.workspace_id)
        if not status.is_running:
            logger.info("Workspace %s is not running: %s", params.workspace_id, status.phase)
            return None

        if status.instance_id and status.instance_id != params.instance_id:
            logger.info(
                "Updating workspace %s latest instance id %s => %s",
                params.workspace_id,
                params.instance_id,
                status.instance_id,
            )
            params = replace(params, instance_id=status.instance_id)

        await self.store.update(
            key, {**record, **params.to_dict(), "is_first_connection": False}
        )

        version = await self.versions.get(params.host)
        if is_feature_supported(version, "localHeartbeat"):
            self.start_heartbeat(params, api)
        return params

    def start_heartbeat(self, params: ConnectionParams, api: WorkspaceAPI) -> HeartbeatManager:
        manager = self._heartbeats.get(params.workspace_id)
        if manager is None or manager.params.instance_id != params.instance_id:
            manager = HeartbeatManager(api, params)
            self._heartbeats[params.workspace_id] = manager
        manager.start()
        return manager

    async def auto_tunnel(self, host: str, instance_id: str, enabled: bool) -> bool:
        """Toggle the helper's auto tunnel for an instance.

        Does nothing unless the local helper is forced or already running.

        Returns:
            True if the helper accepted the change
        """
        if not self.settings.use_local_app:
            config = LocalHelperConfig.from_dict(
                self.store.get(CONFIG_PREFIX + host_authority(host))
            )
            if config is None or not self.supervisor.is_helper_running(config.pid):
                return False

        try:
            await self.supervisor.with_helper(
                host, lambda helper: helper.auto_tunnel(instance_id, enabled)
            )
        except Cancelled:
            raise
        except WorkspaceSSHError as e:
            logger.error("Failed to toggle auto tunneling: %s", e)
            return False
        return True

    async def close(self) -> None:
        """Stop heartbeats and release per-host APIs."""
        for manager in list(self._heartbeats.values()):
            await manager.stop()
        self._heartbeats.clear()
        for api in self._apis.values():
            await api.close()
        self._apis.clear()
