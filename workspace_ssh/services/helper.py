"""Local helper supervision.

The helper is a platform binary served by the workspace service. One
instance per service authority runs on the machine; every editor process
shares it through the ``installation/`` and ``config/`` store entries,
and install/start is serialized by a lock on the authority.
"""

import asyncio
import logging
import os
import subprocess
import tempfile
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from workspace_ssh.config.settings import Settings
from workspace_ssh.errors import HelperRPCError, LocalAppUnavailable
from workspace_ssh.models import (
    LocalHelperConfig,
    LocalHelperInstallation,
    host_authority,
    service_url,
)
from workspace_ssh.protocols import KeyValueStore
from workspace_ssh.services.locks import INSTALL_LOCK_TIMEOUT, LockCoordinator
from workspace_ssh.utils.cancellation import NONE, CancellationToken
from workspace_ssh.utils.process import (
    IS_WINDOWS,
    find_free_port,
    is_process_running,
    kill_process,
    platform_binary_suffix,
    untildify,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_PREFIX = "config/"
INSTALLATION_PREFIX = "installation/"

DOWNLOAD_TIMEOUT = 30.0
RPC_TIMEOUT = 60.0
RPC_RETRY_DELAY = 1.0
SPAWN_CHECK_DELAY = 0.2

RETRYABLE_CODES = frozenset({"unavailable", "unknown"})


class HelperClient:
    """Connect-style JSON client for the helper's local API."""

    SERVICE = "localapp.LocalApp"

    def __init__(self, client: httpx.AsyncClient, port: int):
        self._client = client
        self.base_url = f"http://localhost:{port}"

    async def _call(self, method: str, request: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/{self.SERVICE}/{method}"
        try:
            response = await self._client.post(
                url,
                json=request,
                headers={"Connect-Protocol-Version": "1"},
                timeout=RPC_TIMEOUT,
            )
        except httpx.TransportError as e:
            raise HelperRPCError(method, "unavailable", str(e)) from e

        if response.status_code != 200:
            try:
                error = response.json()
            except ValueError:
                error = {}
            if not isinstance(error, dict):
                error = {}
            raise HelperRPCError(
                method,
                str(error.get("code") or "unknown"),
                str(error.get("message") or response.reason_phrase),
            )

        try:
            body = response.json()
        except ValueError as e:
            raise HelperRPCError(method, "unknown", f"invalid response: {e}") from e
        return body if isinstance(body, dict) else {}

    async def resolve_ssh_connection(self, workspace_id: str, instance_id: str) -> dict[str, str]:
        """Ask the helper for a tunnelled SSH alias.

        Returns:
            ``{"host": ..., "configFile": ...}``
        """
        response = await self._call(
            "ResolveSSHConnection",
            {"workspaceId": workspace_id, "instanceId": instance_id},
        )
        return {
            "host": str(response.get("host", "")),
            "configFile": str(response.get("configFile", "")),
        }

    async def auto_tunnel(self, instance_id: str, enabled: bool) -> None:
        await self._call("AutoTunnel", {"instanceId": instance_id, "enabled": enabled})


class LocalHelperSupervisor:
    """Installs, upgrades, starts and talks to the local helper."""

    def __init__(
        self,
        store: KeyValueStore,
        locks: LockCoordinator,
        client: httpx.AsyncClient,
        settings: Settings,
    ):
        """Initialize supervisor.

        Args:
            store: Shared store holding installation and config records
            locks: Coordinator used to serialize install/start
            client: HTTP client for downloads and helper RPC
            settings: Installation path override and helper options
        """
        self.store = store
        self.locks = locks
        self.client = client
        self.settings = settings
        # Helpers spawned by this process, reaped through poll()
        self._processes: dict[int, subprocess.Popen[bytes]] = {}

    def is_helper_running(self, pid: int) -> bool:
        """Whether the helper with pid is alive.

        Helpers spawned here are polled through their handle, which also
        reaps them once they exit; others are probed with signal 0.
        """
        process = self._processes.get(pid)
        if process is None:
            return is_process_running(pid)
        if process.poll() is None:
            return True
        logger.info(
            "Local companion (pid: %d) exited with code %s", pid, process.returncode
        )
        del self._processes[pid]
        return False

    def _kill(self, pid: int) -> None:
        kill_process(pid)
        process = self._processes.get(pid)
        if process is not None:
            # reap if already gone
            self.is_helper_running(pid)

    async def ensure(self, host: str, token: CancellationToken | None = None) -> LocalHelperConfig:
        """Return a running helper for host, installing or starting it if needed.

        Args:
            host: Service URL
            token: Cooperative cancellation

        Returns:
            Config of the live helper

        Raises:
            LocalAppUnavailable: If the helper cannot be installed or started
            LockFailed: If the install lock cannot be written
            Cancelled: If token is cancelled
        """
        authority = host_authority(host)
        async with self.locks.acquire(authority, INSTALL_LOCK_TIMEOUT, token) as lease:
            return await self._ensure_locked(host, authority, lease.token)

    async def _ensure_locked(
        self, host: str, authority: str, token: CancellationToken
    ) -> LocalHelperConfig:
        config_key = CONFIG_PREFIX + authority
        installation_key = INSTALLATION_PREFIX + authority

        config = LocalHelperConfig.from_dict(self.store.get(config_key))
        installation = LocalHelperInstallation.from_dict(self.store.get(installation_key))

        if config is not None and not self.is_helper_running(config.pid):
            logger.info("Local companion (pid: %d) is not running", config.pid)
            config = None

        configured = self.settings.installation_path
        if configured:
            configured = untildify(configured)
            if installation is not None and installation.binary_path != configured:
                logger.info(
                    "Local companion differs from configured, switching: %s -> %s",
                    installation.binary_path,
                    configured,
                )
                installation = None
                if config is not None:
                    self._kill(config.pid)
                config = None
            if config is not None:
                return config

            if not os.access(configured, os.X_OK):
                raise LocalAppUnavailable(f"Configured local companion is not executable: {configured}")
            installation = LocalHelperInstallation(configured, None)
            await self.store.update(installation_key, installation.to_dict())
            token.raise_if_cancelled()
        else:
            url = f"{service_url(host)}/static/bin/local-companion-{platform_binary_suffix()}"
            logger.info("Fetching the local companion from %s", url)
            try:
                async with self.client.stream("GET", url, timeout=DOWNLOAD_TIMEOUT) as response:
                    token.raise_if_cancelled()
                    response.raise_for_status()
                    etag = response.headers.get("etag")

                    if installation is not None and etag and etag != installation.etag:
                        logger.info(
                            "Local companion is outdated (etag %s -> %s), upgrading",
                            installation.etag,
                            etag,
                        )
                        installation = None
                        if config is not None:
                            self._kill(config.pid)
                        config = None
                    if config is not None:
                        return config

                    installation = self._check_executable(installation)
                    if installation is None:
                        installation = await self._install(response, etag, token)
                        await self.store.update(installation_key, installation.to_dict())
                        token.raise_if_cancelled()
            except httpx.HTTPError as e:
                if config is not None:
                    logger.warning("Failed to check for local companion updates: %s", e)
                    return config
                installation = self._check_executable(installation)
                if installation is None:
                    raise LocalAppUnavailable(f"Failed to download the local companion: {e}") from e
                logger.warning("Failed to check for local companion updates: %s", e)

        config = await self._start(host, installation, token)
        await self.store.update(config_key, config.to_dict())
        token.raise_if_cancelled()
        return config

    @staticmethod
    def _check_executable(
        installation: LocalHelperInstallation | None,
    ) -> LocalHelperInstallation | None:
        if installation is None:
            return None
        if os.access(installation.binary_path, os.X_OK):
            return installation
        logger.info("Local companion %s is no longer executable", installation.binary_path)
        return None

    async def _install(
        self, response: httpx.Response, etag: str | None, token: CancellationToken
    ) -> LocalHelperInstallation:
        suffix = ".exe" if IS_WINDOWS else ""
        fd, path = tempfile.mkstemp(prefix="local-companion", suffix=suffix)
        logger.info("Installing the local companion to %s", path)
        try:
            with os.fdopen(fd, "wb") as f:
                async for chunk in response.aiter_bytes():
                    token.raise_if_cancelled()
                    f.write(chunk)
            token.raise_if_cancelled()
            if not IS_WINDOWS:
                os.chmod(path, 0o755)
        except BaseException:
            logger.error("Failed to install the local companion to %s", path)
            try:
                os.unlink(path)
            except OSError:
                pass
            raise
        return LocalHelperInstallation(path, etag)

    async def _start(
        self,
        host: str,
        installation: LocalHelperInstallation,
        token: CancellationToken,
    ) -> LocalHelperConfig:
        fd, ssh_config_path = tempfile.mkstemp(prefix="lca_ssh_config")
        os.close(fd)
        api_port = find_free_port()
        log_path = os.path.splitext(installation.binary_path)[0] + ".log"
        token.raise_if_cancelled()

        env = {
            **os.environ,
            "WORKSPACE_HOST": host,
            "LCA_SSH_CONFIG": ssh_config_path,
            "LCA_API_PORT": str(api_port),
            "LCA_AUTO_TUNNEL": "false",
            "LCA_AUTH_REDIRECT_URL": self.settings.auth_redirect_url,
            "LCA_VERBOSE": str(self.settings.helper_verbose).lower(),
            "LCA_TIMEOUT": self.settings.helper_timeout,
        }
        options: dict[str, Any] = {}
        if IS_WINDOWS:
            options["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            options["start_new_session"] = True

        logger.info(
            "Starting the local companion: host=%s, config=%s, port=%d",
            host,
            ssh_config_path,
            api_port,
        )
        try:
            with open(log_path, "ab") as log:
                process = subprocess.Popen(
                    [installation.binary_path],
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=log,
                    env=env,
                    **options,
                )
        except OSError as e:
            logger.error("Failed to start the local companion: %s", e)
            raise LocalAppUnavailable(f"Failed to start the local companion: {e}", log_path) from e
        self._processes[process.pid] = process

        await asyncio.sleep(SPAWN_CHECK_DELAY)
        if not self.is_helper_running(process.pid):
            raise LocalAppUnavailable(
                f"Local companion exited unexpectedly with code {process.returncode}", log_path
            )
        if token.is_cancelled:
            process.terminate()
            token.raise_if_cancelled()

        logger.info("Local companion started: pid=%d, log=%s", process.pid, log_path)
        return LocalHelperConfig(host, ssh_config_path, api_port, process.pid, log_path)

    async def with_helper(
        self,
        host: str,
        op: Callable[[HelperClient], Awaitable[T]],
        token: CancellationToken | None = None,
    ) -> T:
        """Run an RPC against the helper for host.

        Transient failures are retried every second while the helper
        process is alive.

        Raises:
            LocalAppUnavailable: If the helper is gone or the RPC fails fatally
            Cancelled: If token is cancelled
        """
        token = token or NONE
        config = await self.ensure(host, token)
        token.raise_if_cancelled()

        helper = HelperClient(self.client, config.api_port)
        while True:
            try:
                result = await op(helper)
                token.raise_if_cancelled()
                return result
            except HelperRPCError as e:
                token.raise_if_cancelled()
                running = self.is_helper_running(config.pid)
                if running and e.code in RETRYABLE_CODES:
                    logger.info(
                        "Local companion (pid: %d) is running but its API is not ready: %s",
                        config.pid,
                        e,
                    )
                    await asyncio.sleep(RPC_RETRY_DELAY)
                    token.raise_if_cancelled()
                    continue
                if not running:
                    logger.info("Local companion (pid: %d) is not running", config.pid)
                logger.error("Failed to access the local companion: %s", e)
                raise LocalAppUnavailable(str(e), config.log_path) from e
