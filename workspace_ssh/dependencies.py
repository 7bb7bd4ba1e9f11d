"""Dependency injection container for workspace_ssh.

Builds every collaborator of the resolver from one Settings instance.
"""

from dataclasses import dataclass

import httpx

from workspace_ssh.config.host_keys import KnownHostsFile
from workspace_ssh.config.settings import Settings
from workspace_ssh.protocols import KeyValueStore, Notifier, Prompter, Telemetry, WorkspaceAPI
from workspace_ssh.services.api import create_workspace_api
from workspace_ssh.services.defaults import LoggingNotifier, LoggingTelemetry, NullPrompter
from workspace_ssh.services.features import VersionCache
from workspace_ssh.services.helper import LocalHelperSupervisor
from workspace_ssh.services.locks import LockCoordinator
from workspace_ssh.services.prober import SSHProber
from workspace_ssh.services.resolver import DestinationResolver
from workspace_ssh.services.store import JsonFileStore


@dataclass
class Dependencies:
    """Container for workspace_ssh dependencies.

    Example:
        deps = Dependencies.create(Settings.from_env())
        resolved = await deps.resolver.resolve(params)
        await deps.cleanup()
    """

    settings: Settings
    store: KeyValueStore
    client: httpx.AsyncClient
    locks: LockCoordinator
    supervisor: LocalHelperSupervisor
    prober: SSHProber
    versions: VersionCache
    resolver: DestinationResolver

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        store: KeyValueStore | None = None,
        client: httpx.AsyncClient | None = None,
        notifier: Notifier | None = None,
        prompter: Prompter | None = None,
        telemetry: Telemetry | None = None,
    ) -> "Dependencies":
        """Create dependencies, defaulting every collaborator.

        Args:
            settings: Settings (default: from environment)
            store: Shared store (default: JSON files under settings.state_dir)
            client: HTTP client (default: a new AsyncClient)
            notifier: Notification surface (default: log only)
            prompter: Secret prompt surface (default: always cancels)
            telemetry: Flow reporting (default: log only)

        Returns:
            Initialized Dependencies instance
        """
        settings = settings or Settings.from_env()
        store = store if store is not None else JsonFileStore(settings.state_dir)
        client = client or httpx.AsyncClient(follow_redirects=True)

        def api_factory(host: str) -> WorkspaceAPI:
            return create_workspace_api(client, host, settings.token, settings.use_public_api)

        locks = LockCoordinator(store)
        supervisor = LocalHelperSupervisor(store, locks, client, settings)
        prober = SSHProber(prompter or NullPrompter())
        versions = VersionCache(client)
        resolver = DestinationResolver(
            settings=settings,
            store=store,
            client=client,
            api_factory=api_factory,
            supervisor=supervisor,
            prober=prober,
            versions=versions,
            notifier=notifier or LoggingNotifier(),
            telemetry=telemetry or LoggingTelemetry(),
            known_hosts=KnownHostsFile(settings.known_hosts_path),
        )
        return cls(
            settings=settings,
            store=store,
            client=client,
            locks=locks,
            supervisor=supervisor,
            prober=prober,
            versions=versions,
            resolver=resolver,
        )

    async def cleanup(self) -> None:
        """Stop background tasks and close the HTTP client."""
        await self.resolver.close()
        await self.locks.close()
        await self.client.aclose()
