"""Protocol interfaces for the collaborators connection resolution calls.

The editor surfaces, the service API, telemetry and the shared store live
outside this package; components depend on these protocols rather than
on concrete implementations.

Usage Example:

    from workspace_ssh.protocols import KeyValueStore

    async def remember(store: KeyValueStore, key: str) -> None:
        await store.update(key, {"seen": True})

    # Any object with matching methods works, including test doubles
    from workspace_ssh.services.store import MemoryStore
    await remember(MemoryStore(), "example")
"""

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from workspace_ssh.models import RegisteredKey, WorkspaceStatus


@runtime_checkable
class KeyValueStore(Protocol):
    """Small persisted key-value store shared by all processes on the machine.

    Reads always reflect the latest persisted state; writes are not
    transactional.
    """

    def get(self, key: str, default: Any = None) -> Any:
        """Read a value, or default when absent."""
        ...

    def keys(self) -> list[str]:
        """List stored keys."""
        ...

    async def update(self, key: str, value: Any) -> None:
        """Write a value; None deletes the key.

        Raises:
            OSError: If the backing storage cannot be written
        """
        ...


@runtime_checkable
class WorkspaceAPI(Protocol):
    """Service API used during resolution.

    Implementations must translate their wire phase names to
    ``running``/``stopped``/... and fingerprints to the gatherer's format.
    """

    async def get_workspace_status(self, workspace_id: str) -> WorkspaceStatus:
        """Fetch the workspace's latest instance status."""
        ...

    async def get_owner_token(self, workspace_id: str) -> str:
        """Fetch the owner token used as SSH password."""
        ...

    async def get_registered_keys(self) -> list[RegisteredKey]:
        """Fetch the user's registered SSH public keys.

        Only called when the service version supports key registration.
        """
        ...

    async def send_heartbeat(
        self, workspace_id: str, instance_id: str, was_closed: bool = False
    ) -> None:
        """Report that a client is (or was) connected to an instance."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...


@runtime_checkable
class Notifier(Protocol):
    """User-facing notifications."""

    async def show_info(self, message: str) -> None: ...

    async def show_warning(self, message: str) -> None: ...

    async def show_error(self, message: str, actions: Sequence[str] = ()) -> str | None:
        """Show an error with optional action buttons.

        Returns:
            The chosen action, or None if dismissed
        """
        ...

    async def show_password(self, workspace_id: str, password: str) -> None:
        """Surface a one-time SSH password to the user."""
        ...


@runtime_checkable
class Prompter(Protocol):
    """Asks the user for a secret."""

    async def prompt(self, title: str, password: bool = True) -> str | None:
        """Return the entered value, or None if the user cancelled."""
        ...


@runtime_checkable
class Telemetry(Protocol):
    """Flow status reporting."""

    def send_user_flow_status(self, status: str, flow: dict[str, Any]) -> None:
        """Report a flow step such as ``connecting`` or ``failed``."""
        ...


__all__ = [
    "KeyValueStore",
    "Notifier",
    "Prompter",
    "Telemetry",
    "WorkspaceAPI",
]
