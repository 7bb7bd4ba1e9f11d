"""Workspace heartbeat.

Keeps the service informed that an editor is attached to a workspace
instance. Stops by itself once the workspace stops or a new instance
replaces the one it was started for.
"""

import asyncio
import logging

from workspace_ssh.errors import WorkspaceSSHError
from workspace_ssh.models import ConnectionParams
from workspace_ssh.protocols import WorkspaceAPI

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 30.0


class HeartbeatManager:
    """Sends periodic heartbeats for one workspace instance."""

    def __init__(
        self,
        api: WorkspaceAPI,
        params: ConnectionParams,
        interval: float = HEARTBEAT_INTERVAL,
    ):
        self.api = api
        self.params = params
        self.interval = interval
        self.is_workspace_running = True
        self._task: asyncio.Task[None] | None = None

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Send a heartbeat now and then every interval until stop()."""
        if self.is_active:
            return
        logger.info(
            "Heartbeat manager for workspace %s (%s) - %s started",
            self.params.workspace_id,
            self.params.instance_id,
            self.params.host,
        )
        self._task = asyncio.create_task(self._loop())

    async def _loop(self) -> None:
        while True:
            await self.send_heartbeat()
            if not self.is_workspace_running:
                logger.info("Stopping heartbeat as workspace is not running")
                return
            await asyncio.sleep(self.interval)

    async def send_heartbeat(self, was_closed: bool = False) -> None:
        """Send one heartbeat if the tracked instance is still running.

        Failures are logged; the next tick tries again.
        """
        kind = "closed heartbeat" if was_closed else "heartbeat"
        try:
            status = await self.api.get_workspace_status(self.params.workspace_id)
            self.is_workspace_running = (
                status.is_running and status.instance_id == self.params.instance_id
            )
            if not self.is_workspace_running:
                return
            await self.api.send_heartbeat(
                self.params.workspace_id, self.params.instance_id, was_closed=was_closed
            )
            logger.debug("Sent %s for %s", kind, self.params.workspace_id)
        except WorkspaceSSHError as e:
            logger.error("Failed to send %s: %s", kind, e)

    async def stop(self) -> None:
        """Stop the loop and report the close if the workspace still runs."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.is_workspace_running:
            await self.send_heartbeat(was_closed=True)
        logger.info("Heartbeat manager for workspace %s stopped", self.params.workspace_id)
