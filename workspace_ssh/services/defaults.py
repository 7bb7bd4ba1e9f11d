"""Collaborators used when no editor surface is attached.

Messages and telemetry go to the log; secrets cannot be prompted for.
"""

import logging
from collections.abc import Sequence
from typing import Any

logger = logging.getLogger(__name__)


def mask_password(password: str) -> str:
    """Mask all but the last three characters."""
    visible = password[-3:]
    return "*" * max(len(password) - 3, 0) + visible


class LoggingNotifier:
    """Notifier that writes every message to the log."""

    async def show_info(self, message: str) -> None:
        logger.info(message)

    async def show_warning(self, message: str) -> None:
        logger.warning(message)

    async def show_error(self, message: str, actions: Sequence[str] = ()) -> str | None:
        if actions:
            logger.error("%s [%s]", message, ", ".join(actions))
        else:
            logger.error(message)
        return None

    async def show_password(self, workspace_id: str, password: str) -> None:
        logger.warning(
            "No registered SSH key for workspace %s, use the temporary password %s",
            workspace_id,
            mask_password(password),
        )


class NullPrompter:
    """Prompter that always cancels."""

    async def prompt(self, title: str, password: bool = True) -> str | None:
        logger.debug("Cannot prompt for %r without an interactive surface", title)
        return None


class LoggingTelemetry:
    """Telemetry that records flow statuses in the log."""

    def send_user_flow_status(self, status: str, flow: dict[str, Any]) -> None:
        logger.debug(
            "Flow %s/%s: %s", flow.get("flow", "ssh"), flow.get("kind", "-"), status
        )
