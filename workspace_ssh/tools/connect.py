"""Connection tools exposed to the editor's command layer."""

import logging

from workspace_ssh.errors import Cancelled, WorkspaceSSHError
from workspace_ssh.models import ConnectionParams
from workspace_ssh.services.resolver import ResolvedDestination
from workspace_ssh.services.state import get_dependencies

logger = logging.getLogger(__name__)


def _format_resolved(workspace_id: str, resolved: ResolvedDestination) -> str:
    lines = [
        f"Workspace: {workspace_id}",
        f"Destination: {resolved.destination}",
        f"Remote authority: ssh-remote+{resolved.destination.encode()}",
        f"Strategy: {resolved.strategy}",
    ]
    if resolved.helper_ssh_config_path:
        lines.append(f"SSH config: {resolved.helper_ssh_config_path}")
    if resolved.password:
        lines.append(f"Password: {resolved.password}")
    return "\n".join(lines)


async def resolve_workspace(
    workspace_id: str,
    instance_id: str = "",
    host: str = "",
    debug_workspace: bool = False,
) -> str:
    """Resolve an SSH destination for a running workspace.

    Args:
        workspace_id: Workspace to connect to.
        instance_id: Instance the request was issued for.
        host: Service URL (default: WSSH_HOST).
        debug_workspace: Connect to the workspace's debug instance.

    Returns:
        Destination summary, or an error message.
    """
    deps = get_dependencies()
    host = host or deps.settings.host
    if not workspace_id:
        return "Error: workspace_id is required"
    if not host:
        return "Error: No service host given and WSSH_HOST is not set"

    params = ConnectionParams(workspace_id, instance_id, host, debug_workspace)
    try:
        resolved = await deps.resolver.resolve(params)
    except Cancelled:
        raise
    except WorkspaceSSHError as e:
        return f"Error: Failed to connect to {workspace_id} workspace: {e}"

    return _format_resolved(workspace_id, resolved)


async def reconnect_workspace(destination: str) -> str:
    """Refresh bookkeeping for an editor window reconnecting to a destination.

    Args:
        destination: Encoded destination from the remote authority.

    Returns:
        Status message.
    """
    deps = get_dependencies()
    try:
        params = await deps.resolver.on_reconnect(destination)
    except Cancelled:
        raise
    except WorkspaceSSHError as e:
        return f"Error: Failed to refresh {destination}: {e}"
    if params is None:
        return f"No running workspace recorded for {destination}"
    return f"Reconnected to {params.workspace_id} (instance {params.instance_id})"


async def auto_tunnel(instance_id: str, enabled: bool, host: str = "") -> str:
    """Enable or disable the local companion's automatic tunnel.

    Args:
        instance_id: Workspace instance to toggle.
        enabled: New auto tunnel state.
        host: Service URL (default: WSSH_HOST).

    Returns:
        Status message.
    """
    deps = get_dependencies()
    host = host or deps.settings.host
    if not host:
        return "Error: No service host given and WSSH_HOST is not set"

    changed = await deps.resolver.auto_tunnel(host, instance_id, enabled)
    state = "enabled" if enabled else "disabled"
    if not changed:
        return f"Auto tunnel unchanged for {instance_id}: local companion not in use"
    return f"Auto tunnel {state} for {instance_id}"
