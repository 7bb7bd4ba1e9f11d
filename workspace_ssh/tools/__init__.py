"""MCP tools for workspace_ssh."""

from workspace_ssh.tools.connect import auto_tunnel, reconnect_workspace, resolve_workspace

__all__ = ["auto_tunnel", "reconnect_workspace", "resolve_workspace"]
