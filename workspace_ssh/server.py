"""workspace_ssh FastMCP server.

A thin wrapper that exposes the resolver to the editor's command layer.
All logic lives in services/.
"""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from workspace_ssh.dependencies import Dependencies
from workspace_ssh.middleware import ErrorHandlingMiddleware
from workspace_ssh.services.state import get_settings, set_dependencies
from workspace_ssh.tools import auto_tunnel, reconnect_workspace, resolve_workspace
from workspace_ssh.utils.console import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Build dependencies and run the stale lock sweep while serving.

    Args:
        server: The FastMCP server instance

    Yields:
        Dict with the configured service host
    """
    logger.info("workspace_ssh server starting up")

    settings = get_settings()
    deps = Dependencies.create(settings)
    set_dependencies(deps)
    deps.locks.start_stale_sweep()

    logger.info(
        "Service host: %s, local companion forced: %s, local SSH proxy: %s",
        settings.host or "(per request)",
        settings.use_local_app,
        settings.local_ssh_supported,
    )

    try:
        yield {"host": settings.host}
    finally:
        logger.info("workspace_ssh server shutting down")
        await deps.cleanup()
        logger.info("workspace_ssh server shutdown complete")


def configure_middleware(server: FastMCP) -> None:
    """Configure middleware stack for the server.

    Environment variables:
        WSSH_INCLUDE_TRACEBACK: Set to "true" to include tracebacks in error logs
    """
    include_traceback = os.getenv("WSSH_INCLUDE_TRACEBACK", "").lower() == "true"
    server.add_middleware(ErrorHandlingMiddleware(include_traceback=include_traceback))


def create_server() -> FastMCP:
    """Create and configure the MCP server.

    Returns:
        Configured FastMCP server instance
    """
    server = FastMCP("workspace_ssh", lifespan=app_lifespan)

    configure_middleware(server)

    server.tool()(resolve_workspace)
    server.tool()(reconnect_workspace)
    server.tool()(auto_tunnel)

    @server.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint."""
        client_host = request.client.host if request.client else "unknown"
        logger.debug("Health check from %s", client_host)
        return JSONResponse({"status": "ok"})

    return server


settings = get_settings()
configure_logging(settings.log_level, settings.log_colors)

# Default server instance
mcp = create_server()
