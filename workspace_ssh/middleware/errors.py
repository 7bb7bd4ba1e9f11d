"""Error handling middleware for tool calls."""

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from fastmcp.server.middleware import MiddlewareContext

from workspace_ssh.errors import Cancelled
from workspace_ssh.middleware.base import WorkspaceSSHMiddleware

ErrorCallback = Callable[[Exception, MiddlewareContext], None]


class ErrorHandlingMiddleware(WorkspaceSSHMiddleware):
    """Logs and counts errors raised while handling a request.

    Cancellations are passed through without being logged or counted.

    Example:
        >>> middleware = ErrorHandlingMiddleware(include_traceback=True)
        >>> mcp.add_middleware(middleware)
    """

    def __init__(
        self,
        logger: logging.Logger | None = None,
        include_traceback: bool = False,
        error_callback: ErrorCallback | None = None,
    ) -> None:
        """Initialize error handling middleware.

        Args:
            logger: Optional custom logger.
            include_traceback: Whether to include full traceback in logs.
            error_callback: Optional callback called with (exception, context).
        """
        super().__init__(logger=logger)
        self.include_traceback = include_traceback
        self.error_callback = error_callback
        self._error_counts: dict[str, int] = defaultdict(int)

    def get_error_stats(self) -> dict[str, int]:
        """Get error statistics by exception type."""
        return dict(self._error_counts)

    def reset_stats(self) -> None:
        self._error_counts.clear()

    async def on_message(
        self,
        context: MiddlewareContext,
        call_next: Any,
    ) -> Any:
        """Run the next handler, recording any error it raises.

        Raises:
            Exception: Re-raises the original exception after logging.
        """
        try:
            return await call_next(context)
        except Cancelled:
            self.logger.debug("Request %s was cancelled", context.method)
            raise
        except Exception as e:
            error_type = type(e).__name__
            self._error_counts[error_type] += 1

            self.logger.error(
                "Error in %s: %s: %s",
                context.method,
                error_type,
                e,
                exc_info=self.include_traceback,
            )

            if self.error_callback:
                try:
                    self.error_callback(e, context)
                except Exception as callback_error:
                    self.logger.warning("Error callback failed: %s", callback_error)

            raise
