"""Cooperative cancellation tokens.

A token is checked after each awaited step; it never interrupts a step
in progress.
"""

import logging
from collections.abc import Callable

from workspace_ssh.errors import Cancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Read side of a cancellation signal."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        """True once cancellation has been requested."""
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        """Raise Cancelled if cancellation has been requested."""
        if self._cancelled:
            raise Cancelled()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback run once on cancellation.

        Runs immediately if already cancelled.

        Returns:
            Function that unregisters the callback
        """
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancellation callback failed: %s", e)


# Token that is never cancelled
NONE = CancellationToken()


class CancellationTokenSource:
    """Write side of a cancellation signal, optionally linked to a parent."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self.token = CancellationToken()
        self._unlink: Callable[[], None] | None = None
        if parent is not None:
            self._unlink = parent.on_cancel(self.cancel)

    def cancel(self) -> None:
        """Request cancellation."""
        self.token._fire()

    def close(self) -> None:
        """Detach from the parent token."""
        if self._unlink is not None:
            self._unlink()
            self._unlink = None
