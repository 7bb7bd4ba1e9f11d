"""Cross-process advisory locks over the shared key-value store.

Processes on the same machine coordinate through ``lock/{name}`` entries:
a lock is claimed by writing it when no live lock exists and confirmed by
re-reading after one poll interval (last writer wins). The holder keeps
polling and cancels its lease token as soon as the entry changes hands.
"""

import asyncio
import errno
import itertools
import logging
import os
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from workspace_ssh.errors import LockFailed
from workspace_ssh.models import Lock
from workspace_ssh.protocols import KeyValueStore
from workspace_ssh.utils.cancellation import NONE, CancellationToken, CancellationTokenSource
from workspace_ssh.utils.process import is_process_running

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock/"
POLL_INTERVAL = 0.15
STALE_CHECK_INTERVAL = 30.0
INSTALL_LOCK_TIMEOUT = 300.0

# Per-process acquisition counter
_counter = itertools.count()


def _error_code(error: Exception) -> str:
    if isinstance(error, OSError) and error.errno is not None:
        return errno.errorcode.get(error.errno, "Unknown")
    return "Unknown"


@dataclass
class Lease:
    """A held lock.

    ``token`` is cancelled if the parent token is cancelled or the lock
    is taken over by another holder.
    """

    name: str
    value: str
    token: CancellationToken


class LockCoordinator:
    """Acquires and sweeps advisory locks in a shared store."""

    def __init__(
        self,
        store: KeyValueStore,
        session_id: str | None = None,
        poll_interval: float = POLL_INTERVAL,
        stale_check_interval: float = STALE_CHECK_INTERVAL,
    ):
        """Initialize coordinator.

        Args:
            store: Store shared by all processes
            session_id: Prefix for lock values (default: random per instance)
            poll_interval: Seconds between store reads while waiting or holding
            stale_check_interval: Seconds between stale-lock sweeps
        """
        self.store = store
        self.session_id = session_id or uuid.uuid4().hex
        self.poll_interval = poll_interval
        self.stale_check_interval = stale_check_interval
        self._sweep_task: asyncio.Task[None] | None = None

    def _read(self, key: str) -> Lock | None:
        return Lock.from_dict(self.store.get(key))

    async def _write(self, name: str, key: str, value: dict[str, Any] | None) -> None:
        try:
            await self.store.update(key, value)
        except OSError as e:
            raise LockFailed(name, _error_code(e), e) from e

    def is_stale(self, lock: Lock, now: float | None = None) -> bool:
        """Expired, or owned by a process that is no longer alive."""
        if now is None:
            now = time.time() * 1000
        if now >= lock.deadline:
            return True
        return isinstance(lock.pid, int) and not is_process_running(lock.pid)

    @asynccontextmanager
    async def acquire(
        self,
        name: str,
        timeout: float,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[Lease]:
        """Hold the named lock for the duration of the context.

        Args:
            name: Lock name (usually a host authority)
            timeout: Expected hold time in seconds; sets the lock deadline
            token: Cancels waiting and the yielded lease

        Yields:
            Lease whose token must be checked by the protected operation

        Raises:
            Cancelled: If token is cancelled while waiting
            LockFailed: If the store cannot be written
        """
        token = token or NONE
        key = LOCK_PREFIX + name
        value = f"{self.session_id}/{next(_counter)}"
        logger.info("Acquiring lock: %s", name)

        try:
            while True:
                token.raise_if_cancelled()
                current = self._read(key)
                if current is None or self.is_stale(current):
                    if current is not None:
                        logger.info("Reclaiming stale lock: %s", name)
                    deadline = time.time() * 1000 + (timeout + 2 * self.poll_interval) * 1000
                    await self._write(name, key, Lock(value, deadline, os.getpid()).to_dict())
                await asyncio.sleep(self.poll_interval)
                current = self._read(key)
                if current is not None and current.value == value:
                    break
                logger.debug("Lock %s held by %s, waiting", name, current and current.value)
        except BaseException:
            current = self._read(key)
            if current is not None and current.value == value:
                await self._write(name, key, None)
            raise

        logger.info("Acquired lock: %s", name)
        source = CancellationTokenSource(token)
        watcher = asyncio.create_task(self._watch(name, key, value, source))
        try:
            yield Lease(name, value, source.token)
        finally:
            watcher.cancel()
            source.close()
            current = self._read(key)
            if current is not None and current.value == value:
                logger.info("Releasing lock: %s", name)
                await self._write(name, key, None)

    async def _watch(
        self, name: str, key: str, value: str, source: CancellationTokenSource
    ) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            current = self._read(key)
            if current is None or current.value != value:
                logger.warning("Lock %s was taken over, cancelling holder", name)
                source.cancel()
                return

    async def release_stale_locks(self) -> list[str]:
        """Delete expired locks and locks whose owner process is gone.

        Returns:
            Names of the released locks
        """
        released = []
        now = time.time() * 1000
        for key in self.store.keys():
            if not key.startswith(LOCK_PREFIX):
                continue
            lock = self._read(key)
            if lock is not None and not self.is_stale(lock, now):
                continue
            name = key[len(LOCK_PREFIX):]
            logger.info("Releasing stale lock: %s", name)
            await self._write(name, key, None)
            released.append(name)
        return released

    def start_stale_sweep(self) -> None:
        """Run release_stale_locks now and then periodically until close()."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await self.release_stale_locks()
            except LockFailed as e:
                if e.should_report:
                    logger.error("Stale lock sweep failed: %s", e)
                else:
                    logger.debug("Stale lock sweep failed: %s", e)
            await asyncio.sleep(self.stale_check_interval)

    async def close(self) -> None:
        """Stop the stale-lock sweep."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
