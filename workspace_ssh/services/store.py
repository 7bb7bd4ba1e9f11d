"""Shared key-value state stores.

``JsonFileStore`` is the cross-process store. Each key lives in its own
JSON file under a state directory: reads always go back to disk so that
writes from other processes are seen, and a write atomically replaces
only its own key's file, never another key's.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

SUFFIX = ".json"


class JsonFileStore:
    """Key-value store persisted as one JSON file per key."""

    def __init__(self, directory: Path | str):
        """Initialize store.

        Args:
            directory: State directory; created on first write
        """
        self.directory = Path(os.path.expanduser(str(directory)))

    def _path(self, key: str) -> Path:
        return self.directory / (quote(key, safe="") + SUFFIX)

    def _read(self, key: str) -> Any:
        path = self._path(key)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Cannot read state file %s: %s", path, e)
            return None

        if not content.strip():
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            logger.error("State file %s is not valid JSON: %s", path, e)
            return None

    def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        if value is None:
            path.unlink(missing_ok=True)
            return

        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2, sort_keys=True)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def get(self, key: str, default: Any = None) -> Any:
        value = self._read(key)
        return default if value is None else value

    def keys(self) -> list[str]:
        try:
            names = os.listdir(self.directory)
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Cannot list state directory %s: %s", self.directory, e)
            return []
        return sorted(
            unquote(name[: -len(SUFFIX)])
            for name in names
            if name.endswith(SUFFIX) and not name.startswith(".")
        )

    async def update(self, key: str, value: Any) -> None:
        """Set key to value (None deletes) and persist."""
        await asyncio.to_thread(self._write, key, value)


class MemoryStore:
    """In-process store; shared between tasks standing in for processes."""

    def __init__(self, data: dict[str, Any] | None = None):
        self.data: dict[str, Any] = dict(data or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def keys(self) -> list[str]:
        return list(self.data)

    async def update(self, key: str, value: Any) -> None:
        await asyncio.sleep(0)
        if value is None:
            self.data.pop(key, None)
        else:
            self.data[key] = value
