"""Key/value storage contract used for session, sequence and key material.

Backends store JSON-serialisable values under a fixed namespace so that a
shared store can hold unrelated data next to ours.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

_LOGGER = logging.getLogger(__name__)

NAMESPACE = "talkwire"


class BaseStorage(ABC):
    """Abstract async key/value store.

    Implementations must scope keys under ``NAMESPACE``; ``migrate`` copies
    every entry of that namespace into another storage instance.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the stored value or None when absent."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store a JSON-serialisable value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every key in the namespace."""

    @abstractmethod
    async def migrate(self, other: BaseStorage) -> None:
        """Copy every key in the namespace into ``other``."""


class MemoryStorage(BaseStorage):
    """Process-local storage. Nothing survives the process."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    @staticmethod
    def _key(key: str) -> str:
        return f"{NAMESPACE}:{key}"

    async def get(self, key: str) -> Any | None:
        return self._data.get(self._key(key))

    async def set(self, key: str, value: Any) -> None:
        # round-trip through JSON so callers cannot mutate stored state
        self._data[self._key(key)] = json.loads(json.dumps(value))

    async def delete(self, key: str) -> None:
        self._data.pop(self._key(key), None)

    async def clear(self) -> None:
        self._data.clear()

    async def migrate(self, other: BaseStorage) -> None:
        prefix = f"{NAMESPACE}:"
        for full_key, value in list(self._data.items()):
            await other.set(full_key.removeprefix(prefix), value)


class FileStorage(BaseStorage):
    """JSON file storage.

    The whole file is one object; our entries live under the ``NAMESPACE``
    key so the file can be shared. Writes replace the file atomically. Disk
    reads and writes run in a worker thread, never on the event loop.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._cache: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open(encoding="utf-8") as f:
            document = json.load(f)
        if not isinstance(document, dict):
            raise ValueError(f"Storage file is not a JSON object: {self.path}")
        return document

    def _write(self, text: str) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(text, encoding="utf-8")
        tmp_path.replace(self.path)

    async def _entries(self) -> dict[str, Any]:
        if self._cache is None:
            document = await asyncio.to_thread(self._read)
            document.setdefault(NAMESPACE, {})
            self._cache = document
        entries: dict[str, Any] = self._cache[NAMESPACE]
        return entries

    async def _flush(self) -> None:
        document = self._cache or {NAMESPACE: {}}
        text = json.dumps(document, indent=2, sort_keys=True)
        await asyncio.to_thread(self._write, text)
        _LOGGER.debug("[%s] Flushed %d entries", self.path, len(document[NAMESPACE]))

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            return (await self._entries()).get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            (await self._entries())[key] = json.loads(json.dumps(value))
            await self._flush()

    async def delete(self, key: str) -> None:
        async with self._lock:
            if (await self._entries()).pop(key, None) is not None:
                await self._flush()

    async def clear(self) -> None:
        async with self._lock:
            (await self._entries()).clear()
            await self._flush()

    async def migrate(self, other: BaseStorage) -> None:
        async with self._lock:
            snapshot = dict(await self._entries())
        for key, value in snapshot.items():
            await other.set(key, value)
