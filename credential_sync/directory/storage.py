"""
Persistence backends for the directory and audit log.

The directory keeps two JSON-like documents: ``registry`` (users keyed by
user_id) and ``audit`` (append-only list of entries). Any backend able to load
and save a whole document by name can hold them.

Backends:
- ``MemoryStorage``: documents held in process memory (tests, ephemeral use).
- ``JSONFileStorage``: one orjson-encoded file per document, replaced
  atomically on every save.
"""
import os
import copy
import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Union

import orjson

from ..exceptions import PersistenceError

logger = logging.getLogger("credsync.directory")


class DocumentStorage(ABC):
    """Load and save named JSON documents."""

    @abstractmethod
    async def load(self, name: str) -> Optional[dict[str, Any]]:
        """Return the stored document, or None if it was never saved.

        Raises:
            PersistenceError: If the backend is unavailable.
        """

    @abstractmethod
    async def save(self, name: str, document: dict[str, Any]) -> None:
        """Replace the stored document.

        Raises:
            PersistenceError: If the backend is unavailable.
        """


class MemoryStorage(DocumentStorage):
    """Keep documents in a dict; copies isolate callers from storage."""

    def __init__(self):
        self._documents: dict[str, dict[str, Any]] = {}

    async def load(self, name: str) -> Optional[dict[str, Any]]:
        doc = self._documents.get(name)
        return copy.deepcopy(doc) if doc is not None else None

    async def save(self, name: str, document: dict[str, Any]) -> None:
        self._documents[name] = copy.deepcopy(document)


class JSONFileStorage(DocumentStorage):
    """Store each document as ``<directory>/<name>.json``.

    Files are written to a temporary sibling and renamed into place so a
    crash never leaves a truncated document. Blocking file I/O runs in a
    worker thread.
    """

    def __init__(self, directory: Union[str, Path]):
        self._dir = Path(directory)
        self._locks: dict[str, asyncio.Lock] = {}

    def _path(self, name: str) -> Path:
        return self._dir / f"{name}.json"

    def _lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def _read(self, path: Path) -> Optional[dict[str, Any]]:
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        return orjson.loads(data)

    def _write(self, path: Path, document: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_bytes(orjson.dumps(document, option=orjson.OPT_INDENT_2))
        os.replace(tmp, path)

    async def load(self, name: str) -> Optional[dict[str, Any]]:
        path = self._path(name)
        async with self._lock(name):
            try:
                return await asyncio.to_thread(self._read, path)
            except (OSError, orjson.JSONDecodeError) as err:
                logger.error("Failed to read %s: %s", path, err)
                raise PersistenceError(f"Failed to read {name}: {err}") from err

    async def save(self, name: str, document: dict[str, Any]) -> None:
        path = self._path(name)
        async with self._lock(name):
            try:
                await asyncio.to_thread(self._write, path, document)
            except (OSError, TypeError) as err:
                logger.error("Failed to write %s: %s", path, err)
                raise PersistenceError(f"Failed to write {name}: {err}") from err
