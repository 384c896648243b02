"""
Key/value storage backends.

Everything persisted by the client goes through a ``KeyValueStorage``: string
keys, string values, async interface. Values are treated as untrusted on
read.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)


class KeyValueStorage(ABC):
    """Abstract async key/value store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete ``key``. Missing keys are not an error."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass

    @abstractmethod
    async def remove_prefix(self, prefix: str) -> None:
        """Delete every stored key that starts with ``prefix``."""
        pass


class MemoryStorage(KeyValueStorage):
    """In-process storage; lost when the process exits."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    async def remove_prefix(self, prefix: str) -> None:
        for key in [k for k in self._data if k.startswith(prefix)]:
            del self._data[key]

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


_SAFE_KEY = re.compile(r"[^A-Za-z0-9._-]")

SECURE_FILE_MODE = 0o600


class FileStorage(KeyValueStorage):
    """
    One file per key under ``directory``.

    Writes go to a temp file and are moved into place with ``os.replace``, so
    a reader sees either the old value or the new one. Concurrent writers to
    the same key resolve last-write-wins.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not key:
            raise ValueError("storage key must not be empty")
        return self.directory / (_SAFE_KEY.sub("_", key) + ".json")

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._read, self._path(key))

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, self._path(key), value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._unlink, self._path(key))

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear)

    async def remove_prefix(self, prefix: str) -> None:
        # Key sanitizing maps one character to one, so prefixes survive it
        await asyncio.to_thread(self._clear, _SAFE_KEY.sub("_", prefix))

    @staticmethod
    def _read(path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write(self, path: Path, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(f"{path.name}.{os.getpid()}.{id(value)}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as f:
                f.write(value)
            if os.name == "posix":
                os.chmod(temp_path, SECURE_FILE_MODE)
            os.replace(temp_path, path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def _clear(self, name_prefix: str = "") -> None:
        if not self.directory.exists():
            return
        for path in self.directory.glob("*.json"):
            if path.name.startswith(name_prefix):
                self._unlink(path)


class OriginScopedStorage(KeyValueStorage):
    """
    Prefixes every key with the application origin.

    Two applications sharing one backend never see each other's keys.
    ``clear`` removes every key under this origin, whichever process wrote it.
    """

    def __init__(self, backend: KeyValueStorage, origin: str):
        if not origin:
            raise ValueError("origin must not be empty")
        self.backend = backend
        self.origin = origin
        self._prefix = f"{origin}::"

    def _scoped(self, key: str) -> str:
        return self._prefix + key

    async def get(self, key: str) -> Optional[str]:
        return await self.backend.get(self._scoped(key))

    async def set(self, key: str, value: str) -> None:
        await self.backend.set(self._scoped(key), value)

    async def remove(self, key: str) -> None:
        await self.backend.remove(self._scoped(key))

    async def clear(self) -> None:
        await self.backend.remove_prefix(self._prefix)
        logger.debug(f"Cleared {self.origin} scoped storage")

    async def remove_prefix(self, prefix: str) -> None:
        await self.backend.remove_prefix(self._scoped(prefix))
