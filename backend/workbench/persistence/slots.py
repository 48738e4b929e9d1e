"""Key-value slot backends used by the persistence store and the sandbox clock.

Each backend stores opaque text under a string key. ``read`` returns ``None``
for a missing key.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from typing import Any, Protocol

from vercel.cache import AsyncRuntimeCache


logger = logging.getLogger("workbench.persistence.slots")


class SlotStore(Protocol):
    async def read(self, key: str) -> str | None: ...

    async def write(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemorySlotStore:
    """Process-local slots. Used in tests and for throwaway sessions."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def read(self, key: str) -> str | None:
        return self.data.get(key)

    async def write(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileSlotStore:
    """One JSON file per slot under a directory; writes replace atomically."""

    def __init__(self, directory: str):
        self.directory = os.path.abspath(directory)

    def _path(self, key: str) -> str:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in key)
        return os.path.join(self.directory, f"{safe}.json")

    async def read(self, key: str) -> str | None:
        path = self._path(key)

        def _read() -> str | None:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return f.read()
            except FileNotFoundError:
                return None

        return await asyncio.to_thread(_read)

    async def write(self, key: str, value: str) -> None:
        path = self._path(key)

        def _write() -> None:
            os.makedirs(self.directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(value)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise

        await asyncio.to_thread(_write)

    async def delete(self, key: str) -> None:
        path = self._path(key)

        def _delete() -> None:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

        await asyncio.to_thread(_delete)


class RuntimeCacheSlotStore:
    """Slots kept in Vercel Runtime Cache, tagged per key.

    A positive ``ttl_seconds`` expires entries; 0 keeps them until deleted.
    """

    def __init__(self, namespace: str, ttl_seconds: int = 0, cache: Any | None = None):
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self.cache = cache or AsyncRuntimeCache(namespace=namespace)

    def _cache_key(self, key: str) -> str:
        return f"slot:{key}"

    async def read(self, key: str) -> str | None:
        val = await self.cache.get(self._cache_key(key))
        return val if isinstance(val, str) else None

    async def write(self, key: str, value: str) -> None:
        options: dict[str, Any] = {"tags": [f"slot:{key}"]}
        if self.ttl_seconds > 0:
            options["ttl"] = self.ttl_seconds
        await self.cache.set(self._cache_key(key), value, options)

    async def delete(self, key: str) -> None:
        await self.cache.delete(self._cache_key(key))


def create_slot_store(
    backend: str, *, directory: str, namespace: str, ttl_seconds: int
) -> SlotStore:
    backend = (backend or "file").strip().lower()
    if backend == "memory":
        return MemorySlotStore()
    if backend == "file":
        return FileSlotStore(directory)
    if backend == "runtime_cache":
        return RuntimeCacheSlotStore(namespace, ttl_seconds)
    raise ValueError(f"Unknown storage backend: {backend}")
