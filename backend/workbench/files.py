"""File collaborators: read/write named text files by project-relative path.

The core never lists directories; paths are opaque identifiers. A missing
file is reported as ``FileNotFoundError`` from ``read``.
"""

import asyncio
import logging
import os
from typing import Protocol


logger = logging.getLogger("workbench.files")


class FileCollaborator(Protocol):
    async def read(self, path: str) -> str: ...

    async def write(self, path: str, content: str) -> None: ...


def normalize_path(path: str) -> str:
    p = str(path).strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


_TYPES_BY_EXT = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".css": "css",
    ".html": "html",
    ".json": "json",
    ".md": "markdown",
}


def file_type_for(path: str) -> str:
    _, ext = os.path.splitext(path.lower())
    return _TYPES_BY_EXT.get(ext, "text")


class ProjectFiles:
    """In-memory project map of path -> content."""

    def __init__(self, project: dict[str, str] | None = None):
        self.project: dict[str, str] = dict(project or {})

    async def read(self, path: str) -> str:
        key = normalize_path(path)
        if key not in self.project:
            raise FileNotFoundError(key)
        return self.project[key]

    async def write(self, path: str, content: str) -> None:
        self.project[normalize_path(path)] = content


class LocalFiles:
    """Files under a root directory on the local disk."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def resolve(self, path: str) -> str:
        rel = normalize_path(path)
        if not rel:
            raise ValueError("empty file path")
        full = os.path.abspath(os.path.join(self.root, rel))
        if full != self.root and not full.startswith(self.root + os.sep):
            raise ValueError(f"path escapes project root: {path}")
        return full

    async def read(self, path: str) -> str:
        full = self.resolve(path)

        def _read() -> str:
            with open(full, "r", encoding="utf-8") as f:
                return f.read()

        return await asyncio.to_thread(_read)

    async def write(self, path: str, content: str) -> None:
        full = self.resolve(path)

        def _write() -> None:
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, "w", encoding="utf-8") as f:
                f.write(content)

        await asyncio.to_thread(_write)
        logger.debug("wrote %s (%d bytes)", path, len(content))
