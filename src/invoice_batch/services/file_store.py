"""File storage service for uploaded PDFs and split artifacts."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Protocol

logger = logging.getLogger("invoice_batch.file_store")


class FileStore(Protocol):
    async def write(self, ref: str, data: bytes) -> str: ...

    async def read(self, ref: str) -> bytes: ...

    async def delete_tree(self, prefix: str) -> None: ...


class LocalFileStore:
    """Stores artifacts under a root directory; refs are root-relative paths."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    def path_for(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if not path.is_relative_to(self.root):
            raise ValueError(f"File reference escapes the artifact root: {ref}")
        return path

    async def write(self, ref: str, data: bytes) -> str:
        path = self.path_for(ref)
        await asyncio.to_thread(self._write, path, data)
        logger.info(f"[FILE_STORE] Wrote {len(data)} bytes to {ref}")
        return ref

    async def read(self, ref: str) -> bytes:
        return await asyncio.to_thread(self.path_for(ref).read_bytes)

    async def delete_tree(self, prefix: str) -> None:
        path = self.path_for(prefix)
        await asyncio.to_thread(shutil.rmtree, path, True)
        logger.info(f"[FILE_STORE] Removed {prefix}")

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
