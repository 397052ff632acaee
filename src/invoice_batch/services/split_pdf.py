"""Split PDF service: one physical PDF per validated page range."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence

import fitz  # PyMuPDF

from ..errors import InvalidUploadError, SplitError
from ..models import SplitRange
from .file_store import FileStore
from .helpers import generate_split_path

logger = logging.getLogger("invoice_batch.split_pdf")


class PdfSplitter(Protocol):
    async def split(self, file_bytes: bytes, ranges: Sequence[SplitRange], *, batch_id: str) -> list[str]:
        """Write one file per range and return their references, or raise ``SplitError``."""
        ...


def pdf_page_count(file_bytes: bytes) -> int:
    try:
        with fitz.open(stream=file_bytes, filetype="pdf") as document:
            return document.page_count
    except (RuntimeError, ValueError) as exc:
        raise InvalidUploadError(f"Unreadable PDF: {exc}") from exc


class PyMuPdfSplitter:
    def __init__(self, file_store: FileStore) -> None:
        self.file_store = file_store

    async def split(self, file_bytes: bytes, ranges: Sequence[SplitRange], *, batch_id: str) -> list[str]:
        parts = await asyncio.to_thread(self._render, file_bytes, ranges)

        refs = []
        for index, (split, data) in enumerate(zip(ranges, parts), start=1):
            ref = generate_split_path(batch_id, index, split)
            try:
                await self.file_store.write(ref, data)
            except OSError as exc:
                raise SplitError(f"Could not store {ref}: {exc}") from exc
            refs.append(ref)

        logger.info(f"[SPLIT_PDF] Batch {batch_id}: wrote {len(refs)} invoice files")
        return refs

    @staticmethod
    def _render(file_bytes: bytes, ranges: Sequence[SplitRange]) -> list[bytes]:
        try:
            source = fitz.open(stream=file_bytes, filetype="pdf")
        except (RuntimeError, ValueError) as exc:
            raise SplitError(f"Unreadable PDF: {exc}") from exc

        parts = []
        with source:
            for split in ranges:
                if split.end_page > source.page_count:
                    raise SplitError(
                        f"Range {split.start_page}-{split.end_page} exceeds {source.page_count} pages"
                    )
                with fitz.open() as part:
                    part.insert_pdf(source, from_page=split.start_page - 1, to_page=split.end_page - 1)
                    parts.append(part.tobytes())
                logger.info(f"[SPLIT_PDF] Rendered pages {split.start_page}-{split.end_page}")
        return parts
