"""Layout analysis service: page text, text blocks and tables of a PDF."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import fitz  # PyMuPDF

from ..errors import AnalysisError
from ..models import LayoutCell, LayoutPage, LayoutResult, LayoutTable, TextBlock

logger = logging.getLogger("invoice_batch.analyze_layout")


class LayoutAnalyzer(Protocol):
    async def analyze(self, file_bytes: bytes) -> LayoutResult:
        """Return the document layout or raise ``AnalysisError``."""
        ...


class PyMuPdfLayoutAnalyzer:
    """Local analyzer built on PyMuPDF's text and table extraction."""

    def __init__(self, detect_tables: bool = True) -> None:
        self.detect_tables = detect_tables

    async def analyze(self, file_bytes: bytes) -> LayoutResult:
        return await asyncio.to_thread(self._analyze, file_bytes)

    def _analyze(self, file_bytes: bytes) -> LayoutResult:
        try:
            document = fitz.open(stream=file_bytes, filetype="pdf")
        except (RuntimeError, ValueError) as exc:
            raise AnalysisError(f"Unreadable PDF: {exc}") from exc

        layout = LayoutResult()
        with document:
            logger.info(f"[ANALYZE_LAYOUT] PDF has {document.page_count} pages")
            for page_number, page in enumerate(document, start=1):
                layout.pages.append(LayoutPage(page_number=page_number, text=page.get_text("text")))
                for block in page.get_text("blocks"):
                    # (x0, y0, x1, y1, text, block_no, block_type); type 0 is text
                    if block[6] == 0 and block[4].strip():
                        layout.text_blocks.append(TextBlock(page_number=page_number, content=block[4].strip()))
                if self.detect_tables:
                    layout.tables.extend(self._page_tables(page, page_number))

        logger.info(
            f"[ANALYZE_LAYOUT] Found {len(layout.text_blocks)} text blocks, {len(layout.tables)} tables"
        )
        return layout

    @staticmethod
    def _page_tables(page: "fitz.Page", page_number: int) -> list[LayoutTable]:
        try:
            found = page.find_tables()
        except (RuntimeError, ValueError) as exc:
            raise AnalysisError(f"Table detection failed on page {page_number}: {exc}") from exc

        tables = []
        for table in found.tables:
            cells = [
                LayoutCell(row_index=row_idx, column_index=col_idx, content=(text or "").strip())
                for row_idx, row in enumerate(table.extract())
                for col_idx, text in enumerate(row)
            ]
            tables.append(LayoutTable(page_number=page_number, cells=cells))
        return tables
