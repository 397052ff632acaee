"""Shared fixtures: generated PDFs and in-memory fakes for the external services."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

import fitz  # PyMuPDF
import pytest

from invoice_batch.config import Settings
from invoice_batch.models import InvoiceContent, LayoutCell, LayoutPage, LayoutResult, LayoutTable
from invoice_batch.orchestrator import Orchestrator
from invoice_batch.services import LocalFileStore, PyMuPdfSplitter
from invoice_batch.store import InMemoryBatchStore


def make_pdf(page_count: int, texts: dict[int, str] | None = None) -> bytes:
    texts = texts or {}
    document = fitz.open()
    for page_number in range(1, page_count + 1):
        page = document.new_page()
        page.insert_text((72, 72), texts.get(page_number, f"Page {page_number}"))
    data = document.tobytes()
    document.close()
    return data


def make_table(page_number: int, headers: list[str], rows: list[list[str]] = ()) -> LayoutTable:
    cells = [
        LayoutCell(row_index=row_idx, column_index=col_idx, content=text)
        for row_idx, row in enumerate([headers, *rows])
        for col_idx, text in enumerate(row)
    ]
    return LayoutTable(page_number=page_number, cells=cells)


def make_layout(page_count: int = 10) -> LayoutResult:
    return LayoutResult(
        pages=[LayoutPage(page_number=n, text=f"Invoice page {n}") for n in range(1, page_count + 1)],
        tables=[
            make_table(1, ["Description", "Qty", "Amount"], [["Widget", "2", "10,00"]]),
            make_table(5, ["Foo", "Bar"], [["x", "y"]]),
        ],
    )


def valid_raw_record(start_page: int) -> dict[str, Any]:
    return {
        "lineItems": [
            {"type": "product", "description": f"Item from page {start_page}", "quantity": "2", "totalAmount": "1.234,50"},
            {"type": "tax", "description": "VAT 20%", "rate": "20", "totalAmount": "246,90"},
        ],
        "totalsAndSubtotals": [{"amountDue": "1,481.40", "currency": "EUR"}],
        "basicInformation": [{"documentNumber": f"INV-{start_page}"}],
        "importer": [],
        "exporter": [],
    }


class FakeLayoutAnalyzer:
    def __init__(self, layout: LayoutResult | None = None, error: Exception | None = None):
        self.layout = layout or make_layout()
        self.error = error
        self.gate: asyncio.Event | None = None
        self.calls = 0

    async def analyze(self, file_bytes: bytes) -> LayoutResult:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.layout


class FakeBoundaryDetector:
    def __init__(self, boundaries: Any = None, error: Exception | None = None):
        self.boundaries = (
            boundaries if boundaries is not None
            else [{"page": 4, "confidence": 0.9}, {"page": 7, "confidence": 0.8}]
        )
        self.error = error
        self.calls = 0

    async def detect_boundaries(self, layout: LayoutResult) -> Any:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.boundaries


class FakeRecordExtractor:
    """Returns a valid record per split unless told otherwise by start page."""

    def __init__(self) -> None:
        self.failures: dict[int, Exception] = {}
        self.outputs: dict[int, Any] = {}
        self.calls: list[tuple[InvoiceContent, str, str]] = []

    async def extract(self, content: InvoiceContent, hints_glossary: str, target_schema: str) -> Any:
        self.calls.append((content, hints_glossary, target_schema))
        if content.start_page in self.failures:
            raise self.failures[content.start_page]
        if content.start_page in self.outputs:
            return self.outputs[content.start_page]
        return valid_raw_record(content.start_page)


class FailingSplitter:
    def __init__(self, error: Exception):
        self.error = error

    async def split(self, file_bytes, ranges, *, batch_id):
        raise self.error


@pytest.fixture
def pdf_bytes() -> bytes:
    return make_pdf(10)


@pytest.fixture
def analyzer() -> FakeLayoutAnalyzer:
    return FakeLayoutAnalyzer()


@pytest.fixture
def detector() -> FakeBoundaryDetector:
    return FakeBoundaryDetector()


@pytest.fixture
def extractor() -> FakeRecordExtractor:
    return FakeRecordExtractor()


@pytest.fixture
def file_store(tmp_path: Path) -> LocalFileStore:
    return LocalFileStore(tmp_path / "artifacts")


@pytest.fixture
def make_orchestrator(
    file_store: LocalFileStore,
    analyzer: FakeLayoutAnalyzer,
    detector: FakeBoundaryDetector,
    extractor: FakeRecordExtractor,
) -> Callable[..., Orchestrator]:
    def factory(settings: Settings | None = None, splitter: Any = None) -> Orchestrator:
        return Orchestrator(
            store=InMemoryBatchStore(),
            files=file_store,
            layout_analyzer=analyzer,
            boundary_detector=detector,
            record_extractor=extractor,
            splitter=splitter or PyMuPdfSplitter(file_store),
            settings=settings or Settings(),
        )

    return factory


@pytest.fixture
def orchestrator(make_orchestrator) -> Orchestrator:
    return make_orchestrator()
