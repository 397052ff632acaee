"""Pydantic models shared between the orchestrator, the services and the API."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import Field, model_validator

from .normalizer import CamelModel, ExtractedInvoice


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    SPLIT_PROPOSED = "SPLIT_PROPOSED"
    SPLITTING = "SPLITTING"
    SPLIT_VALIDATED = "SPLIT_VALIDATED"
    EXTRACTING_DATA = "EXTRACTING_DATA"
    DATA_VALIDATION_PENDING = "DATA_VALIDATION_PENDING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class SplitRange(CamelModel):
    """Inclusive page interval assigned to one output invoice."""

    start_page: int = Field(..., ge=1)
    end_page: int = Field(..., ge=1)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    label: Optional[str] = None

    @model_validator(mode="after")
    def _ordered(self) -> "SplitRange":
        if self.start_page > self.end_page:
            raise ValueError(f"startPage {self.start_page} is after endPage {self.end_page}")
        return self

    @property
    def page_count(self) -> int:
        return self.end_page - self.start_page + 1


class BoundaryCandidate(CamelModel):
    """Last page of an invoice as proposed by the boundary detector."""

    page: int
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class ValidatedSplit(SplitRange):
    file_ref: str


# Layout as returned by the analyzer. Page numbers are 1-based and absolute.


class LayoutCell(CamelModel):
    row_index: int
    column_index: int
    content: str = ""


class LayoutTable(CamelModel):
    page_number: int = 1
    cells: list[LayoutCell] = Field(default_factory=list)


class LayoutPage(CamelModel):
    page_number: int
    text: str = ""


class TextBlock(CamelModel):
    page_number: int
    content: str


class LayoutResult(CamelModel):
    pages: list[LayoutPage] = Field(default_factory=list)
    tables: list[LayoutTable] = Field(default_factory=list)
    text_blocks: list[TextBlock] = Field(default_factory=list)

    def content_for(self, start_page: int, end_page: int) -> "InvoiceContent":
        """Slice the pages and tables that belong to one split."""

        def inside(page_number: int) -> bool:
            return start_page <= page_number <= end_page

        pages = [page for page in self.pages if inside(page.page_number)]
        text = "\n\n".join(
            f"## Page {page.page_number}\n{page.text.strip()}" for page in pages
        )
        return InvoiceContent(
            start_page=start_page,
            end_page=end_page,
            text=text,
            tables=[table for table in self.tables if inside(table.page_number)],
        )


class InvoiceContent(CamelModel):
    """What the record extractor sees for one split."""

    start_page: int
    end_page: int
    text: str = ""
    tables: list[LayoutTable] = Field(default_factory=list)


class TableHint(CamelModel):
    table_index: int
    headers: list[str]
    score: int


class TableHints(CamelModel):
    hints: list[TableHint] = Field(default_factory=list)
    glossary: str = ""


class FailureDetail(CamelModel):
    kind: str
    stage: Optional[BatchStatus] = None
    detail: str
    issues: list[dict[str, Any]] = Field(default_factory=list)
    occurred_at: datetime = Field(default_factory=utcnow)


class ReviewState(str, Enum):
    PENDING = "PENDING"
    FAILED = "FAILED"
    VALIDATED = "VALIDATED"


class InvoiceReview(CamelModel):
    state: ReviewState = ReviewState.PENDING
    failure: Optional[FailureDetail] = None
    raw_output: Optional[Any] = None
    validated_at: Optional[datetime] = None


class DocumentBatch(CamelModel):
    id: str
    original_filename: str
    file_ref: str
    page_count: int = Field(..., ge=1)
    status: BatchStatus = BatchStatus.UPLOADED
    split_proposal: list[SplitRange] = Field(default_factory=list)
    validated_splits: list[ValidatedSplit] = Field(default_factory=list)
    extracted_data: list[Optional[ExtractedInvoice]] = Field(default_factory=list)
    invoice_reviews: list[InvoiceReview] = Field(default_factory=list)
    layout: Optional[LayoutResult] = None
    error: Optional[FailureDetail] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def summary(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude={"layout"})


class BatchStatusView(CamelModel):
    batch_id: str
    status: BatchStatus
    stable: bool
    next_action: Optional[str] = None
    in_flight: bool = False
    error: Optional[FailureDetail] = None
    invoice_count: int = 0
    invoices_validated: int = 0
    invoices_failed: int = 0


class InvoiceView(CamelModel):
    """One validated split with its extracted record and review state."""

    index: int
    split: ValidatedSplit
    record: Optional[ExtractedInvoice] = None
    review: InvoiceReview
