"""
Batch orchestrator - the state machine that drives a document batch.

Lifecycle:
1. UPLOADED -> PROCESSING: layout analysis, boundary detection, split planning
2. SPLIT_PROPOSED: a reviewer edits and confirms the page ranges
3. SPLITTING -> SPLIT_VALIDATED: one physical PDF per range
4. EXTRACTING_DATA -> DATA_VALIDATION_PENDING: one record per split, fan-out
5. COMPLETED once every record has been validated by a reviewer

Rules:
- Every status change goes through ``TRANSITIONS``; nothing compares status
  strings at call sites.
- One automated stage per batch at a time. The per-batch lock only guards the
  check-and-enter step; the slow adapter calls run outside it.
- Adapter failures park the batch in ERROR with the failed stage recorded.
  There is no automatic retry: ``reprocess`` returns the batch to the stage's
  entry status and the caller re-issues the stage.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

from .config import Settings
from .errors import (
    AdapterError,
    AnalysisError,
    FeatureArchivedError,
    InputError,
    InvalidUploadError,
    PipelineError,
    RecordValidationError,
    SplitError,
    StateError,
)
from .models import (
    BatchStatus,
    DocumentBatch,
    FailureDetail,
    InvoiceReview,
    InvoiceView,
    LayoutResult,
    ReviewState,
    ValidatedSplit,
    utcnow,
)
from .normalizer import ExtractedInvoice, merge_correction, normalize_record, target_schema_description
from .services import (
    BoundaryDetector,
    FileStore,
    LayoutAnalyzer,
    PdfSplitter,
    RecordExtractor,
    parse_boundaries,
    parse_extraction_output,
    pdf_page_count,
)
from .services.helpers import batch_prefix, generate_original_path, new_batch_id
from .split_planner import coerce_ranges, plan_splits
from .store import BatchStore
from .table_hints import derive_table_hints

logger = logging.getLogger("invoice_batch.orchestrator")

S = BatchStatus

TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    S.UPLOADED: frozenset({S.PROCESSING}),
    # back-edges to entry statuses are reprocess of an interrupted stage
    S.PROCESSING: frozenset({S.SPLIT_PROPOSED, S.ERROR, S.UPLOADED}),
    S.SPLIT_PROPOSED: frozenset({S.SPLITTING}),
    S.SPLITTING: frozenset({S.SPLIT_VALIDATED, S.COMPLETED, S.ERROR, S.SPLIT_PROPOSED}),
    S.SPLIT_VALIDATED: frozenset({S.EXTRACTING_DATA}),
    S.EXTRACTING_DATA: frozenset({S.DATA_VALIDATION_PENDING, S.ERROR, S.SPLIT_VALIDATED}),
    S.DATA_VALIDATION_PENDING: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset(),
    S.ERROR: frozenset({S.PROCESSING, S.UPLOADED, S.SPLIT_PROPOSED, S.SPLIT_VALIDATED}),
}

# automated stage -> status the stage is entered from
STAGE_ENTRY: dict[BatchStatus, BatchStatus] = {
    S.PROCESSING: S.UPLOADED,
    S.SPLITTING: S.SPLIT_PROPOSED,
    S.EXTRACTING_DATA: S.SPLIT_VALIDATED,
}


def check_transition(current: BatchStatus, target: BatchStatus) -> None:
    if target not in TRANSITIONS[current]:
        raise StateError(f"Cannot move batch from {current.value} to {target.value}")


def _move(batch: DocumentBatch, target: BatchStatus) -> None:
    check_transition(batch.status, target)
    logger.info(f"[ORCHESTRATOR] Batch {batch.id}: {batch.status.value} -> {target.value}")
    batch.status = target


def _failure(exc: BaseException, stage: BatchStatus) -> FailureDetail:
    if isinstance(exc, PipelineError):
        return FailureDetail(kind=exc.kind, stage=stage, detail=exc.detail, issues=exc.issues)
    return FailureDetail(kind="internal", stage=stage, detail=f"{type(exc).__name__}: {exc}")


class Orchestrator:
    """Owns every status change of every batch."""

    def __init__(
        self,
        store: BatchStore,
        files: FileStore,
        layout_analyzer: LayoutAnalyzer,
        boundary_detector: BoundaryDetector,
        record_extractor: RecordExtractor,
        splitter: PdfSplitter,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.files = files
        self.layout_analyzer = layout_analyzer
        self.boundary_detector = boundary_detector
        self.record_extractor = record_extractor
        self.splitter = splitter
        self.settings = settings or Settings()
        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: set[str] = set()
        self._schema_description = target_schema_description()

    # ------------------------------------------------------------------
    # batch records
    # ------------------------------------------------------------------

    async def create_batch(self, filename: str, file_bytes: bytes) -> DocumentBatch:
        if not file_bytes:
            raise InvalidUploadError("Uploaded file is empty")
        if not filename or not filename.lower().endswith(".pdf"):
            raise InvalidUploadError(f"Only PDF uploads are accepted, got {filename!r}")
        if not file_bytes.startswith(b"%PDF"):
            raise InvalidUploadError("Uploaded file is not a PDF document")
        page_count = await asyncio.to_thread(pdf_page_count, file_bytes)
        if page_count < 1:
            raise InvalidUploadError("PDF has no pages")

        batch_id = new_batch_id()
        file_ref = await self.files.write(generate_original_path(batch_id), file_bytes)
        batch = DocumentBatch(
            id=batch_id,
            original_filename=filename,
            file_ref=file_ref,
            page_count=page_count,
        )
        logger.info(f"[ORCHESTRATOR] Uploaded {filename} as batch {batch_id} ({page_count} pages)")
        return await self.store.create(batch)

    async def get_batch(self, batch_id: str) -> DocumentBatch:
        return await self.store.get(batch_id)

    async def list_batches(self) -> list[DocumentBatch]:
        return await self.store.list()

    async def delete_batch(self, batch_id: str) -> None:
        async with await self._lock_for(batch_id):
            if batch_id in self._in_flight:
                raise StateError(f"Batch {batch_id} has a stage in flight")
            await self.store.delete(batch_id)
            self._locks.pop(batch_id, None)
        await self.files.delete_tree(batch_prefix(batch_id))

    def is_in_flight(self, batch_id: str) -> bool:
        return batch_id in self._in_flight

    # ------------------------------------------------------------------
    # stages
    # ------------------------------------------------------------------

    async def start_processing(self, batch_id: str) -> DocumentBatch:
        def retry_only_processing(batch: DocumentBatch) -> None:
            if batch.status is S.ERROR and (batch.error is None or batch.error.stage is not S.PROCESSING):
                raise StateError("Batch failed after processing; use reprocess")

        batch = await self._enter_stage(batch_id, S.PROCESSING, precheck=retry_only_processing)

        async def work() -> DocumentBatch:
            file_bytes = await self._read_original(batch, AnalysisError)
            layout = await self.layout_analyzer.analyze(file_bytes)
            candidates = parse_boundaries(await self.boundary_detector.detect_boundaries(layout))
            proposal = plan_splits(batch.page_count, candidates)
            logger.info(f"[ORCHESTRATOR] Batch {batch_id}: proposed {len(proposal)} splits")

            def propose(stored: DocumentBatch) -> None:
                _move(stored, S.SPLIT_PROPOSED)
                stored.layout = layout
                stored.split_proposal = proposal

            return await self.store.update(batch_id, propose)

        return await self._run_stage(batch_id, S.PROCESSING, work)

    async def update_splits(self, batch_id: str, ranges: Sequence[Any]) -> DocumentBatch:
        async with await self._lock_for(batch_id):

            def replace(batch: DocumentBatch) -> None:
                if batch.status is not S.SPLIT_PROPOSED:
                    raise StateError(f"Splits can only be edited in SPLIT_PROPOSED, batch is {batch.status.value}")
                batch.split_proposal = coerce_ranges(ranges, batch.page_count)

            batch = await self.store.update(batch_id, replace)
        logger.info(f"[ORCHESTRATOR] Batch {batch_id}: split proposal replaced ({len(batch.split_proposal)} ranges)")
        return batch

    async def validate_splits(self, batch_id: str) -> DocumentBatch:
        batch = await self._enter_stage(batch_id, S.SPLITTING)

        async def work() -> DocumentBatch:
            file_bytes = await self._read_original(batch, SplitError)
            refs = await self.splitter.split(file_bytes, batch.split_proposal, batch_id=batch_id)
            if len(refs) != len(batch.split_proposal):
                raise SplitError(f"Splitter returned {len(refs)} files for {len(batch.split_proposal)} ranges")
            validated = [
                ValidatedSplit(**split.model_dump(), file_ref=ref)
                for split, ref in zip(batch.split_proposal, refs)
            ]
            target = S.SPLIT_VALIDATED if self.settings.extraction_enabled else S.COMPLETED

            def confirm(stored: DocumentBatch) -> None:
                _move(stored, target)
                stored.validated_splits = validated
                stored.extracted_data = []
                stored.invoice_reviews = []

            return await self.store.update(batch_id, confirm)

        return await self._run_stage(batch_id, S.SPLITTING, work)

    async def extract_data(self, batch_id: str, invoice_index: Optional[int] = None) -> DocumentBatch:
        """Extract every validated split, or re-extract one while awaiting review."""
        self._require_extraction("data extraction")

        if invoice_index is None:
            batch = await self._enter_stage(batch_id, S.EXTRACTING_DATA)
            indexes = [
                idx for idx in range(len(batch.validated_splits))
                if not self._is_validated(batch, idx)
            ]
        else:

            def single_invoice(stored: DocumentBatch) -> None:
                if stored.status is not S.DATA_VALIDATION_PENDING:
                    raise StateError(
                        f"Single-invoice extraction needs DATA_VALIDATION_PENDING, batch is {stored.status.value}"
                    )
                self._check_index(stored, invoice_index)
                if self._is_validated(stored, invoice_index):
                    raise StateError(f"Invoice {invoice_index} is already validated")

            batch = await self._enter_stage(batch_id, None, precheck=single_invoice)
            indexes = [invoice_index]

        async def work() -> DocumentBatch:
            fresh_layout = None
            layout = batch.layout
            try:
                if layout is None:
                    file_bytes = await self._read_original(batch, AnalysisError)
                    layout = fresh_layout = await self.layout_analyzer.analyze(file_bytes)
            except AnalysisError as exc:
                if invoice_index is None:
                    raise
                # a single re-extraction never takes the whole batch down
                outcomes = [(None, InvoiceReview(state=ReviewState.FAILED, failure=_failure(exc, S.EXTRACTING_DATA)))]
            else:
                outcomes = await asyncio.gather(
                    *(self._extract_invoice(batch, idx, layout) for idx in indexes)
                )

            def store_results(stored: DocumentBatch) -> None:
                if invoice_index is None:
                    _move(stored, S.DATA_VALIDATION_PENDING)
                size = len(stored.validated_splits)
                stored.extracted_data = (stored.extracted_data + [None] * size)[:size]
                stored.invoice_reviews = (
                    stored.invoice_reviews + [InvoiceReview() for _ in range(size)]
                )[:size]
                for idx, (record, review) in zip(indexes, outcomes):
                    # a reviewer's confirmation always wins over a re-extraction
                    if stored.invoice_reviews[idx].state is ReviewState.VALIDATED:
                        continue
                    stored.extracted_data[idx] = record
                    stored.invoice_reviews[idx] = review
                if fresh_layout is not None:
                    stored.layout = fresh_layout

            updated = await self.store.update(batch_id, store_results)
            failed = sum(1 for _, review in outcomes if review.state is ReviewState.FAILED)
            logger.info(
                f"[ORCHESTRATOR] Batch {batch_id}: extracted {len(outcomes) - failed}/{len(outcomes)} invoices"
            )
            return updated

        return await self._run_stage(batch_id, S.EXTRACTING_DATA, work)

    async def get_extracted_data(self, batch_id: str) -> list[InvoiceView]:
        self._require_extraction("extracted data retrieval")
        batch = await self.store.get(batch_id)
        views = []
        for idx, split in enumerate(batch.validated_splits):
            record = batch.extracted_data[idx] if idx < len(batch.extracted_data) else None
            review = batch.invoice_reviews[idx] if idx < len(batch.invoice_reviews) else InvoiceReview()
            views.append(InvoiceView(index=idx, split=split, record=record, review=review))
        return views

    async def submit_validation(
        self, batch_id: str, invoice_index: int, corrected_record: dict[str, Any]
    ) -> DocumentBatch:
        """Merge a reviewer's correction; the batch completes with the last one."""
        self._require_extraction("data validation")

        async with await self._lock_for(batch_id):

            def validate(batch: DocumentBatch) -> None:
                if batch.status is not S.DATA_VALIDATION_PENDING:
                    raise StateError(f"Records can only be validated in DATA_VALIDATION_PENDING, batch is {batch.status.value}")
                self._check_index(batch, invoice_index)
                batch.extracted_data[invoice_index] = merge_correction(
                    batch.extracted_data[invoice_index], corrected_record
                )
                batch.invoice_reviews[invoice_index] = InvoiceReview(
                    state=ReviewState.VALIDATED, validated_at=utcnow()
                )
                if all(review.state is ReviewState.VALIDATED for review in batch.invoice_reviews):
                    _move(batch, S.COMPLETED)

            batch = await self.store.update(batch_id, validate)
        logger.info(f"[ORCHESTRATOR] Batch {batch_id}: invoice {invoice_index} validated")
        return batch

    async def reprocess(self, batch_id: str) -> DocumentBatch:
        """Return a failed or interrupted batch to the entry status of its stage."""
        async with await self._lock_for(batch_id):
            if batch_id in self._in_flight:
                raise StateError(f"Batch {batch_id} has a stage in flight")

            def reset(batch: DocumentBatch) -> None:
                if batch.status is S.ERROR:
                    stage = batch.error.stage if batch.error else None
                elif batch.status in STAGE_ENTRY:
                    stage = batch.status
                else:
                    raise StateError(f"Nothing to reprocess in {batch.status.value}")
                entry = STAGE_ENTRY.get(stage) if stage is not None else None
                if entry is None:
                    raise StateError("No failed stage recorded for this batch")
                _move(batch, entry)
                batch.error = None

            return await self.store.update(batch_id, reset)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    async def _lock_for(self, batch_id: str) -> asyncio.Lock:
        # only known batches get a lock, so bad ids never grow the map
        await self.store.get_status(batch_id)
        return self._locks.setdefault(batch_id, asyncio.Lock())

    async def _enter_stage(
        self,
        batch_id: str,
        stage: Optional[BatchStatus],
        precheck: Callable[[DocumentBatch], None] | None = None,
    ) -> DocumentBatch:
        """Atomically check the batch is idle, move it into ``stage`` and mark it in flight."""
        async with await self._lock_for(batch_id):
            if batch_id in self._in_flight:
                raise StateError(f"Batch {batch_id} already has a stage in flight")

            def enter(batch: DocumentBatch) -> None:
                if precheck is not None:
                    precheck(batch)
                if stage is not None:
                    _move(batch, stage)
                    batch.error = None

            batch = await self.store.update(batch_id, enter)
            self._in_flight.add(batch_id)
        return batch

    async def _run_stage(
        self, batch_id: str, stage: BatchStatus, work: Callable[[], Awaitable[DocumentBatch]]
    ) -> DocumentBatch:
        try:
            return await work()
        except AdapterError as exc:
            return await self._park_in_error(batch_id, stage, exc)
        except Exception as exc:
            logger.exception(f"[ORCHESTRATOR] Batch {batch_id}: unexpected failure during {stage.value}")
            await self._park_in_error(batch_id, stage, exc)
            raise
        finally:
            self._in_flight.discard(batch_id)

    async def _park_in_error(self, batch_id: str, stage: BatchStatus, exc: Exception) -> DocumentBatch:
        failure = _failure(exc, stage)
        logger.error(f"[ORCHESTRATOR] Batch {batch_id} failed during {stage.value}: {failure.detail}")
        if await self.store.get_status(batch_id) is not stage:
            # single-invoice re-extraction runs without leaving DATA_VALIDATION_PENDING
            return await self.store.get(batch_id)

        def park(batch: DocumentBatch) -> None:
            _move(batch, S.ERROR)
            batch.error = failure

        return await self.store.update(batch_id, park)

    async def _read_original(self, batch: DocumentBatch, error_cls: type[AdapterError]) -> bytes:
        try:
            return await self.files.read(batch.file_ref)
        except OSError as exc:
            raise error_cls(f"Original file {batch.file_ref} is unavailable: {exc}") from exc

    async def _extract_invoice(
        self, batch: DocumentBatch, idx: int, layout: LayoutResult
    ) -> tuple[Optional[ExtractedInvoice], InvoiceReview]:
        split = batch.validated_splits[idx]
        content = layout.content_for(split.start_page, split.end_page)
        hints = derive_table_hints(content.tables)
        logger.info(
            f"[ORCHESTRATOR] Batch {batch.id} invoice {idx}: pages {split.start_page}-{split.end_page}, "
            f"{len(hints.hints)} table hints"
        )

        raw = None
        try:
            output = await self.record_extractor.extract(content, hints.glossary, self._schema_description)
            raw = parse_extraction_output(output)
            record = normalize_record(raw)
        except (AdapterError, RecordValidationError) as exc:
            logger.warning(f"[ORCHESTRATOR] Batch {batch.id} invoice {idx} failed ({exc.kind}): {exc.detail}")
            return None, InvoiceReview(
                state=ReviewState.FAILED,
                failure=_failure(exc, S.EXTRACTING_DATA),
                raw_output=raw,
            )
        except Exception as exc:
            logger.exception(f"[ORCHESTRATOR] Batch {batch.id} invoice {idx}: unexpected extraction failure")
            return None, InvoiceReview(
                state=ReviewState.FAILED,
                failure=_failure(exc, S.EXTRACTING_DATA),
                raw_output=raw,
            )
        return record, InvoiceReview()

    def _require_extraction(self, feature: str) -> None:
        if not self.settings.extraction_enabled:
            raise FeatureArchivedError(feature)

    @staticmethod
    def _check_index(batch: DocumentBatch, invoice_index: int) -> None:
        if not 0 <= invoice_index < len(batch.validated_splits):
            raise InputError(
                f"Invoice index {invoice_index} is out of range (0-{len(batch.validated_splits) - 1})"
            )
        if invoice_index >= len(batch.extracted_data) or invoice_index >= len(batch.invoice_reviews):
            raise StateError(f"Invoice {invoice_index} has not been extracted yet")

    @staticmethod
    def _is_validated(batch: DocumentBatch, idx: int) -> bool:
        return idx < len(batch.invoice_reviews) and batch.invoice_reviews[idx].state is ReviewState.VALIDATED


def build_default_orchestrator(settings: Settings) -> Orchestrator:
    """Wire the orchestrator to the local PyMuPDF-based services."""
    from .services import (
        KeywordBoundaryDetector,
        LocalFileStore,
        PyMuPdfLayoutAnalyzer,
        PyMuPdfSplitter,
        TableRecordExtractor,
    )
    from .store import InMemoryBatchStore

    files = LocalFileStore(settings.artifact_dir)
    return Orchestrator(
        store=InMemoryBatchStore(),
        files=files,
        layout_analyzer=PyMuPdfLayoutAnalyzer(),
        boundary_detector=KeywordBoundaryDetector(),
        record_extractor=TableRecordExtractor(),
        splitter=PyMuPdfSplitter(files),
        settings=settings,
    )
