import asyncio

import pytest

from invoice_batch.config import Settings
from invoice_batch.errors import (
    AnalysisError,
    BatchNotFoundError,
    ExtractionError,
    FeatureArchivedError,
    InputError,
    InvalidSplitError,
    InvalidUploadError,
    RecordValidationError,
    SplitError,
    StateError,
)
from invoice_batch.models import BatchStatus, ReviewState
from invoice_batch.orchestrator import TRANSITIONS, check_transition
from invoice_batch.services import pdf_page_count

from .conftest import FailingSplitter


async def _proposed(orchestrator, pdf_bytes):
    batch = await orchestrator.create_batch("batch.pdf", pdf_bytes)
    return await orchestrator.start_processing(batch.id)


async def _validated(orchestrator, pdf_bytes):
    batch = await _proposed(orchestrator, pdf_bytes)
    return await orchestrator.validate_splits(batch.id)


async def _pending(orchestrator, pdf_bytes):
    batch = await _validated(orchestrator, pdf_bytes)
    return await orchestrator.extract_data(batch.id)


class TestCreateBatch:
    async def test_stores_upload_and_counts_pages(self, orchestrator, file_store, pdf_bytes):
        batch = await orchestrator.create_batch("march.pdf", pdf_bytes)

        assert batch.status is BatchStatus.UPLOADED
        assert batch.page_count == 10
        assert batch.original_filename == "march.pdf"
        assert file_store.path_for(batch.file_ref).read_bytes() == pdf_bytes

    @pytest.mark.parametrize(
        "filename, payload",
        [
            ("empty.pdf", b""),
            ("notes.txt", b"%PDF-1.7"),
            ("fake.pdf", b"hello world"),
            ("broken.pdf", b"%PDF-1.4 this is not a document"),
        ],
    )
    async def test_rejects_invalid_uploads(self, orchestrator, filename, payload):
        with pytest.raises(InvalidUploadError):
            await orchestrator.create_batch(filename, payload)
        assert await orchestrator.list_batches() == []

    async def test_delete_removes_record_and_files(self, orchestrator, file_store, pdf_bytes):
        batch = await _validated(orchestrator, pdf_bytes)

        await orchestrator.delete_batch(batch.id)

        assert not file_store.path_for(f"batches/{batch.id}").exists()
        with pytest.raises(BatchNotFoundError):
            await orchestrator.get_batch(batch.id)

    async def test_unknown_and_deleted_batches_hold_no_lock(self, orchestrator, pdf_bytes):
        for operation in (orchestrator.start_processing, orchestrator.reprocess, orchestrator.delete_batch):
            with pytest.raises(BatchNotFoundError):
                await operation("no-such-batch")
        assert "no-such-batch" not in orchestrator._locks

        batch = await _proposed(orchestrator, pdf_bytes)
        assert batch.id in orchestrator._locks

        await orchestrator.delete_batch(batch.id)

        assert orchestrator._locks == {}


class TestHappyPath:
    async def test_full_lifecycle_reaches_completed(self, orchestrator, file_store, pdf_bytes):
        batch = await orchestrator.create_batch("batch.pdf", pdf_bytes)

        batch = await orchestrator.start_processing(batch.id)
        assert batch.status is BatchStatus.SPLIT_PROPOSED
        assert [(s.start_page, s.end_page) for s in batch.split_proposal] == [(1, 4), (5, 7), (8, 10)]
        assert [s.confidence for s in batch.split_proposal] == [0.9, 0.8, 1.0]

        batch = await orchestrator.validate_splits(batch.id)
        assert batch.status is BatchStatus.SPLIT_VALIDATED
        page_counts = [
            pdf_page_count(file_store.path_for(split.file_ref).read_bytes())
            for split in batch.validated_splits
        ]
        assert page_counts == [4, 3, 3]

        batch = await orchestrator.extract_data(batch.id)
        assert batch.status is BatchStatus.DATA_VALIDATION_PENDING
        assert all(record is not None for record in batch.extracted_data)
        assert all(review.state is ReviewState.PENDING for review in batch.invoice_reviews)

        for idx in range(3):
            batch = await orchestrator.submit_validation(batch.id, idx, {})
        assert batch.status is BatchStatus.COMPLETED
        assert all(review.validated_at is not None for review in batch.invoice_reviews)

    async def test_extracted_records_are_normalized(self, orchestrator, pdf_bytes):
        batch = await _pending(orchestrator, pdf_bytes)

        record = batch.extracted_data[0]
        assert record.line_items[0].total_amount == 1234.5
        assert record.totals_and_subtotals[0].amount_due == 1481.4
        # the tax row has no quantity, the product row contributes 2
        assert record.totals_and_subtotals[0].total_quantity == 2.0
        assert record.diagnostics.computed == {"totalQuantity": True}
        assert record.basic_information[0].document_number == "INV-1"

    async def test_extractor_sees_only_the_split_tables(self, orchestrator, extractor, pdf_bytes):
        await _pending(orchestrator, pdf_bytes)

        glossaries = {content.start_page: glossary for content, glossary, _ in extractor.calls}
        assert glossaries[1] == "Table 1 with headers: Description, Qty, Amount"
        # zero-score headers still produce a hint
        assert glossaries[5] == "Table 1 with headers: Foo, Bar"
        assert glossaries[8] == ""
        content, _, schema = extractor.calls[0]
        assert "lineItems" in schema
        assert "## Page" in content.text


class TestConcurrency:
    async def test_second_start_is_rejected_while_first_runs(self, orchestrator, analyzer, pdf_bytes):
        batch = await orchestrator.create_batch("batch.pdf", pdf_bytes)
        analyzer.gate = asyncio.Event()

        first = asyncio.create_task(orchestrator.start_processing(batch.id))
        while analyzer.calls == 0:
            await asyncio.sleep(0.01)

        assert orchestrator.is_in_flight(batch.id)
        with pytest.raises(StateError):
            await orchestrator.start_processing(batch.id)
        with pytest.raises(StateError):
            await orchestrator.reprocess(batch.id)

        analyzer.gate.set()
        result = await first

        assert result.status is BatchStatus.SPLIT_PROPOSED
        assert analyzer.calls == 1
        assert not orchestrator.is_in_flight(batch.id)

    async def test_parallel_starts_run_the_stage_once(self, orchestrator, analyzer, pdf_bytes):
        batch = await orchestrator.create_batch("batch.pdf", pdf_bytes)

        results = await asyncio.gather(
            orchestrator.start_processing(batch.id),
            orchestrator.start_processing(batch.id),
            return_exceptions=True,
        )

        assert sum(isinstance(result, StateError) for result in results) == 1
        assert analyzer.calls == 1


class TestFailureRecovery:
    async def test_analysis_failure_parks_batch_and_reprocess_recovers(self, orchestrator, analyzer, pdf_bytes):
        batch = await orchestrator.create_batch("batch.pdf", pdf_bytes)
        analyzer.error = AnalysisError("service unavailable")

        batch = await orchestrator.start_processing(batch.id)
        assert batch.status is BatchStatus.ERROR
        assert batch.error.kind == "adapter"
        assert batch.error.stage is BatchStatus.PROCESSING
        assert not orchestrator.is_in_flight(batch.id)

        batch = await orchestrator.reprocess(batch.id)
        assert batch.status is BatchStatus.UPLOADED
        assert batch.error is None

        analyzer.error = None
        batch = await orchestrator.start_processing(batch.id)
        assert batch.status is BatchStatus.SPLIT_PROPOSED

    async def test_malformed_detector_output_is_an_adapter_failure(self, orchestrator, detector, pdf_bytes):
        detector.boundaries = "page four"
        batch = await _proposed(orchestrator, pdf_bytes)
        assert batch.status is BatchStatus.ERROR
        assert batch.error.kind == "adapter"

        # processing may be retried straight from ERROR
        detector.boundaries = []
        batch = await orchestrator.start_processing(batch.id)
        assert batch.status is BatchStatus.SPLIT_PROPOSED
        assert [(s.start_page, s.end_page) for s in batch.split_proposal] == [(1, 10)]

    async def test_unexpected_error_is_raised_and_recorded(self, orchestrator, analyzer, pdf_bytes):
        batch = await orchestrator.create_batch("batch.pdf", pdf_bytes)
        analyzer.error = KeyError("pages")

        with pytest.raises(KeyError):
            await orchestrator.start_processing(batch.id)

        stored = await orchestrator.get_batch(batch.id)
        assert stored.status is BatchStatus.ERROR
        assert stored.error.kind == "internal"
        assert not orchestrator.is_in_flight(batch.id)

    async def test_split_failure_returns_to_split_proposed(self, make_orchestrator, pdf_bytes):
        orchestrator = make_orchestrator(splitter=FailingSplitter(SplitError("disk full")))
        proposed = await _proposed(orchestrator, pdf_bytes)

        batch = await orchestrator.validate_splits(proposed.id)
        assert batch.status is BatchStatus.ERROR
        assert batch.error.stage is BatchStatus.SPLITTING

        with pytest.raises(StateError):
            await orchestrator.start_processing(batch.id)

        batch = await orchestrator.reprocess(batch.id)
        assert batch.status is BatchStatus.SPLIT_PROPOSED
        assert batch.split_proposal == proposed.split_proposal

    async def test_extraction_stage_failure_keeps_validated_splits(self, orchestrator, analyzer, pdf_bytes):
        batch = await _validated(orchestrator, pdf_bytes)
        await orchestrator.store.update(batch.id, lambda stored: setattr(stored, "layout", None))
        analyzer.error = AnalysisError("layout service down")

        batch = await orchestrator.extract_data(batch.id)
        assert batch.status is BatchStatus.ERROR
        assert batch.error.stage is BatchStatus.EXTRACTING_DATA

        batch = await orchestrator.reprocess(batch.id)
        assert batch.status is BatchStatus.SPLIT_VALIDATED
        assert len(batch.validated_splits) == 3

        analyzer.error = None
        batch = await orchestrator.extract_data(batch.id)
        assert batch.status is BatchStatus.DATA_VALIDATION_PENDING
        assert batch.layout is not None

    async def test_reprocess_recovers_interrupted_stage(self, orchestrator, pdf_bytes):
        batch = await orchestrator.create_batch("batch.pdf", pdf_bytes)
        # simulates a worker that died mid-stage
        await orchestrator.store.update(batch.id, lambda stored: setattr(stored, "status", BatchStatus.PROCESSING))

        batch = await orchestrator.reprocess(batch.id)
        assert batch.status is BatchStatus.UPLOADED

    async def test_reprocess_rejects_idle_batch(self, orchestrator, pdf_bytes):
        batch = await orchestrator.create_batch("batch.pdf", pdf_bytes)
        with pytest.raises(StateError):
            await orchestrator.reprocess(batch.id)


class TestPartialExtraction:
    async def test_one_failed_invoice_does_not_fail_the_batch(self, orchestrator, extractor, pdf_bytes):
        extractor.failures[5] = ExtractionError("model overloaded")

        batch = await _pending(orchestrator, pdf_bytes)

        assert batch.status is BatchStatus.DATA_VALIDATION_PENDING
        assert batch.extracted_data[0] is not None
        assert batch.extracted_data[1] is None
        assert batch.extracted_data[2] is not None
        failed = batch.invoice_reviews[1]
        assert failed.state is ReviewState.FAILED
        assert failed.failure.kind == "adapter"
        assert failed.failure.detail == "model overloaded"

    async def test_unexpected_extractor_error_stays_with_its_invoice(self, orchestrator, extractor, pdf_bytes):
        extractor.failures[8] = TimeoutError("vendor client timed out")

        batch = await _pending(orchestrator, pdf_bytes)

        assert batch.status is BatchStatus.DATA_VALIDATION_PENDING
        assert batch.extracted_data[0] is not None
        assert batch.extracted_data[1] is not None
        failed = batch.invoice_reviews[2]
        assert failed.state is ReviewState.FAILED
        assert failed.failure.kind == "internal"
        assert "vendor client timed out" in failed.failure.detail
        assert not orchestrator.is_in_flight(batch.id)

    async def test_validation_failure_keeps_raw_output_and_every_issue(self, orchestrator, extractor, pdf_bytes):
        raw = {"lineItems": [{"quantity": True}], "totalsAndSubtotals": []}
        extractor.outputs[8] = raw

        batch = await _pending(orchestrator, pdf_bytes)

        review = batch.invoice_reviews[2]
        assert review.state is ReviewState.FAILED
        assert review.failure.kind == "validation"
        assert review.raw_output == raw
        paths = {issue["path"] for issue in review.failure.issues}
        assert {"lineItems.0.quantity", "basicInformation", "importer", "exporter"} <= paths

    async def test_cut_off_output_is_reported_as_truncated(self, orchestrator, extractor, pdf_bytes):
        extractor.outputs[1] = '{"lineItems": [{"description": "Wid'

        batch = await _pending(orchestrator, pdf_bytes)

        assert batch.invoice_reviews[0].failure.kind == "truncated_output"

    async def test_single_invoice_can_be_reextracted(self, orchestrator, extractor, pdf_bytes):
        extractor.failures[5] = ExtractionError("model overloaded")
        batch = await _pending(orchestrator, pdf_bytes)

        extractor.failures.clear()
        batch = await orchestrator.extract_data(batch.id, 1)

        assert batch.status is BatchStatus.DATA_VALIDATION_PENDING
        assert batch.invoice_reviews[1].state is ReviewState.PENDING
        assert batch.extracted_data[1].basic_information[0].document_number == "INV-5"

    async def test_single_invoice_guards(self, orchestrator, pdf_bytes):
        batch = await _validated(orchestrator, pdf_bytes)
        with pytest.raises(StateError):
            await orchestrator.extract_data(batch.id, 0)

        batch = await orchestrator.extract_data(batch.id)
        with pytest.raises(InputError):
            await orchestrator.extract_data(batch.id, 3)

        await orchestrator.submit_validation(batch.id, 0, {})
        with pytest.raises(StateError):
            await orchestrator.extract_data(batch.id, 0)


class TestReviews:
    async def test_update_splits_is_all_or_nothing(self, orchestrator, pdf_bytes):
        batch = await _proposed(orchestrator, pdf_bytes)

        with pytest.raises(InvalidSplitError):
            await orchestrator.update_splits(
                batch.id, [{"startPage": 1, "endPage": 3}, {"startPage": 5, "endPage": 10}]
            )
        assert (await orchestrator.get_batch(batch.id)).split_proposal == batch.split_proposal

        batch = await orchestrator.update_splits(
            batch.id, [{"startPage": 1, "endPage": 5}, {"startPage": 6, "endPage": 10, "label": "Credit note"}]
        )
        assert batch.status is BatchStatus.SPLIT_PROPOSED
        assert [(s.start_page, s.end_page, s.confidence) for s in batch.split_proposal] == [
            (1, 5, 1.0),
            (6, 10, 1.0),
        ]
        assert batch.split_proposal[1].label == "Credit note"

    async def test_update_splits_requires_split_proposed(self, orchestrator, pdf_bytes):
        batch = await orchestrator.create_batch("batch.pdf", pdf_bytes)
        with pytest.raises(StateError):
            await orchestrator.update_splits(batch.id, [{"startPage": 1, "endPage": 10}])

    async def test_correction_overlays_extracted_record(self, orchestrator, pdf_bytes):
        batch = await _pending(orchestrator, pdf_bytes)

        batch = await orchestrator.submit_validation(batch.id, 0, {"importer": [{"name": "ACME Ltd"}]})

        record = batch.extracted_data[0]
        assert record.importer[0].name == "ACME Ltd"
        assert record.line_items[0].description == "Item from page 1"
        assert batch.status is BatchStatus.DATA_VALIDATION_PENDING

    async def test_validation_recomputes_derived_totals(self, orchestrator, pdf_bytes):
        batch = await _pending(orchestrator, pdf_bytes)

        batch = await orchestrator.submit_validation(batch.id, 0, {})
        approved = batch.extracted_data[0]
        assert approved.totals_and_subtotals[0].total_quantity == 2.0
        assert approved.diagnostics.computed == {"totalQuantity": True}

        batch = await orchestrator.submit_validation(
            batch.id, 1, {"lineItems": [{"type": "product", "quantity": "4"}, {"type": "product", "quantity": 1}]}
        )
        corrected = batch.extracted_data[1]
        assert corrected.totals_and_subtotals[0].total_quantity == 5.0
        assert corrected.diagnostics.computed == {"totalQuantity": True}

    async def test_invalid_correction_changes_nothing(self, orchestrator, extractor, pdf_bytes):
        extractor.failures[5] = ExtractionError("model overloaded")
        batch = await _pending(orchestrator, pdf_bytes)

        with pytest.raises(RecordValidationError):
            await orchestrator.submit_validation(batch.id, 1, {"lineItems": []})

        stored = await orchestrator.get_batch(batch.id)
        assert stored.invoice_reviews[1].state is ReviewState.FAILED
        assert stored.extracted_data[1] is None

    async def test_extracted_data_view(self, orchestrator, pdf_bytes):
        batch = await _pending(orchestrator, pdf_bytes)

        views = await orchestrator.get_extracted_data(batch.id)

        assert [view.index for view in views] == [0, 1, 2]
        assert views[2].split.start_page == 8
        assert views[2].record is not None


class TestSplitOnly:
    async def test_split_validation_completes_the_batch(self, make_orchestrator, pdf_bytes):
        orchestrator = make_orchestrator(settings=Settings(extraction_enabled=False))

        batch = await _validated(orchestrator, pdf_bytes)

        assert batch.status is BatchStatus.COMPLETED
        assert len(batch.validated_splits) == 3

    async def test_extraction_operations_are_archived(self, make_orchestrator, extractor, pdf_bytes):
        orchestrator = make_orchestrator(settings=Settings(extraction_enabled=False))
        batch = await _validated(orchestrator, pdf_bytes)

        with pytest.raises(FeatureArchivedError):
            await orchestrator.extract_data(batch.id)
        with pytest.raises(FeatureArchivedError):
            await orchestrator.get_extracted_data(batch.id)
        with pytest.raises(FeatureArchivedError):
            await orchestrator.submit_validation(batch.id, 0, {})

        assert extractor.calls == []
        assert (await orchestrator.get_batch(batch.id)).status is BatchStatus.COMPLETED


class TestTransitions:
    def test_completed_is_terminal(self):
        assert TRANSITIONS[BatchStatus.COMPLETED] == frozenset()
        for status in BatchStatus:
            with pytest.raises(StateError):
                check_transition(BatchStatus.COMPLETED, status)

    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(BatchStatus)

    def test_stages_cannot_be_skipped(self):
        with pytest.raises(StateError):
            check_transition(BatchStatus.UPLOADED, BatchStatus.SPLIT_VALIDATED)
        with pytest.raises(StateError):
            check_transition(BatchStatus.SPLIT_PROPOSED, BatchStatus.EXTRACTING_DATA)
