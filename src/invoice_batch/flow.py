"""Prefect flow that drives one PDF through every stage without a reviewer.

The split proposal and every successfully extracted record are approved as-is;
invoices whose extraction failed stay pending for a human.
"""

from __future__ import annotations

from prefect import flow, task
from prefect.cache_policies import NO_CACHE
from pydantic import BaseModel, Field

from .config import Settings
from .errors import PipelineError
from .models import BatchStatus, DocumentBatch, ReviewState
from .orchestrator import Orchestrator, build_default_orchestrator


class BatchRunInput(BaseModel):
    """Inbound payload for an unattended run."""

    pdf_filename: str = Field(..., description="Original PDF filename")
    pdf_bytes: bytes = Field(..., description="Raw PDF bytes")


class BatchFailedError(PipelineError):
    kind = "batch_failed"


def _raise_on_error(batch: DocumentBatch) -> DocumentBatch:
    if batch.status is BatchStatus.ERROR:
        stage = batch.error.stage.value if batch.error and batch.error.stage else "unknown stage"
        detail = batch.error.detail if batch.error else "no detail"
        raise BatchFailedError(f"Batch {batch.id} failed during {stage}: {detail}")
    return batch


@task(name="start_processing_task", cache_policy=NO_CACHE)
async def start_processing_task(orchestrator: Orchestrator, batch_id: str) -> DocumentBatch:
    return _raise_on_error(await orchestrator.start_processing(batch_id))


@task(name="validate_splits_task", cache_policy=NO_CACHE)
async def validate_splits_task(orchestrator: Orchestrator, batch_id: str) -> DocumentBatch:
    return _raise_on_error(await orchestrator.validate_splits(batch_id))


@task(name="extract_data_task", cache_policy=NO_CACHE)
async def extract_data_task(orchestrator: Orchestrator, batch_id: str) -> DocumentBatch:
    return _raise_on_error(await orchestrator.extract_data(batch_id))


@task(name="approve_records_task", cache_policy=NO_CACHE)
async def approve_records_task(orchestrator: Orchestrator, batch: DocumentBatch) -> DocumentBatch:
    for idx, review in enumerate(batch.invoice_reviews):
        if review.state is ReviewState.PENDING:
            batch = await orchestrator.submit_validation(batch.id, idx, {})
    return batch


@flow(name="invoice-batch-flow")
async def invoice_batch_flow(run: BatchRunInput, settings: Settings | None = None) -> DocumentBatch:
    settings = settings or Settings.from_env()
    orchestrator = build_default_orchestrator(settings)

    batch = await orchestrator.create_batch(run.pdf_filename, run.pdf_bytes)
    batch = await start_processing_task(orchestrator, batch.id)
    batch = await validate_splits_task(orchestrator, batch.id)
    if settings.extraction_enabled:
        batch = await extract_data_task(orchestrator, batch.id)
        batch = await approve_records_task(orchestrator, batch)
    return batch
