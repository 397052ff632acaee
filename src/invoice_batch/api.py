"""HTTP surface for the batch pipeline.

Thin FastAPI layer over the orchestrator: every route maps to one operation,
and every ``PipelineError`` maps to a stable ``error`` kind plus HTTP status.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .config import Settings
from .errors import PipelineError
from .orchestrator import Orchestrator, build_default_orchestrator
from .status import StatusReporter

logger = logging.getLogger("invoice_batch.api")

STATUS_CODES = {
    "input": 400,
    "not_found": 404,
    "state": 409,
    "archived_feature": 410,
    "validation": 422,
    "adapter": 502,
    "truncated_output": 502,
    "timeout": 504,
}


def _ok(data: Any, message: str | None = None, status_code: int = 200) -> JSONResponse:
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return JSONResponse(body, status_code=status_code)


def create_app(orchestrator: Orchestrator, reporter: StatusReporter | None = None) -> FastAPI:
    reporter = reporter or StatusReporter(orchestrator.store, orchestrator.is_in_flight)
    app = FastAPI(title="Invoice Batch Pipeline", version="0.1.0")

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        status_code = STATUS_CODES.get(exc.kind, 500)
        logger.warning(f"[API] {request.method} {request.url.path} -> {status_code} {exc.kind}: {exc.detail}")
        body: dict[str, Any] = {"success": False, "error": exc.kind, "message": exc.detail}
        if exc.issues:
            body["details"] = exc.issues
        return JSONResponse(body, status_code=status_code)

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse(
            {"status": "ok", "extractionEnabled": orchestrator.settings.extraction_enabled}
        )

    @app.post("/api/upload")
    async def upload(request: Request, filename: str = Query(...)) -> JSONResponse:
        batch = await orchestrator.create_batch(filename, await request.body())
        return _ok(batch.summary(), "Batch created", status_code=201)

    @app.get("/api/batches")
    async def list_batches() -> JSONResponse:
        batches = await orchestrator.list_batches()
        return _ok([batch.summary() for batch in batches])

    @app.get("/api/batches/{batch_id}")
    async def get_batch(batch_id: str) -> JSONResponse:
        return _ok((await orchestrator.get_batch(batch_id)).summary())

    @app.delete("/api/batches/{batch_id}")
    async def delete_batch(batch_id: str) -> JSONResponse:
        await orchestrator.delete_batch(batch_id)
        return _ok({"id": batch_id}, "Batch deleted")

    @app.post("/api/batches/{batch_id}/process")
    async def start_processing(batch_id: str) -> JSONResponse:
        batch = await orchestrator.start_processing(batch_id)
        return _ok(batch.summary())

    @app.get("/api/batches/{batch_id}/status")
    async def get_status(batch_id: str) -> JSONResponse:
        view = await reporter.get_status(batch_id)
        return _ok(view.model_dump(by_alias=True, mode="json"))

    @app.put("/api/batches/{batch_id}/splits")
    async def update_splits(batch_id: str, payload: dict[str, Any] = Body(...)) -> JSONResponse:
        batch = await orchestrator.update_splits(batch_id, payload.get("splits"))
        return _ok(batch.summary(), "Splits updated")

    @app.post("/api/batches/{batch_id}/validate-splits")
    async def validate_splits(batch_id: str) -> JSONResponse:
        batch = await orchestrator.validate_splits(batch_id)
        return _ok(batch.summary())

    @app.post("/api/batches/{batch_id}/extract-data")
    async def extract_data(batch_id: str, invoice_index: Optional[int] = Query(None)) -> JSONResponse:
        batch = await orchestrator.extract_data(batch_id, invoice_index)
        return _ok(batch.summary())

    @app.get("/api/batches/{batch_id}/extracted-data")
    async def extracted_data(batch_id: str) -> JSONResponse:
        views = await orchestrator.get_extracted_data(batch_id)
        return _ok(
            [
                {
                    "index": view.index,
                    "split": view.split.model_dump(by_alias=True, mode="json"),
                    "record": view.record.to_wire() if view.record else None,
                    "review": view.review.model_dump(by_alias=True, mode="json"),
                }
                for view in views
            ]
        )

    @app.post("/api/batches/{batch_id}/validate/{invoice_index}")
    async def submit_validation(
        batch_id: str, invoice_index: int, record: dict[str, Any] = Body(...)
    ) -> JSONResponse:
        batch = await orchestrator.submit_validation(batch_id, invoice_index, record)
        return _ok(batch.summary(), f"Invoice {invoice_index} validated")

    @app.post("/api/batches/{batch_id}/reprocess")
    async def reprocess(batch_id: str) -> JSONResponse:
        batch = await orchestrator.reprocess(batch_id)
        return _ok(batch.summary())

    return app


def get_app() -> FastAPI:
    """Application factory for ``uvicorn --factory``."""
    settings = Settings.from_env()
    return create_app(build_default_orchestrator(settings))
