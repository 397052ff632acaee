"""Batch persistence.

The orchestrator only relies on the ``BatchStore`` protocol; the in-memory
implementation backs tests, the CLI and single-process deployments.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

from .errors import BatchNotFoundError
from .models import BatchStatus, DocumentBatch, utcnow

logger = logging.getLogger("invoice_batch.store")

Mutation = Callable[[DocumentBatch], None]


class BatchStore(Protocol):
    async def create(self, batch: DocumentBatch) -> DocumentBatch: ...

    async def get(self, batch_id: str) -> DocumentBatch: ...

    async def list(self) -> list[DocumentBatch]: ...

    async def update(self, batch_id: str, mutate: Mutation) -> DocumentBatch:
        """Apply ``mutate`` to the stored batch as one atomic read-modify-write."""
        ...

    async def delete(self, batch_id: str) -> None: ...

    async def get_status(self, batch_id: str) -> BatchStatus: ...


class InMemoryBatchStore:
    """Dict-backed store. Callers always receive copies."""

    def __init__(self) -> None:
        self._batches: dict[str, DocumentBatch] = {}
        self._lock = asyncio.Lock()

    async def create(self, batch: DocumentBatch) -> DocumentBatch:
        async with self._lock:
            if batch.id in self._batches:
                raise ValueError(f"Batch {batch.id} already exists")
            self._batches[batch.id] = batch.model_copy(deep=True)
        logger.info(f"[STORE] Created batch {batch.id}")
        return batch.model_copy(deep=True)

    async def get(self, batch_id: str) -> DocumentBatch:
        async with self._lock:
            return self._require(batch_id).model_copy(deep=True)

    async def list(self) -> list[DocumentBatch]:
        async with self._lock:
            batches = sorted(self._batches.values(), key=lambda batch: batch.created_at)
            return [batch.model_copy(deep=True) for batch in batches]

    async def update(self, batch_id: str, mutate: Mutation) -> DocumentBatch:
        async with self._lock:
            # mutate a copy so a failing mutation leaves the stored batch untouched
            working = self._require(batch_id).model_copy(deep=True)
            mutate(working)
            working.updated_at = utcnow()
            self._batches[batch_id] = working
            return working.model_copy(deep=True)

    async def delete(self, batch_id: str) -> None:
        async with self._lock:
            self._require(batch_id)
            del self._batches[batch_id]
        logger.info(f"[STORE] Deleted batch {batch_id}")

    async def get_status(self, batch_id: str) -> BatchStatus:
        async with self._lock:
            return self._require(batch_id).status

    def _require(self, batch_id: str) -> DocumentBatch:
        try:
            return self._batches[batch_id]
        except KeyError:
            raise BatchNotFoundError(f"Batch {batch_id} not found") from None
