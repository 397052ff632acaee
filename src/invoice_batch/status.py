"""Read-only status view and the client polling contract.

Statuses that wait on a person (SPLIT_PROPOSED, DATA_VALIDATION_PENDING) or on
nothing at all (COMPLETED, ERROR) do not change until the next user action, so
a poller may stop as soon as it sees one of them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .config import INITIAL_POLL_DELAY_SECONDS, MAX_POLL_ATTEMPTS, POLL_INTERVAL_SECONDS
from .errors import PollingTimeout
from .models import BatchStatus, BatchStatusView, ReviewState
from .store import BatchStore

logger = logging.getLogger("invoice_batch.status")

STABLE_STATUSES = frozenset(
    {
        BatchStatus.COMPLETED,
        BatchStatus.ERROR,
        BatchStatus.SPLIT_PROPOSED,
        BatchStatus.DATA_VALIDATION_PENDING,
    }
)

NEXT_ACTIONS: dict[BatchStatus, Optional[str]] = {
    BatchStatus.UPLOADED: "start_processing",
    BatchStatus.PROCESSING: "wait",
    BatchStatus.SPLIT_PROPOSED: "review_splits",
    BatchStatus.SPLITTING: "wait",
    BatchStatus.SPLIT_VALIDATED: "extract_data",
    BatchStatus.EXTRACTING_DATA: "wait",
    BatchStatus.DATA_VALIDATION_PENDING: "validate_data",
    BatchStatus.ERROR: "reprocess",
    BatchStatus.COMPLETED: None,
}


class StatusReporter:
    def __init__(
        self,
        store: BatchStore,
        in_flight: Callable[[str], bool] = lambda batch_id: False,
    ) -> None:
        self.store = store
        self.in_flight = in_flight

    async def get_status(self, batch_id: str) -> BatchStatusView:
        batch = await self.store.get(batch_id)
        in_flight = self.in_flight(batch_id)
        next_action = "wait" if in_flight else NEXT_ACTIONS[batch.status]
        return BatchStatusView(
            batch_id=batch.id,
            status=batch.status,
            stable=batch.status in STABLE_STATUSES and not in_flight,
            next_action=next_action,
            in_flight=in_flight,
            error=batch.error,
            invoice_count=len(batch.validated_splits),
            invoices_validated=sum(1 for r in batch.invoice_reviews if r.state is ReviewState.VALIDATED),
            invoices_failed=sum(1 for r in batch.invoice_reviews if r.state is ReviewState.FAILED),
        )


async def poll_status(
    fetch: Callable[[], Awaitable[BatchStatusView]],
    *,
    interval: float = POLL_INTERVAL_SECONDS,
    max_attempts: int = MAX_POLL_ATTEMPTS,
    initial_delay: float = INITIAL_POLL_DELAY_SECONDS,
    on_status: Callable[[BatchStatusView], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BatchStatusView:
    """Poll until a stable status is observed or the attempts run out."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    await sleep(initial_delay)
    last: BatchStatusView | None = None
    for attempt in range(1, max_attempts + 1):
        view = await fetch()
        if last is None or view.status is not last.status:
            logger.info(f"[STATUS] Batch {view.batch_id}: {view.status.value} (attempt {attempt})")
        last = view
        if on_status is not None:
            on_status(view)
        if view.stable:
            return view
        if attempt < max_attempts:
            await sleep(interval)

    raise PollingTimeout(
        f"Batch {last.batch_id} still {last.status.value} after {max_attempts} polls"
    )
