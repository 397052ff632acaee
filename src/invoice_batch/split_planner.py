"""Turn detected invoice boundaries into a validated page partition."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from pydantic import ValidationError

from .errors import InvalidSplitError
from .models import BoundaryCandidate, SplitRange

logger = logging.getLogger("invoice_batch.split_planner")


def _dedupe_boundaries(page_count: int, candidates: Iterable[BoundaryCandidate]) -> list[BoundaryCandidate]:
    best: dict[int, BoundaryCandidate] = {}
    for candidate in candidates:
        # the last page closes the document anyway
        if candidate.page < 1 or candidate.page >= page_count:
            logger.debug(f"[SPLIT_PLANNER] Discarding boundary {candidate.page} (pages 1-{page_count})")
            continue
        current = best.get(candidate.page)
        if current is None or candidate.confidence > current.confidence:
            best[candidate.page] = candidate
    return [best[page] for page in sorted(best)]


def plan_splits(page_count: int, candidates: Sequence[BoundaryCandidate]) -> list[SplitRange]:
    """Build the split proposal from boundary candidates.

    A boundary is the last page of an invoice. Ranges inherit the confidence of
    the boundary that closes them; the final range is closed by the document end.
    """
    if page_count < 1:
        raise InvalidSplitError(f"Cannot plan splits for {page_count} pages")

    ranges: list[SplitRange] = []
    start = 1
    for boundary in _dedupe_boundaries(page_count, candidates):
        ranges.append(
            SplitRange(
                start_page=start,
                end_page=boundary.page,
                confidence=boundary.confidence,
                label=f"Invoice {len(ranges) + 1}",
            )
        )
        start = boundary.page + 1
    ranges.append(
        SplitRange(start_page=start, end_page=page_count, confidence=1.0, label=f"Invoice {len(ranges) + 1}")
    )

    check_partition(ranges, page_count)
    return ranges


def check_partition(ranges: Sequence[SplitRange], page_count: int) -> None:
    """Raise unless ranges are sorted, contiguous and cover exactly 1..page_count."""
    if not ranges:
        raise InvalidSplitError("At least one split range is required")

    expected_start = 1
    for idx, split in enumerate(ranges):
        if split.start_page > split.end_page:
            raise InvalidSplitError(f"Range {idx + 1} starts after it ends ({split.start_page}-{split.end_page})")
        if split.start_page < expected_start:
            raise InvalidSplitError(
                f"Range {idx + 1} ({split.start_page}-{split.end_page}) overlaps or is out of order"
            )
        if split.start_page > expected_start:
            raise InvalidSplitError(f"Pages {expected_start}-{split.start_page - 1} are not covered")
        expected_start = split.end_page + 1

    if expected_start - 1 != page_count:
        if expected_start - 1 > page_count:
            raise InvalidSplitError(f"Ranges extend past the last page ({page_count})")
        raise InvalidSplitError(f"Pages {expected_start}-{page_count} are not covered")


def coerce_ranges(raw_ranges: Any, page_count: int) -> list[SplitRange]:
    """Parse a manual edit and check it forms a valid partition."""
    if not isinstance(raw_ranges, (list, tuple)):
        raise InvalidSplitError("Splits must be a list of page ranges")

    ranges: list[SplitRange] = []
    issues: list[dict[str, Any]] = []
    for idx, raw in enumerate(raw_ranges):
        if isinstance(raw, SplitRange):
            ranges.append(SplitRange.model_validate(raw.model_dump()))
            continue
        try:
            ranges.append(SplitRange.model_validate(raw))
        except ValidationError as exc:
            issues.extend(
                {"path": ".".join(str(part) for part in (idx, *error["loc"])), "message": error["msg"]}
                for error in exc.errors()
            )
    if issues:
        raise InvalidSplitError(f"{len(issues)} invalid split range field(s)", issues=issues)

    check_partition(ranges, page_count)
    return ranges
