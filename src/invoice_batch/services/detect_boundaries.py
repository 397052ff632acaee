"""Boundary detection service: proposes the last page of each invoice."""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

from pydantic import ValidationError

from ..errors import DetectionError
from ..models import BoundaryCandidate, LayoutResult

logger = logging.getLogger("invoice_batch.detect_boundaries")


class BoundaryDetector(Protocol):
    async def detect_boundaries(self, layout: LayoutResult) -> list[dict[str, Any]]:
        """Return ``[{"page": int, "confidence": float}]`` or raise ``DetectionError``."""
        ...


def parse_boundaries(raw: Any) -> list[BoundaryCandidate]:
    if not isinstance(raw, list):
        raise DetectionError(f"Boundary detector returned {type(raw).__name__}, expected a list")
    try:
        return [BoundaryCandidate.model_validate(item) for item in raw]
    except ValidationError as exc:
        raise DetectionError(f"Malformed boundary candidate: {exc.errors()[0]['msg']}") from exc


PAGE_ONE_MARKER = re.compile(r"\bpage\s*1\s*(?:of|/)\s*\d+", re.IGNORECASE)
INVOICE_HEADER = re.compile(
    r"\b(?:invoice|facture|rechnung)\s*(?:no\b\.?|number|nr\b\.?|#|n°)", re.IGNORECASE
)


class KeywordBoundaryDetector:
    """Marks a boundary before every page that looks like a new invoice's first page."""

    def __init__(self, page_marker_confidence: float = 0.9, header_confidence: float = 0.7) -> None:
        self.page_marker_confidence = page_marker_confidence
        self.header_confidence = header_confidence

    async def detect_boundaries(self, layout: LayoutResult) -> list[dict[str, Any]]:
        boundaries = []
        for page in layout.pages:
            if page.page_number == 1:
                continue
            if PAGE_ONE_MARKER.search(page.text):
                confidence = self.page_marker_confidence
            elif INVOICE_HEADER.search(page.text):
                confidence = self.header_confidence
            else:
                continue
            boundaries.append({"page": page.page_number - 1, "confidence": confidence})

        logger.info(f"[DETECT_BOUNDARIES] {len(boundaries)} boundaries over {len(layout.pages)} pages")
        return boundaries
