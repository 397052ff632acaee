"""
Extract Record Service - turns one split's content into raw invoice JSON.

The orchestrator accepts either a parsed JSON object or the raw text returned
by a language model; text goes through ``parse_extraction_output`` so that
cut-off generations are reported as truncated instead of malformed.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

from ..errors import ExtractionError, TruncatedOutputError
from ..models import InvoiceContent, LayoutTable
from ..table_hints import (
    AMOUNT,
    DESCRIPTION,
    DISCOUNT,
    ITEM_IDENTIFIER,
    QUANTITY,
    SHIPPING,
    TAX,
    UNIT_PRICE,
    header_row,
    normalize_header,
)

logger = logging.getLogger("invoice_batch.extract_record")


class RecordExtractor(Protocol):
    async def extract(
        self, content: InvoiceContent, hints_glossary: str, target_schema: str
    ) -> dict[str, Any] | str:
        """Return raw invoice JSON (object or text) or raise ``ExtractionError``."""
        ...


_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_extraction_output(output: Any, *, truncated: bool = False) -> Any:
    """Decode extractor output.

    ``truncated`` is the caller's length-stop flag (e.g. a finish reason of
    ``length``). Unterminated JSON is treated the same way.
    """
    if truncated:
        raise TruncatedOutputError("Extraction output was cut off at the length limit")
    if not isinstance(output, str):
        return output

    text = _CODE_FENCE.sub("", output.strip())
    if not text:
        raise ExtractionError("Extraction returned an empty response")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        if exc.pos >= len(text) - 1 or exc.msg.startswith("Unterminated"):
            raise TruncatedOutputError(f"Extraction output ends mid-document: {exc.msg}") from exc
        raise ExtractionError(f"Extraction output is not valid JSON: {exc.msg}") from exc


# Column category -> line item field, in matching priority. Unit price has no
# canonical field but must claim its column before AMOUNT sees "price".
_COLUMN_FIELDS = (
    (DESCRIPTION, "description"),
    (QUANTITY, "quantity"),
    (UNIT_PRICE, None),
    (AMOUNT, "totalAmount"),
    (ITEM_IDENTIFIER, "productCode"),
)

DOCUMENT_NUMBER = re.compile(
    r"\binvoice\s*(?:no\b\.?|number|nr\b\.?|#)\s*[:.]?\s*([A-Z0-9][\w/-]*)", re.IGNORECASE
)
DOCUMENT_DATE = re.compile(r"\b(\d{4}-\d{2}-\d{2}|\d{1,2}[./]\d{1,2}[./]\d{2,4})\b")
AMOUNT_DUE = re.compile(r"\b(?:amount\s+due|total\s+due|grand\s+total)\s*:?\s*([\d][\d., ]*\d)", re.IGNORECASE)


def _column_map(headers: list[str]) -> dict[int, str]:
    mapping: dict[int, str] = {}
    taken: set[str | None] = set()
    for col_idx, header in enumerate(headers):
        normalized = normalize_header(header)
        for category, field in _COLUMN_FIELDS:
            if category.matches(normalized):
                if field is not None and field not in taken:
                    mapping[col_idx] = field
                taken.add(field)
                break
    return mapping


def _row_type(row_text: str) -> str:
    normalized = normalize_header(row_text)
    if TAX.matches(normalized):
        return "tax"
    if SHIPPING.matches(normalized):
        return "shipping"
    if DISCOUNT.matches(normalized):
        return "discount"
    if "fee" in normalized:
        return "fee"
    return "product"


def _table_line_items(table: LayoutTable) -> list[dict[str, Any]]:
    headers = header_row(table)
    columns = _column_map(headers)
    if "description" not in columns.values() and "totalAmount" not in columns.values():
        return []

    rows: dict[int, dict[int, str]] = {}
    for cell in table.cells:
        if cell.row_index > 0:
            rows.setdefault(cell.row_index, {})[cell.column_index] = cell.content

    items = []
    for row_idx in sorted(rows):
        row = rows[row_idx]
        if not any(text.strip() for text in row.values()):
            continue
        item: dict[str, Any] = {"type": _row_type(" ".join(row.values()))}
        for col_idx, field in columns.items():
            if row.get(col_idx, "").strip():
                item[field] = row[col_idx].strip()
        items.append(item)
    return items


class TableRecordExtractor:
    """Offline extractor mapping detected table columns onto line items.

    Column headers are classified with the same keyword categories used for
    table hints; header text fields come from simple patterns in page text.
    """

    async def extract(
        self, content: InvoiceContent, hints_glossary: str, target_schema: str
    ) -> dict[str, Any]:
        line_items = [item for table in content.tables for item in _table_line_items(table)]

        basic: dict[str, Any] = {"documentType": "invoice"}
        if match := DOCUMENT_NUMBER.search(content.text):
            basic["documentNumber"] = match.group(1)
        if match := DOCUMENT_DATE.search(content.text):
            basic["documentDate"] = match.group(1)

        totals: list[dict[str, Any]] = []
        if match := AMOUNT_DUE.search(content.text):
            totals.append({"amountDue": match.group(1)})

        logger.info(
            f"[EXTRACT_RECORD] Pages {content.start_page}-{content.end_page}: "
            f"{len(line_items)} line items from {len(content.tables)} tables"
        )
        return {
            "lineItems": line_items,
            "totalsAndSubtotals": totals,
            "basicInformation": [basic],
            "importer": [],
            "exporter": [],
        }
