"""Derive table hints from layout tables to steer record extraction.

Every table with a header row produces a hint, whatever its score: the score is
a soft prior for the extractor, never a filter, so an unusually labeled
line-item table still reaches it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from .models import LayoutTable, TableHint, TableHints

_NON_KEYWORD_CHARS = re.compile(r"[^a-z0-9%]")
_SPACES = re.compile(r"\s+")


def normalize_header(text: str | None) -> str:
    lowered = str(text or "").lower()
    return _SPACES.sub(" ", _NON_KEYWORD_CHARS.sub(" ", lowered)).strip()


@dataclass(frozen=True)
class HeaderCategory:
    """Coarse substring classifier for one kind of column."""

    name: str
    keywords: tuple[str, ...]

    def matches(self, header: str) -> bool:
        return any(keyword in header for keyword in self.keywords)

    def matches_any(self, normalized_headers: Iterable[str]) -> bool:
        return any(self.matches(header) for header in normalized_headers)


ITEM_IDENTIFIER = HeaderCategory("item_identifier", ("code", "sku", "item", "product", "reference"))
DESCRIPTION = HeaderCategory("description", ("desc", "description", "details", "service", "charge"))
QUANTITY = HeaderCategory("quantity", ("qty", "quantity", "qte", "units"))
UNIT_PRICE = HeaderCategory("unit_price", ("price", "unit price", "unit", "rate", "cost"))
AMOUNT = HeaderCategory("amount", ("amount", "total", "sum", "subtotal", "value", "fee"))
TAX = HeaderCategory("tax", ("tax", "vat", "tva", "duty", "tariff"))
SHIPPING = HeaderCategory("shipping", ("shipping", "freight", "delivery", "transport"))
DISCOUNT = HeaderCategory("discount", ("discount", "rebate", "reduction", "credit"))

HEADER_CATEGORIES = (
    ITEM_IDENTIFIER,
    DESCRIPTION,
    QUANTITY,
    UNIT_PRICE,
    AMOUNT,
    TAX,
    SHIPPING,
    DISCOUNT,
)


def score_headers(headers: Sequence[str]) -> int:
    """Number of categories matched by at least one header."""
    normalized = [normalize_header(header) for header in headers]
    return sum(1 for category in HEADER_CATEGORIES if category.matches_any(normalized))


def header_row(table: LayoutTable) -> list[str]:
    cells = [cell for cell in table.cells if cell.row_index == 0]
    return [cell.content or "" for cell in sorted(cells, key=lambda cell: cell.column_index)]


def derive_table_hints(tables: Sequence[LayoutTable]) -> TableHints:
    hints: list[TableHint] = []
    glossary_parts: list[str] = []

    for idx, table in enumerate(tables):
        headers = header_row(table)
        if not headers:
            continue
        hints.append(TableHint(table_index=idx, headers=headers, score=score_headers(headers)))
        glossary_parts.append(f"Table {idx + 1} with headers: {', '.join(headers)}")

    return TableHints(hints=hints, glossary=" \n ".join(glossary_parts))
