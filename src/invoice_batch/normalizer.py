"""Canonical invoice record and the normalizer that coerces extraction output into it.

Extraction output is loosely typed: numbers arrive as ``"1.234,56"``, singleton
sections arrive as bare objects, optional strings arrive as numbers. The
normalizer repairs what can be repaired and reports everything else at once so
a reviewer sees the complete list of corrections to make.
"""

from __future__ import annotations

import json
import math
import re
from enum import Enum
from typing import Annotated, Any, Mapping, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import RecordValidationError

_WHITESPACE = re.compile(r"\s")
_THOUSANDS_COMMA = re.compile(r",(?=\d{3}(?:\D|$))")
_THOUSANDS_PERIOD = re.compile(r"\.(?=\d{3}(?:\D|$))")
_DECIMAL_COMMA = re.compile(r",(\d{1,2})$")


def number_like(value: Any) -> float | None:
    """Coerce a number or a locale-formatted numeric string.

    Unparseable or empty input is absent (``None``), never ``0``.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("expected a number or a numeric string")
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    if not isinstance(value, str):
        raise ValueError("expected a number or a numeric string")

    text = _WHITESPACE.sub("", value.strip())
    if not text:
        return None
    text = _THOUSANDS_COMMA.sub("", text)
    text = _THOUSANDS_PERIOD.sub("", text)
    text = _DECIMAL_COMMA.sub(r".\1", text)
    # float() accepts digit-group underscores; extraction output never means them
    if "_" in text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def optional_string(value: Any) -> str | None:
    """Accept a string or a number and stringify it; empty stays absent."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("expected a string or a number")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        raise ValueError("expected a string or a number")
    return value if value.strip() else None


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("expected a string")
    return value if value.strip() else None


def _line_item_type(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("expected a string")
    return value.strip().lower() or None


NumberLike = Annotated[Optional[float], BeforeValidator(number_like)]
OptionalString = Annotated[Optional[str], BeforeValidator(optional_string)]
OptionalText = Annotated[Optional[str], BeforeValidator(_optional_text)]


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LineItemType(str, Enum):
    PRODUCT = "product"
    SHIPPING = "shipping"
    TAX = "tax"
    FEE = "fee"
    DISCOUNT = "discount"
    OTHER = "other"


class LineItem(CamelModel):
    # ``type`` documents intent (rate/base_amount matter for tax-like rows);
    # it never changes which fields are allowed.
    type: Annotated[Optional[LineItemType], BeforeValidator(_line_item_type)] = None
    product_code: OptionalText = None
    description: OptionalText = None
    hs_code: OptionalText = None
    origin_country: OptionalText = None
    fare_preference: OptionalText = None
    total_amount: NumberLike = None
    net_weight: NumberLike = None
    gross_weight: NumberLike = None
    quantity: NumberLike = None
    uom: OptionalText = Field(default=None, alias="UOM")
    rate: NumberLike = None
    base_amount: NumberLike = None
    currency: OptionalText = None
    category: OptionalText = None


class TotalsAndSubtotals(CamelModel):
    air_fee: NumberLike = None
    other_fee1: NumberLike = None
    insurance_fee: NumberLike = None
    rebate: NumberLike = None
    amount_due: NumberLike = None
    currency: OptionalString = None
    total_net_weight: NumberLike = None
    total_gross_weight: NumberLike = None
    total_quantity: NumberLike = None
    total_volume: NumberLike = None


class BasicInformation(CamelModel):
    internal_reference: OptionalString = None
    document_type: OptionalString = None
    document_number: OptionalString = None
    document_date: OptionalString = None
    dispatch_country: OptionalString = None
    final_destination: OptionalString = None
    origin_countries: OptionalString = None
    incoterms: OptionalString = None
    incoterms_city: OptionalString = None
    commodity_code: OptionalString = None
    total_packages: NumberLike = None
    parcel_type: OptionalString = None


class Importer(CamelModel):
    name: OptionalString = None
    eori_number: NumberLike = None
    vat_number: NumberLike = None
    address: OptionalString = None
    city: OptionalString = None
    zip_code: NumberLike = None
    country: OptionalString = None


class Exporter(CamelModel):
    name: OptionalString = None
    eori_number: NumberLike = None
    vat_number: NumberLike = None
    rex_number: NumberLike = None
    address: OptionalString = None
    city: OptionalString = None
    zip_code: NumberLike = None
    country: OptionalString = None


class InvoiceDiagnostics(CamelModel):
    computed: dict[str, bool] = Field(default_factory=dict)


class ExtractedInvoice(CamelModel):
    """Canonical record for one invoice.

    Singleton sections are lists by shape; callers read index 0 by convention.
    """

    line_items: list[LineItem] = Field(default_factory=list)
    totals_and_subtotals: list[TotalsAndSubtotals]
    basic_information: list[BasicInformation]
    importer: list[Importer]
    exporter: list[Exporter]
    diagnostics: InvoiceDiagnostics = Field(default_factory=InvoiceDiagnostics)

    @field_validator(
        "line_items", "totals_and_subtotals", "basic_information", "importer", "exporter",
        mode="before",
    )
    @classmethod
    def _wrap_single_record(cls, value: Any, info) -> Any:
        if value is None and info.field_name == "line_items":
            return []
        if isinstance(value, Mapping):
            return [value]
        return value

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# (totals field, line item field, wire name) filled from product rows when absent
_COMPUTED_TOTALS = (
    ("total_quantity", "quantity", "totalQuantity"),
    ("total_net_weight", "net_weight", "totalNetWeight"),
    ("total_gross_weight", "gross_weight", "totalGrossWeight"),
)


def _fill_computed_totals(record: ExtractedInvoice) -> None:
    if not record.totals_and_subtotals:
        return
    totals = record.totals_and_subtotals[0]
    products = [
        item for item in record.line_items
        if item.type is None or item.type is LineItemType.PRODUCT
    ]
    for total_field, item_field, wire_name in _COMPUTED_TOTALS:
        if getattr(totals, total_field) is not None:
            continue
        values = [getattr(item, item_field) for item in products]
        values = [value for value in values if value is not None]
        if values:
            setattr(totals, total_field, round(sum(values), 6))
            record.diagnostics.computed[wire_name] = True


def _issue(error: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "path": ".".join(str(part) for part in error["loc"]),
        "message": error["msg"],
        "type": error["type"],
    }


def normalize_record(raw: Any) -> ExtractedInvoice:
    """Validate raw extraction output, raising with every violation aggregated."""
    if not isinstance(raw, Mapping):
        raise RecordValidationError(
            "Extraction output must be a JSON object",
            issues=[{"path": "", "message": f"got {type(raw).__name__}", "type": "object_type"}],
        )
    payload = {key: value for key, value in raw.items() if key != "diagnostics"}
    try:
        record = ExtractedInvoice.model_validate(payload)
    except ValidationError as exc:
        issues = [_issue(error) for error in exc.errors()]
        raise RecordValidationError(
            f"{len(issues)} field(s) failed validation", issues=issues
        ) from exc
    _fill_computed_totals(record)
    return record


def merge_correction(existing: ExtractedInvoice | None, correction: Mapping[str, Any]) -> ExtractedInvoice:
    """Overlay a reviewer's correction section by section and renormalize."""
    if not isinstance(correction, Mapping):
        raise RecordValidationError(
            "Correction must be a JSON object",
            issues=[{"path": "", "message": f"got {type(correction).__name__}", "type": "object_type"}],
        )
    base: dict[str, Any] = {}
    if existing is not None:
        base = existing.model_dump(by_alias=True, exclude={"diagnostics"}, exclude_none=True)
        computed = existing.diagnostics.computed
        if computed and base.get("totalsAndSubtotals"):
            # derived totals are recomputed from the merged line items
            base["totalsAndSubtotals"][0] = {
                key: value for key, value in base["totalsAndSubtotals"][0].items() if key not in computed
            }
    base.update({key: value for key, value in correction.items() if key != "diagnostics"})
    return normalize_record(base)


EXTRACTION_RULES = (
    "Extract EVERY table row as a lineItem. Do not skip any rows.",
    "Products: type='product', include productCode, description, hsCode, quantities, amounts.",
    "Shipping/Freight: type='shipping', include description and amount.",
    "Taxes/VAT/Duties: type='tax', include description, rate (if %), amount.",
    "Fees/Charges: type='fee', include description and amount.",
    "Discounts/Rebates: type='discount', include description and amount.",
    "Other charges: type='other', include description and amount.",
    "Include subtotals, totals and summary rows as separate lineItems.",
    "Maintain original table order. Merge wrapped lines. Set originCountry from context.",
    "Extract from ALL tables; every data row becomes a lineItem.",
    "Return strict JSON only, no commentary.",
)


def target_schema_description() -> str:
    """Rules plus JSON schema handed to the record extractor."""
    schema = ExtractedInvoice.model_json_schema(by_alias=True)
    schema.get("properties", {}).pop("diagnostics", None)
    schema.get("$defs", {}).pop("InvoiceDiagnostics", None)
    rules = "\n".join(f"{idx}) {rule}" for idx, rule in enumerate(EXTRACTION_RULES, start=1))
    return f"{rules}\n\nJSON schema:\n{json.dumps(schema, indent=2)}"
