"""Row projections of lookup results for the shared workbook.

Three shapes are produced from one ``LookupResult``:
- Raw listing: one row per license-service entitlement (inventory view)
- Comparison listing: one row per bucketed entry, problems first
- Summary block: labelled bucket counts plus an overall verdict
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from .comparison import (
    Bucket,
    ComparedEntry,
    EntitlementComparison,
    ReconciliationSummary,
)
from .lookup import LookupErrorKind, LookupResult
from .models import CATEGORY_ORDER, Entitlement, EntitlementCategory, EntitlementSet

CATEGORY_LABELS: dict[EntitlementCategory, str] = {
    EntitlementCategory.MODELS: "Model",
    EntitlementCategory.DATA: "Data",
    EntitlementCategory.APPS: "App",
}

BUCKET_LABELS: dict[Bucket, str] = {
    Bucket.PROVISIONING_ONLY: "In Provisioning Only",
    Bucket.LICENSE_ONLY: "In License Service Only",
    Bucket.CHANGED: "Different",
    Bucket.MATCHING: "Match",
}

# What applying the provisioning record would do to each bucket
BUCKET_MEANINGS: dict[Bucket, str] = {
    Bucket.PROVISIONING_ONLY: "adding",
    Bucket.LICENSE_ONLY: "removing",
    Bucket.CHANGED: "updating",
    Bucket.MATCHING: "no change",
}

BUCKET_COLORS: dict[Bucket, str] = {
    Bucket.PROVISIONING_ONLY: "GREEN",
    Bucket.LICENSE_ONLY: "RED",
    Bucket.CHANGED: "YELLOW",
    Bucket.MATCHING: "BLUE",
}

# Problems before confirmations
BUCKET_PRIORITY: dict[Bucket, int] = {
    Bucket.PROVISIONING_ONLY: 1,
    Bucket.LICENSE_ONLY: 2,
    Bucket.CHANGED: 3,
    Bucket.MATCHING: 4,
}

RAW_LISTING_HEADERS: tuple[str, ...] = (
    "Product Code",
    "Type",
    "Package Name",
    "Start Date",
    "End Date",
    "Quantity",
    "Modifier",
)

COMPARISON_HEADERS: tuple[str, ...] = (
    "Product Code",
    "Type",
    "Status",
    "License Start",
    "License End",
    "License Package",
    "Provisioning Start",
    "Provisioning End",
    "Provisioning Package",
    "Notes",
)

SUMMARY_OVERALL_DISCREPANCIES = "Has Discrepancies"
SUMMARY_OVERALL_MATCH = "All Match"


def _cell(value: Any) -> str | int | float:
    """Render a value for a worksheet cell; None becomes blank."""
    if value is None:
        return ""
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, int | float | str):
        return value
    return str(value)


@dataclass(frozen=True)
class RawListingRow:
    product_code: str
    category: str
    package_name: str
    start_date: str
    end_date: str
    quantity: int | float | str
    product_modifier: str

    def to_cells(self) -> list[str | int | float]:
        return [
            self.product_code,
            self.category,
            self.package_name,
            self.start_date,
            self.end_date,
            self.quantity,
            self.product_modifier,
        ]


@dataclass(frozen=True)
class ComparisonRow:
    """One bucketed entry, with both sides' values (blank where absent)."""

    product_code: str
    category: str
    bucket: Bucket
    status: str
    meaning: str
    color: str
    license_start: str = ""
    license_end: str = ""
    license_package: str = ""
    provisioning_start: str = ""
    provisioning_end: str = ""
    provisioning_package: str = ""
    notes: str = ""

    def to_cells(self) -> list[str | int | float]:
        return [
            self.product_code,
            self.category,
            self.status,
            self.license_start,
            self.license_end,
            self.license_package,
            self.provisioning_start,
            self.provisioning_end,
            self.provisioning_package,
            self.notes,
        ]


def _raw_row(entitlement: Entitlement) -> RawListingRow:
    return RawListingRow(
        product_code=entitlement.product_code,
        category=CATEGORY_LABELS[entitlement.category],
        package_name=entitlement.package_name,
        start_date=str(_cell(entitlement.start_date)),
        end_date=str(_cell(entitlement.end_date)),
        quantity=_cell(entitlement.quantity),
        product_modifier=entitlement.product_modifier,
    )


def format_raw_listing(entitlements: EntitlementSet | None) -> list[RawListingRow]:
    """One row per license-service entitlement, models then data then apps."""
    if entitlements is None:
        return []
    return [
        _raw_row(entitlement)
        for category in CATEGORY_ORDER
        for entitlement in entitlements.for_category(category)
    ]


def _notes(entry: ComparedEntry) -> str:
    match entry.bucket:
        case Bucket.PROVISIONING_ONLY:
            return "Will be added to the license service"
        case Bucket.LICENSE_ONLY:
            return "Will be removed from the license service"
        case Bucket.CHANGED:
            return f"Differs: {', '.join(entry.differing_fields)}"
        case _:
            return ""


def _comparison_row(entry: ComparedEntry) -> ComparisonRow:
    license_side = entry.license
    provisioning_side = entry.provisioning
    return ComparisonRow(
        product_code=entry.product_code,
        category=CATEGORY_LABELS[entry.category],
        bucket=entry.bucket,
        status=BUCKET_LABELS[entry.bucket],
        meaning=BUCKET_MEANINGS[entry.bucket],
        color=BUCKET_COLORS[entry.bucket],
        license_start=str(_cell(license_side.start_date)) if license_side else "",
        license_end=str(_cell(license_side.end_date)) if license_side else "",
        license_package=license_side.package_name if license_side else "",
        provisioning_start=str(_cell(provisioning_side.start_date)) if provisioning_side else "",
        provisioning_end=str(_cell(provisioning_side.end_date)) if provisioning_side else "",
        provisioning_package=provisioning_side.package_name if provisioning_side else "",
        notes=_notes(entry),
    )


def format_comparison_listing(comparison: EntitlementComparison | None) -> list[ComparisonRow]:
    """One row per bucketed entry, sorted by bucket priority then product code."""
    if comparison is None:
        return []
    rows = [_comparison_row(entry) for entry in comparison.entries()]
    rows.sort(
        key=lambda row: (BUCKET_PRIORITY[row.bucket], row.product_code.casefold(), row.product_code)
    )
    return rows


def format_summary(summary: ReconciliationSummary) -> list[list[str | int]]:
    """The summary block: four labelled counts and the overall verdict."""
    return [
        ["In Provisioning Only (Adding):", summary.provisioning_only],
        ["In License Service Only (Removing):", summary.license_only],
        ["Different:", summary.changed],
        ["Matching:", summary.matching],
        [
            "Overall:",
            SUMMARY_OVERALL_DISCREPANCIES if summary.has_discrepancies else SUMMARY_OVERALL_MATCH,
        ],
    ]


@dataclass(frozen=True)
class FormattedResult:
    """Everything the state machine writes back for one request."""

    success: bool
    error: str | None = None
    error_kind: LookupErrorKind | None = None
    warning: str | None = None
    raw_listing: list[RawListingRow] = field(default_factory=list)
    comparison_listing: list[ComparisonRow] = field(default_factory=list)
    summary: ReconciliationSummary | None = None
    compare_requested: bool = False


def format_result(result: LookupResult) -> FormattedResult:
    """Project a lookup result into worksheet rows.

    A failed lookup still carries a raw listing when license-service
    entitlements were fetched before the failure.
    """
    return FormattedResult(
        success=result.success,
        error=result.error,
        error_kind=result.error_kind,
        warning=result.warning,
        raw_listing=format_raw_listing(result.license_entitlements),
        comparison_listing=format_comparison_listing(
            result.comparison if result.success else None
        ),
        summary=result.summary if result.success else None,
        compare_requested=result.compare_requested,
    )
