"""Entitlement comparison engine.

Computes a four-way difference between the license service (side A) and the
provisioning record (side B), independently per category:

- provisioning-only: requested on the record, not provisioned -> to be added
- license-only: provisioned, not on the record -> to be removed
- changed: on both sides, at least one tracked field differs
- matching: on both sides, identical on every tracked field

Every key in the union of both sides lands in exactly one bucket.

MATCHING KEYS:
Apps are keyed by product code, package and modifier because the package
changes what an app entitlement grants. Models and data are keyed by product
code and modifier only.

DUPLICATE KEYS:
When one side carries two entitlements with the same key, the last one wins.
The key map is used for matching, not for counting inventory.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import CATEGORY_ORDER, Entitlement, EntitlementCategory, EntitlementSet

logger = logging.getLogger(__name__)


class Bucket(str, Enum):
    """Reconciliation outcome for one matching key."""

    PROVISIONING_ONLY = "provisioning-only"
    LICENSE_ONLY = "license-only"
    CHANGED = "changed"
    MATCHING = "matching"


# Fields compared for every category
BASE_TRACKED_FIELDS: tuple[str, ...] = ("startDate", "endDate", "productModifier")

# Apps also track package and seat count
APP_TRACKED_FIELDS: tuple[str, ...] = (*BASE_TRACKED_FIELDS, "packageName", "quantity")


def tracked_fields(category: EntitlementCategory) -> tuple[str, ...]:
    """Get the fields compared for a category."""
    if category == EntitlementCategory.APPS:
        return APP_TRACKED_FIELDS
    return BASE_TRACKED_FIELDS


def matching_key(entitlement: Entitlement, category: EntitlementCategory) -> str:
    """Build the key used to pair entitlements across the two sides."""
    if category == EntitlementCategory.APPS:
        return (
            f"{entitlement.product_code}|{entitlement.package_name}|{entitlement.product_modifier}"
        )
    return f"{entitlement.product_code}|{entitlement.product_modifier}"


@dataclass(frozen=True)
class FieldDifference:
    """A tracked field whose value differs between the two sides."""

    field: str
    license_value: Any
    provisioning_value: Any

    def swapped(self) -> FieldDifference:
        """The same difference seen from the other side."""
        return FieldDifference(
            field=self.field,
            license_value=self.provisioning_value,
            provisioning_value=self.license_value,
        )


def find_differences(
    license_entitlement: Entitlement,
    provisioning_entitlement: Entitlement,
    category: EntitlementCategory,
) -> tuple[FieldDifference, ...]:
    """Compare the tracked fields of two entitlements sharing a key.

    Values are compared exactly; consistent formats are the normalizer's job.
    """
    differences: list[FieldDifference] = []
    for field_name in tracked_fields(category):
        license_value = license_entitlement.field_value(field_name)
        provisioning_value = provisioning_entitlement.field_value(field_name)
        if license_value != provisioning_value:
            differences.append(
                FieldDifference(
                    field=field_name,
                    license_value=license_value,
                    provisioning_value=provisioning_value,
                )
            )
    return tuple(differences)


@dataclass(frozen=True)
class ComparedEntry:
    """One bucketed key with both sides' entitlements (None where absent)."""

    key: str
    category: EntitlementCategory
    bucket: Bucket
    license: Entitlement | None = None
    provisioning: Entitlement | None = None
    differences: tuple[FieldDifference, ...] = ()

    @property
    def product_code(self) -> str:
        present = self.provisioning or self.license
        return present.product_code if present else ""

    @property
    def differing_fields(self) -> tuple[str, ...]:
        return tuple(d.field for d in self.differences)


@dataclass
class CategoryComparison:
    """Bucketed result for a single category."""

    category: EntitlementCategory
    provisioning_only: list[ComparedEntry] = field(default_factory=list)
    license_only: list[ComparedEntry] = field(default_factory=list)
    changed: list[ComparedEntry] = field(default_factory=list)
    matching: list[ComparedEntry] = field(default_factory=list)

    def bucket(self, bucket: Bucket) -> list[ComparedEntry]:
        """Get the entries of one bucket."""
        match bucket:
            case Bucket.PROVISIONING_ONLY:
                return self.provisioning_only
            case Bucket.LICENSE_ONLY:
                return self.license_only
            case Bucket.CHANGED:
                return self.changed
            case Bucket.MATCHING:
                return self.matching

    def entries(self) -> list[ComparedEntry]:
        """All entries, grouped by bucket."""
        return [*self.provisioning_only, *self.license_only, *self.changed, *self.matching]

    def counts(self) -> dict[Bucket, int]:
        return {bucket: len(self.bucket(bucket)) for bucket in Bucket}


def reconcile_category(
    license_entitlements: Iterable[Entitlement],
    provisioning_entitlements: Iterable[Entitlement],
    category: EntitlementCategory,
) -> CategoryComparison:
    """Reconcile the entitlements of one category.

    Args:
        license_entitlements: Side A, what the license service has provisioned.
        provisioning_entitlements: Side B, what the provisioning record requests.
        category: The category both collections belong to.

    Returns:
        The bucketed comparison. Empty inputs are fine on either side.
    """
    license_map = {matching_key(e, category): e for e in license_entitlements}
    provisioning_map = {matching_key(e, category): e for e in provisioning_entitlements}

    result = CategoryComparison(category=category)

    for key, provisioning in provisioning_map.items():
        license_entitlement = license_map.get(key)
        if license_entitlement is None:
            result.provisioning_only.append(
                ComparedEntry(
                    key=key,
                    category=category,
                    bucket=Bucket.PROVISIONING_ONLY,
                    provisioning=provisioning,
                )
            )
            continue

        differences = find_differences(license_entitlement, provisioning, category)
        bucket = Bucket.CHANGED if differences else Bucket.MATCHING
        result.bucket(bucket).append(
            ComparedEntry(
                key=key,
                category=category,
                bucket=bucket,
                license=license_entitlement,
                provisioning=provisioning,
                differences=differences,
            )
        )

    for key, license_entitlement in license_map.items():
        if key not in provisioning_map:
            result.license_only.append(
                ComparedEntry(
                    key=key,
                    category=category,
                    bucket=Bucket.LICENSE_ONLY,
                    license=license_entitlement,
                )
            )

    return result


@dataclass
class EntitlementComparison:
    """Bucketed results for all three categories."""

    models: CategoryComparison
    data: CategoryComparison
    apps: CategoryComparison

    def for_category(self, category: EntitlementCategory) -> CategoryComparison:
        match category:
            case EntitlementCategory.APPS:
                return self.apps
            case EntitlementCategory.MODELS:
                return self.models
            case EntitlementCategory.DATA:
                return self.data

    def categories(self) -> list[CategoryComparison]:
        """Per-category results in listing order."""
        return [self.for_category(category) for category in CATEGORY_ORDER]

    def entries(self) -> list[ComparedEntry]:
        return [entry for comparison in self.categories() for entry in comparison.entries()]


def reconcile(
    license_set: EntitlementSet,
    provisioning_set: EntitlementSet,
) -> EntitlementComparison:
    """Reconcile every category of the two sides."""
    comparison = EntitlementComparison(
        models=reconcile_category(
            license_set.models, provisioning_set.models, EntitlementCategory.MODELS
        ),
        data=reconcile_category(license_set.data, provisioning_set.data, EntitlementCategory.DATA),
        apps=reconcile_category(license_set.apps, provisioning_set.apps, EntitlementCategory.APPS),
    )

    logger.info(
        "Entitlements reconciled",
        extra={
            category.category.value: {
                bucket.value: count for bucket, count in category.counts().items()
            }
            for category in comparison.categories()
        },
    )
    return comparison


@dataclass(frozen=True)
class ReconciliationSummary:
    """Bucket counts across all categories."""

    provisioning_only: int = 0
    license_only: int = 0
    changed: int = 0
    matching: int = 0

    @property
    def has_discrepancies(self) -> bool:
        return (self.provisioning_only + self.license_only + self.changed) > 0

    @classmethod
    def from_comparison(cls, comparison: EntitlementComparison) -> ReconciliationSummary:
        """Aggregate a comparison into summary counts."""
        categories = comparison.categories()
        return cls(
            provisioning_only=sum(len(c.provisioning_only) for c in categories),
            license_only=sum(len(c.license_only) for c in categories),
            changed=sum(len(c.changed) for c in categories),
            matching=sum(len(c.matching) for c in categories),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "provisioning_only": self.provisioning_only,
            "license_only": self.license_only,
            "changed": self.changed,
            "matching": self.matching,
            "has_discrepancies": self.has_discrepancies,
        }
