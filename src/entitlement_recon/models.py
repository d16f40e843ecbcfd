"""Entitlement models.

Two layers live here:
1. Pydantic boundary models for raw payloads coming out of the license
   service and the provisioning record (lenient, extra fields ignored)
2. The canonical, immutable ``Entitlement`` produced by the normalizer
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

# =============================================================================
# Raw payload models
# =============================================================================


class RawEntitlement(BaseModel):
    """An entitlement as either source system reports it.

    Field names drift between sources (``productCode`` vs ``code`` vs
    ``name``) and any field may be missing, so nothing here is required.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    product_code: Any = Field(
        None, validation_alias=AliasChoices("productCode", "code", "name", "product_code")
    )
    product_modifier: Any = Field(
        None, validation_alias=AliasChoices("productModifier", "product_modifier")
    )
    package_name: Any = Field(None, validation_alias=AliasChoices("packageName", "package_name"))
    quantity: Any = None
    start_date: Any = Field(None, validation_alias=AliasChoices("startDate", "start_date"))
    end_date: Any = Field(None, validation_alias=AliasChoices("endDate", "end_date"))
    expansion_packs: list[RawEntitlement] = Field(
        default_factory=list, validation_alias=AliasChoices("expansionPacks", "expansion_packs")
    )

    @field_validator("expansion_packs", mode="before")
    @classmethod
    def drop_malformed_packs(cls, v: Any) -> list[Any]:
        if not isinstance(v, list):
            return []
        return [pack for pack in v if isinstance(pack, dict | RawEntitlement)]


class RawEntitlementBlock(BaseModel):
    """The three per-category entitlement arrays of one payload.

    Items stay untyped here so one malformed entry is skipped by the
    normalizer instead of invalidating the whole block.
    """

    model_config = {"extra": "ignore", "populate_by_name": True, "protected_namespaces": ()}

    model_entitlements: list[Any] = Field(
        default_factory=list, validation_alias=AliasChoices("modelEntitlements", "models")
    )
    data_entitlements: list[Any] = Field(
        default_factory=list, validation_alias=AliasChoices("dataEntitlements", "data")
    )
    app_entitlements: list[Any] = Field(
        default_factory=list, validation_alias=AliasChoices("appEntitlements", "apps")
    )

    @field_validator("model_entitlements", "data_entitlements", "app_entitlements", mode="before")
    @classmethod
    def coerce_list(cls, v: Any) -> list[Any]:
        return v if isinstance(v, list) else []


class TenantRecord(BaseModel):
    """A tenant as returned by the license service or its local cache."""

    model_config = {"extra": "ignore", "populate_by_name": True, "coerce_numbers_to_str": True}

    tenant_id: str | None = Field(None, validation_alias=AliasChoices("tenantId", "tenant_id"))
    tenant_name: str | None = Field(
        None, validation_alias=AliasChoices("tenantName", "tenant_name")
    )
    account_name: str | None = Field(
        None, validation_alias=AliasChoices("accountName", "account_name")
    )
    display_name: str | None = Field(
        None, validation_alias=AliasChoices("displayName", "tenant_display_name", "display_name")
    )
    # Cached rows carry the block under product_entitlements; live responses
    # nest it under extensionData (or are the block themselves)
    product_entitlements: Any = None
    extension_data: Any = Field(
        None, validation_alias=AliasChoices("extensionData", "extension_data")
    )


class ProvisioningRecord(BaseModel):
    """A CRM provisioning record.

    ``payload_data`` holds the requested entitlements as JSON (string or
    already decoded) under ``properties.provisioningDetail.entitlements``.
    """

    model_config = {"extra": "ignore", "populate_by_name": True, "coerce_numbers_to_str": True}

    record_id: str | None = Field(
        None, validation_alias=AliasChoices("ps_record_id", "record_id", "Id", "id")
    )
    record_name: str | None = Field(
        None, validation_alias=AliasChoices("ps_record_name", "record_name", "Name", "name")
    )
    tenant_name: str | None = Field(
        None, validation_alias=AliasChoices("tenant_name", "Tenant_Name__c", "tenantName")
    )
    account_name: str | None = Field(
        None, validation_alias=AliasChoices("account_name", "Account__c", "accountName")
    )
    status: str | None = Field(None, validation_alias=AliasChoices("status", "Status__c"))
    payload_data: Any = Field(
        None, validation_alias=AliasChoices("payload_data", "Payload_Data__c", "payloadData")
    )

    @property
    def display_name(self) -> str:
        """Name used when talking about the record in messages."""
        return self.record_name or self.record_id or "(unnamed record)"


class TenantSummary(BaseModel):
    """One entry of the license service's tenant listing."""

    model_config = {"extra": "ignore", "populate_by_name": True, "coerce_numbers_to_str": True}

    tenant_id: str = Field(validation_alias=AliasChoices("tenantId", "tenant_id", "id"))
    tenant_name: str | None = Field(
        None, validation_alias=AliasChoices("tenantName", "tenant_name", "name")
    )


# =============================================================================
# Canonical models
# =============================================================================


class EntitlementCategory(str, Enum):
    """Entitlement categories. Comparison never crosses categories."""

    APPS = "apps"
    MODELS = "models"
    DATA = "data"


# Category order used for listings (matches the payload order of the sources)
CATEGORY_ORDER: tuple[EntitlementCategory, ...] = (
    EntitlementCategory.MODELS,
    EntitlementCategory.DATA,
    EntitlementCategory.APPS,
)


@dataclass(frozen=True)
class Entitlement:
    """A canonical entitlement. Only the normalizer creates these."""

    category: EntitlementCategory
    product_code: str = ""
    product_modifier: str = ""
    package_name: str = ""
    quantity: int | float | None = None
    start_date: date | None = None
    end_date: date | None = None

    def field_value(self, field_name: str) -> Any:
        """Look up a tracked field by its wire name (``startDate`` etc.)."""
        return getattr(self, FIELD_ATTRIBUTES[field_name])

    def to_dict(self) -> dict[str, Any]:
        """Convert to the raw camelCase shape with ISO dates."""
        return {
            "productCode": self.product_code,
            "productModifier": self.product_modifier,
            "packageName": self.package_name,
            "quantity": self.quantity,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
        }


# Wire field name -> Entitlement attribute
FIELD_ATTRIBUTES: dict[str, str] = {
    "productCode": "product_code",
    "productModifier": "product_modifier",
    "packageName": "package_name",
    "quantity": "quantity",
    "startDate": "start_date",
    "endDate": "end_date",
}


@dataclass(frozen=True)
class EntitlementSet:
    """All canonical entitlements of one side, grouped by category."""

    apps: tuple[Entitlement, ...] = field(default_factory=tuple)
    models: tuple[Entitlement, ...] = field(default_factory=tuple)
    data: tuple[Entitlement, ...] = field(default_factory=tuple)

    def for_category(self, category: EntitlementCategory) -> tuple[Entitlement, ...]:
        """Get the entitlements of one category."""
        match category:
            case EntitlementCategory.APPS:
                return self.apps
            case EntitlementCategory.MODELS:
                return self.models
            case EntitlementCategory.DATA:
                return self.data

    @property
    def total(self) -> int:
        return len(self.apps) + len(self.models) + len(self.data)

    def counts(self) -> dict[str, int]:
        """Per-category counts, for logging."""
        return {
            "models": len(self.models),
            "data": len(self.data),
            "apps": len(self.apps),
        }
