"""Tenant lookup and provisioning record comparison.

Two flows feed the request state machine:
1. Lookup only: fetch a tenant's license-service entitlements
2. Lookup plus compare: additionally fetch a provisioning record, validate
   it belongs to the tenant, and reconcile the two sides

Both flows report problems through ``LookupResult.error`` rather than
raising, and keep whatever was fetched before the failure so the caller can
still write a raw listing.

The license service, its local cache and the provisioning record source are
external collaborators, described here as protocols.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from .comparison import EntitlementComparison, ReconciliationSummary, reconcile
from .models import EntitlementSet, ProvisioningRecord, TenantRecord, TenantSummary
from .normalizer import parse_provisioning_entitlements, parse_tenant_entitlements
from .tenant_match import MatchStrategy, TenantMatchResult, substring_match, validate_tenant_match

logger = logging.getLogger(__name__)

# Tenant keys in these shapes are ids and skip name resolution
TENANT_UUID_PATTERN = re.compile(r"^[0-9a-f-]{36}$", re.IGNORECASE)
TENANT_NUMERIC_ID_PATTERN = re.compile(r"^\d+$")

# Keys under which a cached tenant row may carry its entitlements
CACHED_ENTITLEMENT_KEYS: tuple[str, ...] = (
    "product_entitlements",
    "productEntitlements",
    "extensionData",
)


# =============================================================================
# Collaborator ports
# =============================================================================


@runtime_checkable
class LicenseServiceClient(Protocol):
    """Port for the tenant-licensing backend."""

    async def fetch_tenant_entitlements(self, tenant_key: str) -> dict[str, Any] | None:
        """Fetch a tenant with its entitlement payload, or None if unknown."""
        ...

    async def list_tenants(self) -> list[dict[str, Any]]:
        """List all tenants as ``{"tenantId", "tenantName"}`` mappings."""
        ...


@runtime_checkable
class TenantCache(Protocol):
    """Port for the local copy of license-service tenants."""

    async def find_tenant(self, tenant_key: str) -> dict[str, Any] | None:
        ...


@runtime_checkable
class ProvisioningRecordSource(Protocol):
    """Port for provisioning records (local cache first, then the CRM)."""

    async def find_record(self, record_key: str) -> dict[str, Any] | None:
        ...


# =============================================================================
# Results
# =============================================================================


class LookupErrorKind(str, Enum):
    """Why a lookup did not produce a full result."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TENANT_MISMATCH = "tenant_mismatch"
    TRANSPORT = "transport"


class LookupSource(str, Enum):
    """Where the license-service entitlements came from."""

    CACHE = "cache"
    LIVE = "live"


@dataclass(frozen=True)
class LookupResult:
    """Outcome of a lookup, successful or not.

    ``compare_requested`` distinguishes "no provisioning record asked for"
    from "the record had zero entitlements".
    """

    tenant_key: str
    record_key: str | None = None
    compare_requested: bool = False
    tenant: TenantRecord | None = None
    record: ProvisioningRecord | None = None
    license_entitlements: EntitlementSet | None = None
    provisioning_entitlements: EntitlementSet | None = None
    comparison: EntitlementComparison | None = None
    summary: ReconciliationSummary | None = None
    match: TenantMatchResult | None = None
    source: LookupSource | None = None
    error: str | None = None
    error_kind: LookupErrorKind | None = None
    timestamp: datetime | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def warning(self) -> str | None:
        return self.match.warning if self.match else None

    def failed(self, error: str, kind: LookupErrorKind) -> LookupResult:
        """Copy of this result marked as failed."""
        return replace(self, error=error, error_kind=kind)


# =============================================================================
# Service
# =============================================================================


class LookupService:
    """Runs tenant lookups and provisioning record comparisons."""

    def __init__(
        self,
        license_client: LicenseServiceClient,
        record_source: ProvisioningRecordSource,
        tenant_cache: TenantCache | None = None,
        match_strategy: MatchStrategy = substring_match,
    ) -> None:
        self._license_client = license_client
        self._record_source = record_source
        self._tenant_cache = tenant_cache
        self._match_strategy = match_strategy

    async def lookup_tenant(self, tenant_key: str, force_fresh: bool = False) -> LookupResult:
        """Fetch a tenant's license-service entitlements.

        The local cache is consulted first unless ``force_fresh`` is set; a
        cache miss, or a cached tenant without entitlements, falls through to
        the live service.
        """
        result = LookupResult(tenant_key=tenant_key, timestamp=datetime.now(UTC))
        logger.info(
            "Looking up tenant",
            extra={"tenant_key": tenant_key, "force_fresh": force_fresh},
        )

        raw: dict[str, Any] | None = None
        source = LookupSource.CACHE
        if not force_fresh and self._tenant_cache is not None:
            raw = await self._find_cached_tenant(self._tenant_cache, tenant_key)

        if raw is None:
            source = LookupSource.LIVE
            try:
                raw = await self._fetch_live_tenant(tenant_key)
            except Exception as e:
                logger.exception(
                    "License service lookup failed",
                    extra={"tenant_key": tenant_key, "error": str(e)},
                )
                return result.failed(
                    f"License service lookup failed: {e}", LookupErrorKind.TRANSPORT
                )

        if raw is None:
            return result.failed(
                f"Tenant '{tenant_key}' not found in license service or cache",
                LookupErrorKind.NOT_FOUND,
            )

        try:
            tenant = TenantRecord.model_validate(raw)
        except ValidationError as e:
            return result.failed(
                f"License service returned an unreadable tenant record: {e}",
                LookupErrorKind.TRANSPORT,
            )

        entitlements = parse_tenant_entitlements(raw)
        logger.info(
            "Tenant entitlements loaded",
            extra={
                "tenant_name": tenant.tenant_name,
                "source": source.value,
                **entitlements.counts(),
            },
        )
        return replace(
            result,
            tenant=tenant,
            license_entitlements=entitlements,
            source=source,
        )

    async def compare_with_record(
        self,
        tenant_key: str,
        record_key: str,
        force_fresh: bool = False,
    ) -> LookupResult:
        """Look up a tenant and reconcile it against a provisioning record."""
        result = await self.lookup_tenant(tenant_key, force_fresh=force_fresh)
        result = replace(result, record_key=record_key, compare_requested=True)
        if not result.success:
            return result

        try:
            raw_record = await self._record_source.find_record(record_key)
        except Exception as e:
            logger.exception(
                "Provisioning record lookup failed",
                extra={"record_key": record_key, "error": str(e)},
            )
            return result.failed(
                f"Provisioning record lookup failed: {e}", LookupErrorKind.TRANSPORT
            )

        if raw_record is None:
            return result.failed(
                f"Provisioning record '{record_key}' not found", LookupErrorKind.NOT_FOUND
            )

        try:
            record = ProvisioningRecord.model_validate(raw_record)
        except ValidationError as e:
            return result.failed(
                f"Provisioning record '{record_key}' is unreadable: {e}",
                LookupErrorKind.TRANSPORT,
            )
        result = replace(result, record=record)

        tenant_name = result.tenant.tenant_name if result.tenant else None
        match = validate_tenant_match(
            tenant_name=tenant_name,
            record_tenant_name=record.tenant_name,
            user_supplied=tenant_key,
            record_name=record.display_name,
            strategy=self._match_strategy,
        )
        result = replace(result, match=match)
        if not match.matches:
            return result.failed(
                match.error or "Tenant mismatch", LookupErrorKind.TENANT_MISMATCH
            )

        provisioning = parse_provisioning_entitlements(record)
        license_entitlements = result.license_entitlements or EntitlementSet()
        comparison = reconcile(license_entitlements, provisioning)
        summary = ReconciliationSummary.from_comparison(comparison)

        logger.info(
            "Provisioning record compared",
            extra={
                "tenant_name": tenant_name,
                "record": record.display_name,
                **summary.to_dict(),
            },
        )
        return replace(
            result,
            provisioning_entitlements=provisioning,
            comparison=comparison,
            summary=summary,
        )

    async def _find_cached_tenant(
        self, cache: TenantCache, tenant_key: str
    ) -> dict[str, Any] | None:
        try:
            raw = await cache.find_tenant(tenant_key)
        except Exception as e:
            # The cache is an optimization; the live service is authoritative
            logger.warning(
                "Tenant cache lookup failed, falling back to live service",
                extra={"tenant_key": tenant_key, "error": str(e)},
            )
            return None

        if raw is None:
            return None
        if not any(raw.get(key) for key in CACHED_ENTITLEMENT_KEYS):
            logger.info("Cached tenant has no entitlements", extra={"tenant_key": tenant_key})
            return None
        return raw

    async def _fetch_live_tenant(self, tenant_key: str) -> dict[str, Any] | None:
        tenant_id = await self.resolve_tenant_id(tenant_key)
        raw = await self._license_client.fetch_tenant_entitlements(tenant_id)
        return raw

    async def resolve_tenant_id(self, tenant_key: str) -> str:
        """Resolve a tenant name to its id via the tenant listing.

        Keys that already look like ids are returned unchanged, as are names
        that match nothing (the service gets the final say).
        """
        if TENANT_UUID_PATTERN.match(tenant_key) or TENANT_NUMERIC_ID_PATTERN.match(tenant_key):
            return tenant_key

        wanted = tenant_key.lower()
        tenants: list[TenantSummary] = []
        for entry in await self._license_client.list_tenants():
            try:
                tenants.append(TenantSummary.model_validate(entry))
            except ValidationError:
                continue

        for tenant in tenants:
            if (tenant.tenant_name or "").lower() == wanted:
                return tenant.tenant_id
        for tenant in tenants:
            if wanted in (tenant.tenant_name or "").lower():
                logger.info(
                    "Resolved tenant name by containment",
                    extra={"tenant_key": tenant_key, "tenant_name": tenant.tenant_name},
                )
                return tenant.tenant_id

        return tenant_key
