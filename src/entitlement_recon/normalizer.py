"""Entitlement normalization.

Both systems of record describe the same entitlements in slightly different
shapes. This module turns either shape into canonical ``Entitlement`` values
so that the comparison engine can work on exact matches.

NORMALIZATION RULES:
- Product code: ``productCode``, falling back to ``code`` then ``name``; missing -> ""
- Dates: truncated to a calendar date; unparsable -> None (never an error)
- Quantity: missing or non-finite -> None, zero stays 0
- Expansion packs: nested children become siblings in the same category,
  inheriting the parent's package name when they have none
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable
from datetime import UTC, date, datetime
from typing import Any

from pydantic import ValidationError

from .models import (
    Entitlement,
    EntitlementCategory,
    EntitlementSet,
    ProvisioningRecord,
    RawEntitlement,
    RawEntitlementBlock,
)

logger = logging.getLogger(__name__)

# Non-ISO date layouts seen in exported records
FALLBACK_DATE_FORMATS: tuple[str, ...] = (
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d-%b-%Y",
    "%b %d, %Y",
)

# Path of the requested entitlements inside a provisioning payload
PROVISIONING_ENTITLEMENTS_PATH: tuple[str, ...] = (
    "properties",
    "provisioningDetail",
    "entitlements",
)


def normalize_date(value: Any) -> date | None:
    """Normalize a date-ish value to a calendar date.

    Zone-aware timestamps are converted to UTC before truncation so that
    ``2025-01-01T23:30:00-05:00`` lands on 2025-01-02, as the license
    service reports it.

    Args:
        value: ISO string, ``date``/``datetime``, or anything else.

    Returns:
        The date, or None if the value is empty or cannot be parsed.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return _truncate(value)
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    try:
        return _truncate(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass

    for fmt in FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    logger.debug("Unparsable date", extra={"value": text})
    return None


def _truncate(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.date()


def normalize_quantity(value: Any) -> int | float | None:
    """Normalize a quantity, keeping 0 distinct from "no quantity"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        # "nan" and "inf" parse as floats but are not quantities
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() else number
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_entitlement(
    raw: RawEntitlement | dict[str, Any],
    category: EntitlementCategory,
    fallback_package: str = "",
) -> Entitlement:
    """Convert one raw entitlement into its canonical form.

    Args:
        raw: Raw entitlement (model or plain dict).
        category: Category the entitlement was listed under.
        fallback_package: Package name to use when the raw value has none.

    Returns:
        The canonical entitlement. Never raises for missing fields.
    """
    if not isinstance(raw, RawEntitlement):
        raw = RawEntitlement.model_validate(raw)

    return Entitlement(
        category=category,
        product_code=_text(raw.product_code),
        product_modifier=_text(raw.product_modifier),
        package_name=_text(raw.package_name) or fallback_package,
        quantity=normalize_quantity(raw.quantity),
        start_date=normalize_date(raw.start_date),
        end_date=normalize_date(raw.end_date),
    )


def normalize_entitlements(
    raw_items: Iterable[RawEntitlement | dict[str, Any]],
    category: EntitlementCategory,
) -> tuple[Entitlement, ...]:
    """Normalize a list of raw entitlements, flattening expansion packs.

    Each expansion pack is emitted directly after its parent.
    """
    result: list[Entitlement] = []
    for item in raw_items:
        try:
            raw = item if isinstance(item, RawEntitlement) else RawEntitlement.model_validate(item)
        except ValidationError as e:
            logger.warning(
                "Skipping malformed entitlement",
                extra={"category": category.value, "error": str(e)},
            )
            continue

        parent = normalize_entitlement(raw, category)
        result.append(parent)
        for pack in raw.expansion_packs:
            result.append(
                normalize_entitlement(pack, category, fallback_package=parent.package_name)
            )
    return tuple(result)


def normalize_block(block: RawEntitlementBlock | dict[str, Any]) -> EntitlementSet:
    """Normalize a ``modelEntitlements``/``dataEntitlements``/``appEntitlements`` block."""
    if not isinstance(block, RawEntitlementBlock):
        block = RawEntitlementBlock.model_validate(block)

    return EntitlementSet(
        models=normalize_entitlements(block.model_entitlements, EntitlementCategory.MODELS),
        data=normalize_entitlements(block.data_entitlements, EntitlementCategory.DATA),
        apps=normalize_entitlements(block.app_entitlements, EntitlementCategory.APPS),
    )


def _decode(payload: Any, source: str) -> Any:
    if isinstance(payload, str | bytes):
        try:
            return json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning(
                "Entitlement payload is not valid JSON",
                extra={"source": source, "error": str(e)},
            )
            return None
    return payload


def parse_license_entitlements(data: Any) -> EntitlementSet:
    """Parse license-service entitlements from any of the shapes it arrives in.

    Accepts a JSON string, a dict with a nested ``extensionData`` block, or
    the block itself. Anything unusable yields an empty set.
    """
    data = _decode(data, "license-service")
    if not isinstance(data, dict):
        return EntitlementSet()

    extension_data = data.get("extensionData")
    if isinstance(extension_data, dict):
        data = extension_data

    try:
        entitlements = normalize_block(data)
    except ValidationError as e:
        logger.warning(
            "License-service entitlements have an unexpected shape",
            extra={"error": str(e)},
        )
        return EntitlementSet()

    logger.debug("Parsed license-service entitlements", extra=entitlements.counts())
    return entitlements


def parse_tenant_entitlements(tenant: dict[str, Any]) -> EntitlementSet:
    """Parse the entitlements carried by a raw tenant record.

    Cached rows store the block under ``product_entitlements``, live
    responses under ``extensionData``; some responses are the block itself.
    """
    for key in ("product_entitlements", "productEntitlements", "extensionData"):
        if tenant.get(key):
            return parse_license_entitlements(tenant[key])
    return parse_license_entitlements(tenant)


def parse_provisioning_entitlements(record: ProvisioningRecord) -> EntitlementSet:
    """Parse the requested entitlements out of a provisioning record payload."""
    if not record.payload_data:
        logger.info(
            "Provisioning record has no payload",
            extra={"record": record.display_name},
        )
        return EntitlementSet()

    node = _decode(record.payload_data, "provisioning-record")
    for key in PROVISIONING_ENTITLEMENTS_PATH:
        if not isinstance(node, dict):
            node = None
            break
        node = node.get(key)

    if not isinstance(node, dict):
        logger.info(
            "Provisioning payload has no entitlements block",
            extra={"record": record.display_name},
        )
        return EntitlementSet()

    try:
        entitlements = normalize_block(node)
    except ValidationError as e:
        logger.warning(
            "Provisioning entitlements have an unexpected shape",
            extra={"record": record.display_name, "error": str(e)},
        )
        return EntitlementSet()

    logger.debug(
        "Parsed provisioning entitlements",
        extra={"record": record.display_name, **entitlements.counts()},
    )
    return entitlements
