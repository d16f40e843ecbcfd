"""Builders for raw tenant and provisioning record payloads."""

from __future__ import annotations

import json
from typing import Any

ACME_TENANT_ID = "3f2b6c1e-8d4a-4b7e-9c2f-1a5d6e7f8a9b"


def make_tenant(
    tenant_name: str = "Acme Corp",
    tenant_id: str = ACME_TENANT_ID,
    models: list[dict[str, Any]] | None = None,
    data: list[dict[str, Any]] | None = None,
    apps: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """A license-service tenant with entitlements under ``extensionData``."""
    return {
        "tenantId": tenant_id,
        "tenantName": tenant_name,
        "accountName": tenant_name,
        "extensionData": {
            "modelEntitlements": models or [],
            "dataEntitlements": data or [],
            "appEntitlements": apps or [],
        },
    }


def make_record(
    record_id: str = "PR-001",
    tenant_name: str | None = "Acme Corp",
    models: list[dict[str, Any]] | None = None,
    data: list[dict[str, Any]] | None = None,
    apps: list[dict[str, Any]] | None = None,
    record_name: str | None = None,
) -> dict[str, Any]:
    """A provisioning record with a JSON-encoded payload, as the CRM returns it."""
    payload = {
        "properties": {
            "provisioningDetail": {
                "entitlements": {
                    "modelEntitlements": models or [],
                    "dataEntitlements": data or [],
                    "appEntitlements": apps or [],
                }
            }
        }
    }
    record: dict[str, Any] = {
        "ps_record_id": record_id,
        "ps_record_name": record_name or f"{record_id} renewal",
        "payload_data": json.dumps(payload),
        "status": "Approved",
    }
    if tenant_name is not None:
        record["tenant_name"] = tenant_name
    return record
