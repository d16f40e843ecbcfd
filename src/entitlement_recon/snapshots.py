"""File-backed collaborators for offline comparisons.

A snapshot directory holds exported tenants and provisioning records, one
document per file (YAML or JSON):

    snapshots/
        tenants/   license-service tenants with their entitlement payload
        cache/     optional cached tenant rows (same shape as tenants/)
        records/   provisioning records

The three classes implement the lookup ports, so the same ``LookupService``
runs against a snapshot directory as against the live services.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

TENANTS_DIR = "tenants"
CACHE_DIR = "cache"
RECORDS_DIR = "records"

SNAPSHOT_SUFFIXES = frozenset({".yaml", ".yml", ".json"})
MAX_SNAPSHOT_FILE_SIZE_BYTES = 5 * 1024 * 1024

TENANT_ID_KEYS: tuple[str, ...] = ("tenantId", "tenant_id", "id")
TENANT_NAME_KEYS: tuple[str, ...] = ("tenantName", "tenant_name", "name")
RECORD_ID_KEYS: tuple[str, ...] = ("ps_record_id", "record_id", "Id", "id")
RECORD_NAME_KEYS: tuple[str, ...] = ("ps_record_name", "record_name", "Name", "name")


class SnapshotLoadError(Exception):
    """Raised when a snapshot file cannot be read."""

    pass


def load_snapshot_file(path: Path) -> dict[str, Any]:
    """Load one snapshot document.

    Raises:
        SnapshotLoadError: If the file is too large, unparsable or not a mapping.
    """
    try:
        size = path.stat().st_size
    except OSError as e:
        raise SnapshotLoadError(f"Cannot stat snapshot file {path}: {e}") from e

    if size > MAX_SNAPSHOT_FILE_SIZE_BYTES:
        raise SnapshotLoadError(
            f"Snapshot file exceeds maximum size of {MAX_SNAPSHOT_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        # JSON is a subset of YAML
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as e:
        raise SnapshotLoadError(f"Invalid snapshot file {path}: {e}") from e

    if not isinstance(data, dict):
        raise SnapshotLoadError(f"Snapshot file must contain a mapping: {path}")
    return data


def load_snapshot_dir(directory: Path) -> list[dict[str, Any]]:
    """Load every snapshot document of a directory, skipping broken files."""
    if not directory.is_dir():
        return []

    documents: list[dict[str, Any]] = []
    for path in sorted(directory.iterdir()):
        if path.suffix.lower() not in SNAPSHOT_SUFFIXES:
            continue
        try:
            documents.append(load_snapshot_file(path))
        except SnapshotLoadError as e:
            logger.warning("Skipping snapshot file", extra={"path": str(path), "error": str(e)})
    return documents


def _first(document: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = document.get(key)
        if value is not None and value != "":
            return str(value)
    return ""


def _find(
    documents: list[dict[str, Any]],
    key: str,
    id_keys: tuple[str, ...],
    name_keys: tuple[str, ...],
) -> dict[str, Any] | None:
    wanted = key.strip().lower()
    for document in documents:
        if _first(document, id_keys).lower() == wanted:
            return document
    for document in documents:
        if _first(document, name_keys).lower() == wanted:
            return document
    return None


class SnapshotLicenseService:
    """License service backed by ``tenants/``."""

    def __init__(self, root: Path) -> None:
        self._tenants = load_snapshot_dir(root / TENANTS_DIR)
        logger.info(
            "Loaded tenant snapshots",
            extra={"path": str(root / TENANTS_DIR), "count": len(self._tenants)},
        )

    async def fetch_tenant_entitlements(self, tenant_key: str) -> dict[str, Any] | None:
        return _find(self._tenants, tenant_key, TENANT_ID_KEYS, TENANT_NAME_KEYS)

    async def list_tenants(self) -> list[dict[str, Any]]:
        return [
            {
                "tenantId": _first(tenant, TENANT_ID_KEYS),
                "tenantName": _first(tenant, TENANT_NAME_KEYS),
            }
            for tenant in self._tenants
        ]


class SnapshotTenantCache:
    """Tenant cache backed by ``cache/``."""

    def __init__(self, root: Path) -> None:
        self._tenants = load_snapshot_dir(root / CACHE_DIR)

    async def find_tenant(self, tenant_key: str) -> dict[str, Any] | None:
        return _find(self._tenants, tenant_key, TENANT_ID_KEYS, TENANT_NAME_KEYS)


class SnapshotRecordSource:
    """Provisioning records backed by ``records/``."""

    def __init__(self, root: Path) -> None:
        self._records = load_snapshot_dir(root / RECORDS_DIR)
        logger.info(
            "Loaded provisioning record snapshots",
            extra={"path": str(root / RECORDS_DIR), "count": len(self._records)},
        )

    async def find_record(self, record_key: str) -> dict[str, Any] | None:
        return _find(self._records, record_key, RECORD_ID_KEYS, RECORD_NAME_KEYS)
