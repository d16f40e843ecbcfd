"""Workbook and collaborator mocks for testing without Microsoft Graph.

Usage:
    from sheet_mock import InMemoryDocument, FakeLicenseService, FakeRecordSource

    document = InMemoryDocument()
    document.set_cell("Lookup", "B8", "Pull Data")
    document.set_cell("Lookup", "B2", "Acme")

    channel = DocumentChannel(document)
    machine = RequestStateMachine(channel, LookupService(FakeLicenseService(...), ...))
    await machine.check_for_work()

    assert document.get_cell("Lookup", "B8") == "Completed"
"""

from .credential import MockAccessToken, MockManagedIdentityCredential
from .document import InMemoryDocument, parse_cell, parse_range
from .fixtures import (
    ACME_TENANT_ID,
    make_record,
    make_tenant,
)
from .services import FakeLicenseService, FakeRecordSource, FakeTenantCache

__all__ = [
    "ACME_TENANT_ID",
    "FakeLicenseService",
    "FakeRecordSource",
    "FakeTenantCache",
    "InMemoryDocument",
    "MockAccessToken",
    "MockManagedIdentityCredential",
    "make_record",
    "make_tenant",
    "parse_cell",
    "parse_range",
]
