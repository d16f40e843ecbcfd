"""Microsoft Graph workbook adapter.

Implements the ``Document`` port on top of the Excel REST API of a workbook
stored in OneDrive or SharePoint:

    GET   .../workbook/worksheets('{sheet}')/range(address='{a1}')
    PATCH .../workbook/worksheets('{sheet}')/range(address='{a1}')   {"values": [[...]]}
    POST  .../workbook/worksheets('{sheet}')/range(address='{a1}')/clear

Worksheets that don't exist yet are created on first write. Every transport,
HTTP and authentication failure surfaces as ``DocumentError``.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from collections.abc import Sequence
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from azure.core.credentials import AccessToken
from azure.core.exceptions import AzureError

from .config import DEFAULT_GRAPH_BASE_URL
from .document import CellValue, DocumentError
from .security import GRAPH_SCOPE

logger = logging.getLogger(__name__)

# Timeout constants (seconds)
REQUEST_TIMEOUT_SECONDS = 30.0

# Refresh tokens this long before they expire
TOKEN_REFRESH_MARGIN_SECONDS = 300

SHEET_NOT_FOUND_CODES = frozenset({"ItemNotFound", "WorksheetNotFound"})


class TokenCredential(Protocol):
    """The subset of ``azure.core.credentials.TokenCredential`` in use."""

    def get_token(self, *scopes: str) -> AccessToken:
        ...


class SheetNotFoundError(DocumentError):
    """Raised when a worksheet named in a request does not exist."""

    pass


class GraphAuthError(DocumentError):
    """Raised when Graph rejects the poller's identity."""

    pass


def encode_share_url(share_url: str) -> str:
    """Encode a sharing link as a Graph share id (``u!`` + unpadded base64url)."""
    encoded = base64.urlsafe_b64encode(share_url.encode()).decode()
    return "u!" + encoded.rstrip("=")


def _error_code(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("code") or "")
    return ""


class GraphWorkbookDocument:
    """A workbook addressed by drive id and item id."""

    def __init__(
        self,
        drive_id: str,
        item_id: str,
        credential: TokenCredential,
        base_url: str = DEFAULT_GRAPH_BASE_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._drive_id = drive_id
        self._item_id = item_id
        self._credential = credential
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS)
        self._owns_client = client is None
        self._token: AccessToken | None = None
        self._known_sheets: set[str] = set()

    @property
    def drive_id(self) -> str:
        return self._drive_id

    @property
    def item_id(self) -> str:
        return self._item_id

    @classmethod
    async def from_share_url(
        cls,
        share_url: str,
        credential: TokenCredential,
        base_url: str = DEFAULT_GRAPH_BASE_URL,
        client: httpx.AsyncClient | None = None,
    ) -> GraphWorkbookDocument:
        """Resolve a sharing link to its drive item and open it."""
        document = cls("", "", credential, base_url=base_url, client=client)
        url = f"{document._base_url}/shares/{encode_share_url(share_url)}/driveItem"
        response = await document._request("GET", url)
        item = response.json()
        try:
            document._drive_id = item["parentReference"]["driveId"]
            document._item_id = item["id"]
        except (KeyError, TypeError) as e:
            raise DocumentError(f"Share link did not resolve to a drive item: {share_url}") from e

        logger.info(
            "Resolved workbook share link",
            extra={"drive_id": document._drive_id, "item_id": document._item_id},
        )
        return document

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------------------------------------------------------
    # Document port
    # -------------------------------------------------------------------------

    async def read_cell(self, sheet: str, address: str) -> CellValue:
        response = await self._request("GET", self._range_url(sheet, address))
        values = response.json().get("values") or [[None]]
        try:
            value = values[0][0]
        except (IndexError, TypeError):
            return None
        # Graph reports empty cells as ""
        return None if value == "" else value

    async def write_cell(self, sheet: str, address: str, value: CellValue) -> None:
        await self.write_range(sheet, address, [[value]])

    async def write_range(self, sheet: str, address: str, rows: Sequence[Sequence[Any]]) -> None:
        await self._ensure_sheet(sheet)
        values = [["" if v is None else v for v in row] for row in rows]
        await self._request("PATCH", self._range_url(sheet, address), json={"values": values})

    async def clear_range(self, sheet: str, address: str) -> None:
        await self._ensure_sheet(sheet)
        await self._request(
            "POST", self._range_url(sheet, address) + "/clear", json={"applyTo": "Contents"}
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _workbook_url(self) -> str:
        return f"{self._base_url}/drives/{self._drive_id}/items/{self._item_id}/workbook"

    def _range_url(self, sheet: str, address: str) -> str:
        return (
            f"{self._workbook_url()}/worksheets('{quote(sheet, safe='')}')"
            f"/range(address='{address}')"
        )

    async def _ensure_sheet(self, sheet: str) -> None:
        if sheet in self._known_sheets:
            return
        url = f"{self._workbook_url()}/worksheets('{quote(sheet, safe='')}')"
        try:
            await self._request("GET", url)
        except SheetNotFoundError:
            logger.info("Creating missing worksheet", extra={"sheet": sheet})
            await self._request(
                "POST", f"{self._workbook_url()}/worksheets/add", json={"name": sheet}
            )
        self._known_sheets.add(sheet)

    async def _authorization(self) -> str:
        token = self._token
        if token is None or token.expires_on - TOKEN_REFRESH_MARGIN_SECONDS <= time.time():
            try:
                token = await asyncio.to_thread(self._credential.get_token, GRAPH_SCOPE)
            except AzureError as e:
                raise GraphAuthError(f"Could not acquire Graph token: {e}") from e
            self._token = token
        return f"Bearer {token.token}"

    async def _request(
        self, method: str, url: str, json: dict[str, Any] | None = None
    ) -> httpx.Response:
        headers = {"Authorization": await self._authorization()}
        try:
            response = await self._client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as e:
            raise DocumentError(f"Graph request failed: {e}") from e

        if response.is_success:
            return response

        code = _error_code(response)
        message = f"Graph returned {response.status_code} {code or response.reason_phrase}"
        if response.status_code in (401, 403):
            raise GraphAuthError(message)
        if response.status_code == 404 and code in SHEET_NOT_FOUND_CODES:
            raise SheetNotFoundError(message)
        raise DocumentError(message)
