"""Shared-document channel.

The workbook is operated on by people as well as by the poller, so it is
treated as an unreliable sink: write failures are logged and never raised.
Only reading the flag cell propagates errors, because a poll that cannot see
the flag has nothing else to do.

``Document`` is the primitive cell I/O port (implemented by the Graph
adapter in ``workbook``); ``DocumentChannel`` maps request roles onto cells
using a ``CellLayout``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from .config import CellLayout, FlagValues
from .formatter import (
    COMPARISON_HEADERS,
    RAW_LISTING_HEADERS,
    ComparisonRow,
    FormattedResult,
    RawListingRow,
    format_summary,
)

logger = logging.getLogger(__name__)

CellValue = str | int | float | bool | None

STATUS_SUCCESS = "Success"
STATUS_ERROR = "Error"
STATUS_PROCESSING = "Processing..."

FORCE_FRESH_YES = "YES"

RANGE_PATTERN = re.compile(r"^([A-Z]{1,3})([1-9][0-9]*):([A-Z]{1,3})([1-9][0-9]*)$")


class DocumentError(Exception):
    """Raised by document adapters when a read or write fails."""

    pass


@runtime_checkable
class Document(Protocol):
    """Cell-level access to a shared workbook."""

    async def read_cell(self, sheet: str, address: str) -> CellValue:
        ...

    async def write_cell(self, sheet: str, address: str, value: CellValue) -> None:
        ...

    async def write_range(self, sheet: str, address: str, rows: Sequence[Sequence[Any]]) -> None:
        ...

    async def clear_range(self, sheet: str, address: str) -> None:
        ...


def column_letter(number: int) -> str:
    """Convert a 1-based column number to its letter (1 -> A, 27 -> AA)."""
    if number < 1:
        raise ValueError(f"Column number must be at least 1: {number}")
    letters = ""
    while number > 0:
        number, remainder = divmod(number - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def range_address(start_row: int, num_rows: int, num_cols: int, start_col: int = 1) -> str:
    """A1-style address of a block of ``num_rows`` x ``num_cols`` cells."""
    end_row = start_row + max(num_rows, 1) - 1
    first = column_letter(start_col)
    last = column_letter(start_col + num_cols - 1)
    return f"{first}{start_row}:{last}{end_row}"


def extend_range(address: str, last_row: int) -> str:
    """Push the end row of ``address`` down to ``last_row`` if it is further."""
    match = RANGE_PATTERN.match(address)
    if match is None:
        raise ValueError(f"Not an A1 range: {address}")
    first_col, first_row, last_col, end_row = match.groups()
    if last_row <= int(end_row):
        return address
    return f"{first_col}{first_row}:{last_col}{last_row}"


def _text(value: CellValue) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class LookupRequest:
    """Inputs of one request, as read from the workbook."""

    tenant_key: str
    record_key: str | None = None
    force_fresh: bool = False
    requested_by: str | None = None

    @property
    def compare_requested(self) -> bool:
        return bool(self.record_key)


class DocumentChannel:
    """Reads request inputs from, and writes results to, the shared workbook."""

    def __init__(
        self,
        document: Document,
        layout: CellLayout | None = None,
        flags: FlagValues | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._document = document
        self._layout = layout or CellLayout()
        self._flags = flags or FlagValues()
        self._clock = clock or (lambda: datetime.now(UTC))
        # Last row written per listing, so a long listing is fully cleared next time
        self._last_rows: dict[str, int] = {}

    @property
    def layout(self) -> CellLayout:
        return self._layout

    @property
    def flags(self) -> FlagValues:
        return self._flags

    def _timestamp(self) -> str:
        return self._clock().isoformat().replace("+00:00", "Z")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def read_flag(self) -> str:
        """Read the flag cell.

        Raises:
            DocumentError: If the document cannot be read.
        """
        value = await self._document.read_cell(self._layout.lookup_sheet, self._layout.flag)
        return _text(value)

    async def _read_input(self, address: str) -> str:
        try:
            value = await self._document.read_cell(self._layout.lookup_sheet, address)
        except DocumentError as e:
            logger.error("Could not read input cell", extra={"cell": address, "error": str(e)})
            return ""
        return _text(value)

    async def read_request(self) -> LookupRequest:
        """Read the request inputs. Unreadable cells count as blank."""
        tenant_key = await self._read_input(self._layout.tenant_input)
        record_key = await self._read_input(self._layout.record_input)
        force_fresh = await self._read_input(self._layout.force_fresh)
        requested_by = await self._read_input(self._layout.requested_by)

        return LookupRequest(
            tenant_key=tenant_key,
            record_key=record_key or None,
            force_fresh=force_fresh.upper() == FORCE_FRESH_YES,
            requested_by=requested_by or None,
        )

    # -------------------------------------------------------------------------
    # Writes (never raise)
    # -------------------------------------------------------------------------

    async def _write_cell(self, address: str, value: CellValue) -> bool:
        try:
            await self._document.write_cell(self._layout.lookup_sheet, address, value)
        except DocumentError as e:
            logger.error("Error writing cell", extra={"cell": address, "error": str(e)})
            return False
        return True

    async def _clear(self, sheet: str, address: str) -> None:
        try:
            await self._document.clear_range(sheet, address)
        except DocumentError as e:
            # Nothing to clear is not a problem
            logger.debug(
                "Could not clear range",
                extra={"sheet": sheet, "range": address, "error": str(e)},
            )

    async def _clear_listing(self, listing: str, sheet: str, clear_range: str) -> None:
        address = extend_range(clear_range, self._last_rows.get(listing, 0))
        await self._clear(sheet, address)

    async def mark_processing(self) -> None:
        """Show the request as picked up before doing any work."""
        await self._write_cell(self._layout.flag, self._flags.processing)
        await self._write_cell(self._layout.status, STATUS_PROCESSING)
        await self._write_cell(self._layout.timestamp, self._timestamp())

    async def write_raw_listing(self, rows: list[RawListingRow]) -> bool:
        """Clear and rewrite the raw listing below the input block."""
        sheet = self._layout.lookup_sheet
        await self._clear_listing("raw", sheet, self._layout.raw_listing_clear_range)
        if not rows:
            return True

        data = [list(RAW_LISTING_HEADERS), *(row.to_cells() for row in rows)]
        start_row = self._layout.raw_listing_start_row
        address = range_address(start_row, len(data), len(data[0]))
        self._last_rows["raw"] = start_row + len(data) - 1
        try:
            await self._document.write_range(sheet, address, data)
        except DocumentError as e:
            logger.error(
                "Error writing raw listing",
                extra={"range": address, "rows": len(rows), "error": str(e)},
            )
            return False

        logger.info("Wrote raw listing", extra={"range": address, "rows": len(rows)})
        return True

    async def write_comparison_listing(self, rows: list[ComparisonRow] | None) -> bool:
        """Clear the comparison sheet and, if a comparison ran, rewrite it.

        ``None`` means no comparison was requested: the sheet is left empty.
        An empty list still writes the header row.
        """
        sheet = self._layout.comparison_sheet
        await self._clear_listing("comparison", sheet, self._layout.comparison_clear_range)
        if rows is None:
            return True

        data = [list(COMPARISON_HEADERS), *(row.to_cells() for row in rows)]
        address = range_address(1, len(data), len(COMPARISON_HEADERS))
        self._last_rows["comparison"] = len(data)
        try:
            await self._document.write_range(sheet, address, data)
        except DocumentError as e:
            logger.error(
                "Error writing comparison listing",
                extra={"sheet": sheet, "rows": len(rows), "error": str(e)},
            )
            return False

        logger.info("Wrote comparison listing", extra={"sheet": sheet, "rows": len(rows)})
        return True

    async def write_summary(self, formatted: FormattedResult) -> bool:
        """Write the summary block, or clear it when there is nothing to summarize."""
        sheet = self._layout.lookup_sheet
        if formatted.summary is None:
            await self._clear(sheet, self._layout.summary_range)
            return True

        try:
            await self._document.write_range(
                sheet, self._layout.summary_range, format_summary(formatted.summary)
            )
        except DocumentError as e:
            logger.error("Error writing summary", extra={"error": str(e)})
            return False
        return True

    async def write_outcome(self, formatted: FormattedResult) -> None:
        """Write everything for a finished request and set the flag to complete."""
        await self.write_raw_listing(formatted.raw_listing)
        comparison_rows = (
            formatted.comparison_listing
            if formatted.compare_requested and formatted.success
            else None
        )
        await self.write_comparison_listing(comparison_rows)
        await self.write_summary(formatted)

        if formatted.success:
            await self._write_cell(self._layout.status, STATUS_SUCCESS)
            await self._write_cell(self._layout.error, formatted.warning or "")
        else:
            await self._write_cell(self._layout.status, STATUS_ERROR)
            await self._write_cell(self._layout.error, formatted.error or "Unknown error")

        await self._write_cell(self._layout.flag, self._flags.complete)
        await self._write_cell(self._layout.timestamp, self._timestamp())

    async def write_failure(self, message: str) -> None:
        """Best-effort failure report; leaves listings untouched."""
        await self._write_cell(self._layout.flag, self._flags.error)
        await self._write_cell(self._layout.status, STATUS_ERROR)
        await self._write_cell(self._layout.error, message)
        await self._write_cell(self._layout.timestamp, self._timestamp())
