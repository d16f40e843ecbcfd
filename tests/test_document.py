"""Tests for the workbook channel."""

from datetime import UTC, datetime

import pytest

from entitlement_recon.comparison import Bucket, ReconciliationSummary
from entitlement_recon.config import CellLayout, FlagValues
from entitlement_recon.document import (
    Document,
    DocumentChannel,
    DocumentError,
    column_letter,
    extend_range,
    range_address,
)
from entitlement_recon.formatter import ComparisonRow, FormattedResult, RawListingRow
from entitlement_recon.lookup import LookupErrorKind
from sheet_mock import InMemoryDocument

SHEET = "Lookup"
FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def make_channel(document: InMemoryDocument) -> DocumentChannel:
    return DocumentChannel(document, clock=lambda: FIXED_NOW)


def raw_row(code: str) -> RawListingRow:
    return RawListingRow(
        product_code=code,
        category="App",
        package_name="Gold",
        start_date="2025-01-01",
        end_date="",
        quantity=5,
        product_modifier="",
    )


class TestAddresses:
    """Tests for A1 address helpers."""

    @pytest.mark.parametrize(
        ("number", "letter"), [(1, "A"), (7, "G"), (26, "Z"), (27, "AA"), (52, "AZ"), (703, "AAA")]
    )
    def test_column_letter(self, number: int, letter: str) -> None:
        """Test column numbers convert to letters."""
        assert column_letter(number) == letter

    def test_column_letter_rejects_zero(self) -> None:
        """Test columns are 1-based."""
        with pytest.raises(ValueError):
            column_letter(0)

    def test_range_address(self) -> None:
        """Test block addresses."""
        assert range_address(16, 3, 7) == "A16:G18"
        assert range_address(1, 1, 10) == "A1:J1"

    def test_extend_range(self) -> None:
        """Test a clear range grows to cover rows written past its end."""
        assert extend_range("A16:G500", 616) == "A16:G616"
        assert extend_range("A16:G500", 20) == "A16:G500"
        assert extend_range("A16:G500", 0) == "A16:G500"

    def test_extend_range_rejects_non_range(self) -> None:
        """Test a single cell is not a range."""
        with pytest.raises(ValueError, match="A1 range"):
            extend_range("B8", 10)


class TestReads:
    """Tests for reading the flag and request inputs."""

    def test_in_memory_document_is_a_document(self) -> None:
        """Test the mock satisfies the protocol."""
        assert isinstance(InMemoryDocument(), Document)

    @pytest.mark.asyncio
    async def test_read_request(self) -> None:
        """Test inputs are trimmed and force-fresh is parsed."""
        document = InMemoryDocument()
        document.set_cell(SHEET, "B2", "  Acme Corp ")
        document.set_cell(SHEET, "B3", "PR-001")
        document.set_cell(SHEET, "B4", "yes")
        document.set_cell(SHEET, "B5", "ops@example.com")

        request = await make_channel(document).read_request()

        assert request.tenant_key == "Acme Corp"
        assert request.record_key == "PR-001"
        assert request.force_fresh is True
        assert request.requested_by == "ops@example.com"
        assert request.compare_requested is True

    @pytest.mark.asyncio
    async def test_read_request_blank_inputs(self) -> None:
        """Test blank optional inputs become None."""
        document = InMemoryDocument()
        document.set_cell(SHEET, "B2", 12345)
        document.set_cell(SHEET, "B4", "no")

        request = await make_channel(document).read_request()

        assert request.tenant_key == "12345"
        assert request.record_key is None
        assert request.force_fresh is False
        assert request.compare_requested is False

    @pytest.mark.asyncio
    async def test_unreadable_input_is_blank(self) -> None:
        """Test an input read failure counts as a blank input."""
        document = InMemoryDocument()
        document.set_cell(SHEET, "B2", "Acme")
        document.fail_read(SHEET, "B3")

        request = await make_channel(document).read_request()

        assert request.tenant_key == "Acme"
        assert request.record_key is None

    @pytest.mark.asyncio
    async def test_flag_read_failure_propagates(self) -> None:
        """Test the flag read is the one read allowed to fail loudly."""
        document = InMemoryDocument()
        document.fail_read(SHEET, "B8")

        with pytest.raises(DocumentError):
            await make_channel(document).read_flag()

    @pytest.mark.asyncio
    async def test_custom_layout(self) -> None:
        """Test cell roles follow the layout."""
        document = InMemoryDocument()
        document.set_cell("Requests", "C10", "Pull Data")
        channel = DocumentChannel(
            document, layout=CellLayout(lookup_sheet="Requests", flag="C10"), flags=FlagValues()
        )

        assert await channel.read_flag() == "Pull Data"


class TestWrites:
    """Tests for result writes."""

    @pytest.mark.asyncio
    async def test_mark_processing(self) -> None:
        """Test the flag, status and timestamp are written first."""
        document = InMemoryDocument()

        await make_channel(document).mark_processing()

        assert document.get_cell(SHEET, "B8") == "Processing..."
        assert document.get_cell(SHEET, "D2") == "Processing..."
        assert document.get_cell(SHEET, "D4") == "2025-06-01T12:00:00Z"

    @pytest.mark.asyncio
    async def test_raw_listing_replaces_previous(self) -> None:
        """Test a shorter listing leaves no stale rows behind."""
        document = InMemoryDocument()
        channel = make_channel(document)

        await channel.write_raw_listing([raw_row("A"), raw_row("B"), raw_row("C")])
        await channel.write_raw_listing([raw_row("D")])

        assert document.get_row(SHEET, 16, 3) == ["Product Code", "Type", "Package Name"]
        assert document.get_cell(SHEET, "A17") == "D"
        assert document.get_cell(SHEET, "A18") is None
        assert document.count_rows(SHEET, 16) == 2

    @pytest.mark.asyncio
    async def test_raw_listing_longer_than_clear_range(self) -> None:
        """Test rows written past the configured clear range are cleared next time."""
        document = InMemoryDocument()
        channel = make_channel(document)

        await channel.write_raw_listing([raw_row(f"P{n}") for n in range(600)])
        assert document.get_cell(SHEET, "A616") == "P599"

        await channel.write_raw_listing([raw_row("D")])

        assert document.get_cell(SHEET, "A17") == "D"
        assert document.get_cell(SHEET, "A501") is None
        assert document.get_cell(SHEET, "A616") is None
        assert document.count_rows(SHEET, 16) == 2
        assert ("clear", SHEET, "A16:G616") in document.operations

    @pytest.mark.asyncio
    async def test_comparison_listing_longer_than_clear_range(self) -> None:
        """Test the comparison sheet is cleared down to the last row written."""
        layout = CellLayout(comparison_clear_range="A1:J3")
        document = InMemoryDocument()
        channel = DocumentChannel(document, layout=layout, clock=lambda: FIXED_NOW)
        rows = [
            ComparisonRow(
                product_code=f"M{n}",
                category="Model",
                bucket=Bucket.MATCHING,
                status="Match",
                meaning="",
                color="",
            )
            for n in range(4)
        ]

        await channel.write_comparison_listing(rows)
        assert document.get_cell("Comparison", "A5") == "M3"

        await channel.write_comparison_listing(None)

        assert document.get_cell("Comparison", "A5") is None
        assert ("clear", "Comparison", "A1:J5") in document.operations

    @pytest.mark.asyncio
    async def test_comparison_listing_none_clears_only(self) -> None:
        """Test no comparison leaves the comparison sheet empty."""
        document = InMemoryDocument()
        document.set_cell("Comparison", "A1", "stale")

        await make_channel(document).write_comparison_listing(None)

        assert document.get_cell("Comparison", "A1") is None
        assert document.writes_to("Comparison") == []

    @pytest.mark.asyncio
    async def test_comparison_listing_empty_writes_header(self) -> None:
        """Test a comparison with no rows still writes its header."""
        document = InMemoryDocument()

        await make_channel(document).write_comparison_listing([])

        assert document.get_cell("Comparison", "A1") == "Product Code"
        assert document.get_cell("Comparison", "J1") == "Notes"

    @pytest.mark.asyncio
    async def test_write_outcome_success(self) -> None:
        """Test a successful comparison outcome."""
        document = InMemoryDocument()
        document.set_cell(SHEET, "D3", "old error")
        formatted = FormattedResult(
            success=True,
            raw_listing=[raw_row("A")],
            comparison_listing=[],
            summary=ReconciliationSummary(matching=1),
            compare_requested=True,
        )

        await make_channel(document).write_outcome(formatted)

        assert document.get_cell(SHEET, "B8") == "Completed"
        assert document.get_cell(SHEET, "D2") == "Success"
        assert document.get_cell(SHEET, "D3") == ""
        assert document.get_cell(SHEET, "F6") == "Overall:"
        assert document.get_cell(SHEET, "G6") == "All Match"
        assert document.get_cell("Comparison", "A1") == "Product Code"

    @pytest.mark.asyncio
    async def test_write_outcome_error(self) -> None:
        """Test a failed lookup is Completed with an Error status."""
        document = InMemoryDocument()
        document.set_cell(SHEET, "F2", "old summary")
        formatted = FormattedResult(
            success=False,
            error="Provisioning record 'PR-9' not found",
            error_kind=LookupErrorKind.NOT_FOUND,
            compare_requested=True,
        )

        await make_channel(document).write_outcome(formatted)

        assert document.get_cell(SHEET, "B8") == "Completed"
        assert document.get_cell(SHEET, "D2") == "Error"
        assert document.get_cell(SHEET, "D3") == "Provisioning record 'PR-9' not found"
        assert document.get_cell(SHEET, "F2") is None
        assert document.writes_to("Comparison") == []

    @pytest.mark.asyncio
    async def test_write_outcome_order(self) -> None:
        """Test listings are written before the flag is released."""
        document = InMemoryDocument()

        await make_channel(document).write_outcome(
            FormattedResult(success=True, raw_listing=[raw_row("A")])
        )

        writes = document.writes_to(SHEET)
        assert writes.index("A16:G17") < writes.index("B8")
        assert writes[-1] == "D4"

    @pytest.mark.asyncio
    async def test_write_failure(self) -> None:
        """Test the failure report."""
        document = InMemoryDocument()

        await make_channel(document).write_failure("Tenant name/ID is required")

        assert document.get_cell(SHEET, "B8") == "Error"
        assert document.get_cell(SHEET, "D2") == "Error"
        assert document.get_cell(SHEET, "D3") == "Tenant name/ID is required"
        assert document.get_cell(SHEET, "D4") == "2025-06-01T12:00:00Z"

    @pytest.mark.asyncio
    async def test_write_errors_are_swallowed(self) -> None:
        """Test a locked workbook never raises out of the channel."""
        document = InMemoryDocument()
        document.fail_sheet(SHEET)
        document.fail_sheet("Comparison")
        channel = make_channel(document)

        await channel.mark_processing()
        await channel.write_outcome(
            FormattedResult(success=True, raw_listing=[raw_row("A")], compare_requested=True)
        )
        await channel.write_failure("boom")

        assert document.operations == []
