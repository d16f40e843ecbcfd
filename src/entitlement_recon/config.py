"""Configuration management with validation.

Poller settings are loaded from the environment and validated at construction
time. The workbook cell layout has sensible defaults and may be overridden
from a YAML file so operators can move cells around without a redeploy.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


class LayoutLoadError(ConfigurationError):
    """Raised when a cell layout file cannot be loaded."""

    pass


# Configuration constants with documented bounds
DEFAULT_POLL_INTERVAL_SECONDS = 5
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 60

DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_LOOKUP_SHEET = "Lookup"
DEFAULT_COMPARISON_SHEET = "Comparison"

MAX_LAYOUT_FILE_SIZE_BYTES = 64 * 1024

# A1-style single cell (B8) or range (A16:G500)
VALID_CELL_PATTERN = r"^[A-Z]{1,3}[1-9][0-9]*$"
VALID_RANGE_PATTERN = r"^[A-Z]{1,3}[1-9][0-9]*:[A-Z]{1,3}[1-9][0-9]*$"


@dataclass(frozen=True)
class FlagValues:
    """Values the flag cell cycles through."""

    trigger: str = "Pull Data"
    processing: str = "Processing..."
    complete: str = "Completed"
    error: str = "Error"

    def is_trigger(self, value: str) -> bool:
        """Check a flag cell value against the trigger sentinel (case-insensitive)."""
        return value.strip().lower() == self.trigger.lower()

    def is_terminal(self, value: str) -> bool:
        """Check whether the flag shows a finished request."""
        normalized = value.strip().lower()
        return normalized in (self.complete.lower(), self.error.lower())


@dataclass(frozen=True)
class CellLayout:
    """Cell addresses for each role of the lookup sheet.

    Inputs live in column B, outputs in column D, the summary block in F:G,
    and the raw listing header at ``raw_listing_start_row``.

    The clear ranges cover a listing of the usual size. A channel that wrote a
    longer listing clears down to its last written row the next time, but that
    is only remembered for the life of the process: rows past the end of a
    clear range that an earlier process wrote stay until someone removes them.
    """

    lookup_sheet: str = DEFAULT_LOOKUP_SHEET
    comparison_sheet: str = DEFAULT_COMPARISON_SHEET

    flag: str = "B8"
    tenant_input: str = "B2"
    record_input: str = "B3"
    force_fresh: str = "B4"
    requested_by: str = "B5"

    status: str = "D2"
    error: str = "D3"
    timestamp: str = "D4"

    summary_range: str = "F2:G6"
    raw_listing_start_row: int = 16
    raw_listing_clear_range: str = "A16:G500"
    comparison_clear_range: str = "A1:J2000"

    def __post_init__(self) -> None:
        errors: list[str] = []

        for name in (
            "flag",
            "tenant_input",
            "record_input",
            "force_fresh",
            "requested_by",
            "status",
            "error",
            "timestamp",
        ):
            value = getattr(self, name)
            if not re.match(VALID_CELL_PATTERN, value):
                errors.append(f"{name} must be a single A1-style cell: {value!r}")

        for name in ("summary_range", "raw_listing_clear_range", "comparison_clear_range"):
            value = getattr(self, name)
            if not re.match(VALID_RANGE_PATTERN, value):
                errors.append(f"{name} must be an A1-style range: {value!r}")

        if self.raw_listing_start_row < 1:
            errors.append("raw_listing_start_row must be at least 1")

        if not self.lookup_sheet:
            errors.append("lookup_sheet is required")
        if not self.comparison_sheet:
            errors.append("comparison_sheet is required")

        if errors:
            raise ConfigurationError(
                "Cell layout validation failed:\n  - " + "\n  - ".join(errors)
            )


def load_layout(path: Path) -> CellLayout:
    """Load a cell layout override from a YAML file.

    Keys are the ``CellLayout`` field names; unknown keys are rejected so a
    typo doesn't silently fall back to a default address.

    Raises:
        LayoutLoadError: If the file is missing, too large, or invalid.
    """
    if not path.exists():
        raise LayoutLoadError(f"Layout file not found: {path}")

    size = path.stat().st_size
    if size > MAX_LAYOUT_FILE_SIZE_BYTES:
        raise LayoutLoadError(
            f"Layout file exceeds maximum size of {MAX_LAYOUT_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        data: Any = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise LayoutLoadError(f"Invalid YAML in layout file {path}: {e}") from e

    if data is None:
        return CellLayout()
    if not isinstance(data, dict):
        raise LayoutLoadError(f"Layout file must contain a mapping: {path}")

    known = {f.name for f in fields(CellLayout)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise LayoutLoadError(f"Unknown layout keys in {path}: {unknown}")

    try:
        layout = replace(CellLayout(), **data)
    except (ConfigurationError, TypeError) as e:
        raise LayoutLoadError(f"Invalid layout in {path}: {e}") from e

    logger.info("Loaded cell layout", extra={"path": str(path), "overrides": sorted(data)})
    return layout


@dataclass(frozen=True)
class PollerConfig:
    """Poller configuration loaded from environment variables.

    The workbook location (drive and item id, or a share URL to resolve) is
    optional here: the scheduler refuses to start until a document has been
    configured, so the CLI can also supply it later.
    """

    # Workbook location
    drive_id: str | None = None
    item_id: str | None = None
    share_url: str | None = None

    # Timing
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS

    # Microsoft Graph
    graph_base_url: str = DEFAULT_GRAPH_BASE_URL
    managed_identity_client_id: str | None = None

    # Offline collaborators
    snapshots_dir: Path | None = None

    layout: CellLayout = field(default_factory=CellLayout)
    flags: FlagValues = field(default_factory=FlagValues)

    enable_json_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if bool(self.drive_id) != bool(self.item_id):
            errors.append("WORKBOOK_DRIVE_ID and WORKBOOK_ITEM_ID must be set together")

        if self.share_url and not self.share_url.startswith("https://"):
            errors.append(f"WORKBOOK_SHARE_URL must be an https URL: {self.share_url}")

        if not self.graph_base_url.startswith("https://"):
            errors.append(f"GRAPH_BASE_URL must be an https URL: {self.graph_base_url}")

        if self.snapshots_dir is not None and not self.snapshots_dir.is_dir():
            errors.append(f"Snapshots directory does not exist: {self.snapshots_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def has_workbook(self) -> bool:
        """Whether a workbook location (direct or via share link) is configured."""
        return bool(self.drive_id and self.item_id) or bool(self.share_url)

    @classmethod
    def from_env(cls) -> PollerConfig:
        """Load configuration from environment variables.

        Environment Variables:
            WORKBOOK_DRIVE_ID: Graph drive id of the shared workbook
            WORKBOOK_ITEM_ID: Graph item id of the shared workbook
            WORKBOOK_SHARE_URL: Share link, resolved to drive/item at startup
            POLL_INTERVAL: Seconds between polls (default: 5, range 1-60)
            GRAPH_BASE_URL: Graph endpoint (default: v1.0 public cloud)
            AZURE_CLIENT_ID: User-assigned managed identity client id
            SNAPSHOTS_DIR: Directory of exported tenant/record snapshots
            LAYOUT_FILE: YAML file overriding cell addresses
            JSON_LOGGING: If "false", use plain text logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        snapshots = os.environ.get("SNAPSHOTS_DIR")
        layout_file = os.environ.get("LAYOUT_FILE")

        return cls(
            drive_id=os.environ.get("WORKBOOK_DRIVE_ID") or None,
            item_id=os.environ.get("WORKBOOK_ITEM_ID") or None,
            share_url=os.environ.get("WORKBOOK_SHARE_URL") or None,
            poll_interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            graph_base_url=os.environ.get("GRAPH_BASE_URL", DEFAULT_GRAPH_BASE_URL),
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            snapshots_dir=Path(snapshots) if snapshots else None,
            layout=load_layout(Path(layout_file)) if layout_file else CellLayout(),
            enable_json_logging=get_bool("JSON_LOGGING", True),
        )
