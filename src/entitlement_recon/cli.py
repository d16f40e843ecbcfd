"""Entitlement reconciliation CLI (erecon).

Usage:
    erecon poll                      # Poll the shared workbook until stopped
    erecon once                      # Check the workbook for a request once
    erecon compare ACME --record R1  # Compare offline against snapshots
    erecon layout                    # Show the effective cell layout
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import asdict, fields, replace
from pathlib import Path

import click

from .config import (
    MAX_POLL_INTERVAL_SECONDS,
    MIN_POLL_INTERVAL_SECONDS,
    CellLayout,
    ConfigurationError,
    PollerConfig,
    load_layout,
)
from .document import DocumentError
from .formatter import (
    BUCKET_COLORS,
    COMPARISON_HEADERS,
    RAW_LISTING_HEADERS,
    FormattedResult,
    format_result,
    format_summary,
)
from .lookup import LookupService
from .main import build_scheduler, main, setup_logging
from .security import SecretlessViolationError
from .snapshots import SnapshotLicenseService, SnapshotRecordSource, SnapshotTenantCache

# Terminal colors for comparison rows, by bucket color tag
TERMINAL_COLORS: dict[str, str] = {
    "GREEN": "green",
    "RED": "red",
    "YELLOW": "yellow",
    "BLUE": "blue",
}


def load_config() -> PollerConfig:
    """Load configuration from the environment as a click error on failure."""
    try:
        return PollerConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def echo_table(headers: tuple[str, ...], rows: list[list[str | int | float]]) -> None:
    """Print rows as tab-separated values under a header line."""
    click.echo("\t".join(headers))
    for row in rows:
        click.echo("\t".join(str(cell) for cell in row))


def echo_result(formatted: FormattedResult) -> None:
    """Print a formatted lookup result the way the workbook would show it."""
    if formatted.raw_listing:
        click.secho(f"License service entitlements ({len(formatted.raw_listing)})", bold=True)
        echo_table(RAW_LISTING_HEADERS, [row.to_cells() for row in formatted.raw_listing])

    if formatted.compare_requested and formatted.success:
        click.echo("")
        click.secho(f"Comparison ({len(formatted.comparison_listing)})", bold=True)
        click.echo("\t".join(COMPARISON_HEADERS))
        for row in formatted.comparison_listing:
            click.secho(
                "\t".join(str(cell) for cell in row.to_cells()),
                fg=TERMINAL_COLORS.get(BUCKET_COLORS[row.bucket]),
            )

    if formatted.summary is not None:
        click.echo("")
        for label, value in format_summary(formatted.summary):
            click.echo(f"{label} {value}")

    if formatted.warning:
        click.secho(f"Warning: {formatted.warning}", fg="yellow", err=True)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="erecon")
def cli() -> None:
    """Entitlement reconciliation CLI (erecon).

    Compares what the license service has provisioned for a tenant with what
    its provisioning record asks for, driven from a shared workbook.

    \b
    Quick Start:
        erecon layout                       # Where the poller reads and writes
        erecon compare ACME --record R-1    # Offline comparison
        erecon poll                         # Serve workbook requests
    """
    pass


# =============================================================================
# Poller Commands
# =============================================================================


@cli.command()
@click.option(
    "--interval",
    "-i",
    type=click.IntRange(MIN_POLL_INTERVAL_SECONDS, MAX_POLL_INTERVAL_SECONDS),
    default=None,
    help="Poll interval in seconds (overrides POLL_INTERVAL)",
)
def poll(interval: int | None) -> None:
    """Poll the shared workbook until interrupted."""
    config = load_config()
    if interval is not None:
        config = replace(config, poll_interval_seconds=interval)
    sys.exit(asyncio.run(main(config)))


@cli.command()
def once() -> None:
    """Check the shared workbook for a request once and exit."""
    config = load_config()
    setup_logging(json_output=config.enable_json_logging)

    async def _once() -> int:
        scheduler, document = await build_scheduler(config)
        try:
            outcome = await scheduler.poll_once()
        finally:
            await document.close()

        if outcome is None:
            click.secho(f"Poll failed: {scheduler.stats.last_error}", fg="red", err=True)
            return 1
        if not outcome.triggered:
            click.echo(f"No request waiting (state: {outcome.state.value})")
            return 0
        if outcome.error:
            click.secho(f"Request finished with error: {outcome.error}", fg="red")
            return 0
        click.secho("Request completed", fg="green")
        return 0

    try:
        code = asyncio.run(_once())
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    except SecretlessViolationError as e:
        raise click.ClickException(str(e)) from e
    except DocumentError as e:
        raise click.ClickException(f"Could not open workbook: {e}") from e
    sys.exit(code)


# =============================================================================
# Offline Commands
# =============================================================================


@cli.command()
@click.argument("tenant")
@click.option("--record", "-r", "record_key", default=None, help="Provisioning record id or name")
@click.option(
    "--snapshots",
    "-s",
    "snapshots_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    envvar="SNAPSHOTS_DIR",
    required=True,
    help="Snapshot directory (tenants/, cache/, records/)",
)
@click.option("--force-fresh", is_flag=True, help="Skip the tenant cache")
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON")
def compare(
    tenant: str,
    record_key: str | None,
    snapshots_dir: Path,
    force_fresh: bool,
    as_json: bool,
) -> None:
    """Look up TENANT and optionally compare it with a provisioning record.

    \b
    Examples:
        erecon compare ACME -s ./snapshots
        erecon compare ACME --record PR-001 -s ./snapshots
    """
    service = LookupService(
        license_client=SnapshotLicenseService(snapshots_dir),
        record_source=SnapshotRecordSource(snapshots_dir),
        tenant_cache=SnapshotTenantCache(snapshots_dir),
    )

    if record_key:
        result = asyncio.run(
            service.compare_with_record(tenant, record_key, force_fresh=force_fresh)
        )
    else:
        result = asyncio.run(service.lookup_tenant(tenant, force_fresh=force_fresh))

    formatted = format_result(result)
    if as_json:
        click.echo(
            json.dumps(
                {
                    "success": formatted.success,
                    "error": formatted.error,
                    "error_kind": formatted.error_kind.value if formatted.error_kind else None,
                    "warning": formatted.warning,
                    "summary": formatted.summary.to_dict() if formatted.summary else None,
                },
                indent=2,
            )
        )
    else:
        echo_result(formatted)

    if not formatted.success:
        raise click.ClickException(formatted.error or "Lookup failed")


@cli.command()
@click.option(
    "--layout-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    envvar="LAYOUT_FILE",
    default=None,
    help="YAML file overriding cell addresses",
)
def layout(layout_file: Path | None) -> None:
    """Show the effective workbook cell layout."""
    try:
        effective = load_layout(layout_file) if layout_file else CellLayout()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    values = asdict(effective)
    width = max(len(f.name) for f in fields(CellLayout))
    for f in fields(CellLayout):
        click.echo(f"{f.name.ljust(width)}  {values[f.name]}")


# =============================================================================
# Entry Point
# =============================================================================


def run() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    run()
