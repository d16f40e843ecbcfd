"""Main entry point for the entitlement reconciliation poller.

Wires configuration, the Graph workbook, the lookup collaborators and the
polling scheduler together, then polls until SIGTERM or SIGINT.

The license service and provisioning records are read from a snapshot
directory (``SNAPSHOTS_DIR``); the workbook is reached through Microsoft
Graph with a managed identity.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import ConfigurationError, PollerConfig
from .document import DocumentChannel, DocumentError
from .lookup import LookupService
from .request_machine import RequestStateMachine
from .scheduler import PollingScheduler, SchedulerError
from .security import SecretlessViolationError, get_managed_identity_credential
from .snapshots import SnapshotLicenseService, SnapshotRecordSource, SnapshotTenantCache
from .workbook import GraphWorkbookDocument

# LogRecord attributes that are not user-supplied extra fields
RESERVED_LOG_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in RESERVED_LOG_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_output: bool = True, level: int = logging.INFO) -> None:
    """Configure process logging: JSON on stdout for production, plain text otherwise."""
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the SDKs
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_lookup_service(config: PollerConfig) -> LookupService:
    """Build the lookup service over the configured snapshot directory.

    Raises:
        ConfigurationError: If no snapshot directory is configured.
    """
    if config.snapshots_dir is None:
        raise ConfigurationError("SNAPSHOTS_DIR is required to look up tenants and records")
    return LookupService(
        license_client=SnapshotLicenseService(config.snapshots_dir),
        record_source=SnapshotRecordSource(config.snapshots_dir),
        tenant_cache=SnapshotTenantCache(config.snapshots_dir),
    )


async def open_workbook(config: PollerConfig) -> GraphWorkbookDocument:
    """Open the configured workbook, resolving a share link if needed.

    Raises:
        ConfigurationError: If no workbook location is configured.
        SecretlessViolationError: If credential secrets are in the environment.
        DocumentError: If a share link cannot be resolved.
    """
    if not config.has_workbook:
        raise ConfigurationError(
            "Set WORKBOOK_DRIVE_ID and WORKBOOK_ITEM_ID, or WORKBOOK_SHARE_URL"
        )

    credential = get_managed_identity_credential(config.managed_identity_client_id)
    if config.drive_id and config.item_id:
        return GraphWorkbookDocument(
            config.drive_id, config.item_id, credential, base_url=config.graph_base_url
        )
    return await GraphWorkbookDocument.from_share_url(
        config.share_url or "", credential, base_url=config.graph_base_url
    )


async def build_scheduler(config: PollerConfig) -> tuple[PollingScheduler, GraphWorkbookDocument]:
    """Build a configured (not yet started) scheduler and the workbook it polls."""
    lookup_service = build_lookup_service(config)
    document = await open_workbook(config)
    channel = DocumentChannel(document, layout=config.layout, flags=config.flags)

    scheduler = PollingScheduler(config.poll_interval_seconds)
    scheduler.configure(RequestStateMachine(channel, lookup_service))
    return scheduler, document


async def main(config: PollerConfig | None = None) -> int:
    """Run the poller until a shutdown signal.

    Returns:
        Exit code (0 for success, 1 for configuration or startup errors,
        2 for a security violation).
    """
    try:
        config = config or PollerConfig.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(json_output=config.enable_json_logging)
    logger = logging.getLogger(__name__)

    try:
        scheduler, document = await build_scheduler(config)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2
    except DocumentError as e:
        logger.error("Could not open workbook", extra={"error": str(e)})
        return 1

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        scheduler.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        scheduler.start()
        await scheduler.wait()
    except SchedulerError as e:
        logger.error("Scheduler error", extra={"error": str(e)})
        return 1
    finally:
        await document.close()

    logger.info("Poller stopped", extra=scheduler.stats.to_dict())
    return 0


def run() -> None:
    """Entry point for the poller process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
