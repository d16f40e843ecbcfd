"""Request state machine driven by the shared workbook.

The flag cell is an inbound request queue of length one:

    Idle -> Triggered -> Processing -> Completed | Failed -> Idle

A request starts when the flag shows the trigger sentinel. The machine
writes "Processing..." before doing anything else so that a person watching
the workbook sees progress, and every path out of Processing ends in a
terminal write: the flag never stays on "Processing...". The machine returns
to Idle once someone clears the flag or puts a non-sentinel value in it.

A check that arrives while another is running is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

from .document import DocumentChannel, LookupRequest
from .formatter import format_result
from .lookup import LookupErrorKind, LookupResult, LookupService

logger = logging.getLogger(__name__)

TENANT_REQUIRED_MESSAGE = "Tenant name/ID is required"


class RequestState(str, Enum):
    """Where the current request is in its cycle."""

    IDLE = "idle"
    TRIGGERED = "triggered"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RequestOutcome:
    """What one check for work did."""

    state: RequestState
    request: LookupRequest | None = None
    result: LookupResult | None = None
    error: str | None = None
    error_kind: LookupErrorKind | None = None
    triggered: bool = False
    skipped: bool = False
    duration_seconds: float = 0.0

    @property
    def processed(self) -> bool:
        """Whether this check took a request through to a terminal state."""
        return self.triggered and self.state in (RequestState.COMPLETED, RequestState.FAILED)


class RequestStateMachine:
    """Processes workbook requests one at a time."""

    def __init__(self, channel: DocumentChannel, lookup_service: LookupService) -> None:
        self._channel = channel
        self._lookup = lookup_service
        self._state = RequestState.IDLE
        self._lock = asyncio.Lock()

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def channel(self) -> DocumentChannel:
        return self._channel

    async def check_for_work(self) -> RequestOutcome:
        """Read the flag cell and process a request if one is waiting.

        Raises:
            DocumentError: If the flag cell cannot be read.
        """
        if self._lock.locked():
            logger.debug("Request already in progress, skipping check")
            return RequestOutcome(state=self._state, skipped=True)

        async with self._lock:
            flag = await self._channel.read_flag()
            flags = self._channel.flags

            if not flags.is_trigger(flag):
                if not flags.is_terminal(flag) and self._state != RequestState.IDLE:
                    logger.info("Flag cleared, ready for next request", extra={"flag": flag})
                    self._state = RequestState.IDLE
                return RequestOutcome(state=self._state)

            logger.info("Request triggered", extra={"flag": flag})
            self._state = RequestState.TRIGGERED
            return await self._process()

    async def _process(self) -> RequestOutcome:
        started = time.monotonic()
        self._state = RequestState.PROCESSING
        request: LookupRequest | None = None

        try:
            await self._channel.mark_processing()
            request = await self._channel.read_request()
            logger.info(
                "Processing request",
                extra={
                    "tenant_key": request.tenant_key,
                    "record_key": request.record_key,
                    "force_fresh": request.force_fresh,
                    "requested_by": request.requested_by,
                },
            )

            if not request.tenant_key:
                return await self._fail(
                    TENANT_REQUIRED_MESSAGE, started, request, LookupErrorKind.VALIDATION
                )

            if request.record_key:
                result = await self._lookup.compare_with_record(
                    request.tenant_key, request.record_key, force_fresh=request.force_fresh
                )
            else:
                result = await self._lookup.lookup_tenant(
                    request.tenant_key, force_fresh=request.force_fresh
                )

            await self._channel.write_outcome(format_result(result))

        except Exception as e:
            logger.exception("Request processing failed", extra={"error": str(e)})
            return await self._fail(str(e) or type(e).__name__, started, request)

        self._state = RequestState.COMPLETED
        duration = time.monotonic() - started
        logger.info(
            "Request completed",
            extra={
                "tenant_key": request.tenant_key,
                "success": result.success,
                "error_kind": result.error_kind.value if result.error_kind else None,
                "duration_seconds": round(duration, 3),
            },
        )
        return RequestOutcome(
            state=self._state,
            request=request,
            result=result,
            error=result.error,
            error_kind=result.error_kind,
            triggered=True,
            duration_seconds=duration,
        )

    async def _fail(
        self,
        message: str,
        started: float,
        request: LookupRequest | None = None,
        kind: LookupErrorKind | None = None,
    ) -> RequestOutcome:
        self._state = RequestState.FAILED
        try:
            await self._channel.write_failure(message)
        except Exception as e:
            # Last resort: the request is over whether or not the workbook hears about it
            logger.exception("Could not report request failure", extra={"error": str(e)})

        logger.warning(
            "Request failed",
            extra={
                "error": message,
                "error_kind": kind.value if kind else None,
                "tenant_key": request.tenant_key if request else None,
            },
        )
        return RequestOutcome(
            state=self._state,
            request=request,
            error=message,
            error_kind=kind,
            triggered=True,
            duration_seconds=time.monotonic() - started,
        )
