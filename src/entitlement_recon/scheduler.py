"""Fixed-interval polling scheduler.

Runs one immediate check at start, then one per interval on the wall clock.
A tick that finds the previous one still in flight is skipped and counted,
so a slow request never overlaps the next. A failing tick is logged and
counted and never stops the scheduler.

Stopping cancels the timer only: a request already being processed still
runs to its terminal write.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from .config import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    MAX_POLL_INTERVAL_SECONDS,
    MIN_POLL_INTERVAL_SECONDS,
)
from .request_machine import RequestOutcome, RequestState, RequestStateMachine
from .workbook import GraphAuthError, SheetNotFoundError

logger = logging.getLogger(__name__)


class SchedulerError(Exception):
    """Raised on invalid scheduler use (not configured, already running, bad interval)."""

    pass


@dataclass
class PollingStats:
    """Running counters, reset by each start."""

    started_at: datetime | None = None
    last_poll_at: datetime | None = None
    last_success_at: datetime | None = None
    poll_count: int = 0
    skipped_ticks: int = 0
    requests_processed: int = 0
    errors: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        def iso(value: datetime | None) -> str | None:
            return value.isoformat().replace("+00:00", "Z") if value else None

        return {
            "started_at": iso(self.started_at),
            "last_poll_at": iso(self.last_poll_at),
            "last_success_at": iso(self.last_success_at),
            "poll_count": self.poll_count,
            "skipped_ticks": self.skipped_ticks,
            "requests_processed": self.requests_processed,
            "errors": self.errors,
            "last_error": self.last_error,
        }


def validate_interval(seconds: int) -> int:
    """Check a poll interval against its bounds.

    Raises:
        SchedulerError: If the interval is out of range.
    """
    if not MIN_POLL_INTERVAL_SECONDS <= seconds <= MAX_POLL_INTERVAL_SECONDS:
        raise SchedulerError(
            f"Poll interval must be between {MIN_POLL_INTERVAL_SECONDS} and "
            f"{MAX_POLL_INTERVAL_SECONDS} seconds, got {seconds}"
        )
    return seconds


def operator_hint(error: Exception) -> str | None:
    """A short fix-it hint for errors an operator can resolve."""
    if isinstance(error, SheetNotFoundError):
        return "Check that the lookup worksheet exists and matches the configured sheet name"
    if isinstance(error, GraphAuthError):
        return "Check that the managed identity has read/write access to the workbook"
    return None


class PollingScheduler:
    """Drives a ``RequestStateMachine`` on a timer."""

    def __init__(self, interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS) -> None:
        self._interval_seconds = validate_interval(interval_seconds)
        self._machine: RequestStateMachine | None = None
        self._stats = PollingStats()
        self._stop_event = asyncio.Event()
        self._timer_task: asyncio.Task[None] | None = None
        self._tick_task: asyncio.Task[RequestOutcome | None] | None = None

    @property
    def interval_seconds(self) -> int:
        return self._interval_seconds

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def is_configured(self) -> bool:
        return self._machine is not None

    @property
    def stats(self) -> PollingStats:
        """A snapshot of the running counters."""
        return replace(self._stats)

    def configure(self, machine: RequestStateMachine) -> None:
        """Set the state machine (and with it the workbook) to poll.

        Raises:
            SchedulerError: If the scheduler is running.
        """
        if self.is_running:
            raise SchedulerError("Cannot reconfigure a running scheduler; stop it first")
        self._machine = machine
        logger.info("Scheduler configured", extra={"sheet": machine.channel.layout.lookup_sheet})

    def start(self) -> None:
        """Start polling: one immediate tick, then one per interval.

        Must be called from a running event loop.

        Raises:
            SchedulerError: If not configured or already running.
        """
        if self._machine is None:
            raise SchedulerError("Scheduler is not configured; call configure() before start()")
        if self.is_running:
            raise SchedulerError("Scheduler is already running")

        self._stats = PollingStats(started_at=datetime.now(UTC))
        self._stop_event = asyncio.Event()
        logger.info("Starting poller", extra={"interval_seconds": self._interval_seconds})

        self._launch_tick()
        self._timer_task = asyncio.create_task(self._timer_loop())

    def stop(self) -> None:
        """Stop the timer. An in-flight tick is left to finish."""
        if not self.is_running:
            return
        logger.info("Stopping poller", extra=self._stats.to_dict())
        self._stop_event.set()
        if self._timer_task is not None:
            self._timer_task.cancel()
        self._timer_task = None

    async def wait(self) -> None:
        """Block until stopped and any in-flight tick has finished."""
        await self._stop_event.wait()
        if self._tick_task is not None and not self._tick_task.done():
            await self._tick_task

    def set_interval(self, seconds: int) -> None:
        """Change the interval, restarting the timer if running.

        Raises:
            SchedulerError: If the interval is out of range.
        """
        self._interval_seconds = validate_interval(seconds)
        logger.info("Poll interval changed", extra={"interval_seconds": seconds})
        if self.is_running and self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = asyncio.create_task(self._timer_loop())

    async def poll_once(self) -> RequestOutcome | None:
        """Run a single check for work outside the timer.

        Returns:
            The check's outcome, or None if it failed or was skipped.

        Raises:
            SchedulerError: If not configured.
        """
        if self._machine is None:
            raise SchedulerError("Scheduler is not configured; call configure() before polling")
        if self._tick_task is not None and not self._tick_task.done():
            self._stats.skipped_ticks += 1
            return None
        return await self._tick()

    async def _timer_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds)
            except TimeoutError:
                self._launch_tick()

    def _launch_tick(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            self._stats.skipped_ticks += 1
            logger.debug("Previous poll still running, skipping tick")
            return
        self._tick_task = asyncio.create_task(self._tick())

    async def _tick(self) -> RequestOutcome | None:
        machine = self._machine
        if machine is None:
            return None

        self._stats.poll_count += 1
        self._stats.last_poll_at = datetime.now(UTC)

        try:
            outcome = await machine.check_for_work()
        except Exception as e:
            self._record_error(e)
            return None

        self._stats.last_success_at = datetime.now(UTC)
        if outcome.skipped:
            self._stats.skipped_ticks += 1
        if outcome.processed:
            self._stats.requests_processed += 1
        if outcome.processed and outcome.state == RequestState.FAILED:
            self._stats.errors += 1
            self._stats.last_error = outcome.error
        return outcome

    def _record_error(self, error: Exception) -> None:
        self._stats.errors += 1
        self._stats.last_error = str(error) or type(error).__name__

        extra: dict[str, Any] = {
            "error": self._stats.last_error,
            "error_type": type(error).__name__,
            "errors": self._stats.errors,
        }
        hint = operator_hint(error)
        if hint:
            extra["hint"] = hint
        logger.error("Poll failed", extra=extra)
