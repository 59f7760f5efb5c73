"""Startup recovery of reports left unfinished by a previous process."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import aiosqlite

from dbwarden.reports.queue import CompletionCallback
from dbwarden.reports.store import Report, ReportStatus, ReportStore, UnreadableReport

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRY_COUNT = 3
DEFAULT_TASK_TIMEOUT_HOURS = 24

ENQUEUE_FAILED_REASON = "could not enqueue task"


class ReportEnqueuer(Protocol):
    def enqueue(self, report: Report, callback: CompletionCallback | None = None) -> bool: ...


@dataclass
class RecoverySummary:
    total: int = 0
    recovered: int = 0
    failed: int = 0
    skipped: int = 0


def format_elapsed(delta: timedelta) -> str:
    """Render *delta* as ``XhYm``, rounded to the nearest minute."""
    minutes = max(0, round(delta.total_seconds() / 60))
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes}m"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RecoveryService:
    """Resolve every non-terminal report once, at startup.

    Each unfinished report is either handed back to the report queue or
    marked failed with the reason it could not be resumed.  A report is
    resumable while its retry count is below ``max_retry_count`` and it has
    not been running for longer than ``task_timeout_hours``.

    Parameters
    ----------
    store:
        Report persistence.
    queue:
        Anything with a non-blocking ``enqueue(report, callback) -> bool``.
    max_retry_count, task_timeout_hours:
        Policy limits.  Non-positive values fall back to the defaults.
    clock:
        Returns the current aware UTC time.  Injected by tests.
    """

    def __init__(
        self,
        store: ReportStore,
        queue: ReportEnqueuer,
        max_retry_count: int = DEFAULT_MAX_RETRY_COUNT,
        task_timeout_hours: int = DEFAULT_TASK_TIMEOUT_HOURS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_retry_count <= 0:
            max_retry_count = DEFAULT_MAX_RETRY_COUNT
        if task_timeout_hours <= 0:
            task_timeout_hours = DEFAULT_TASK_TIMEOUT_HOURS
        self._store = store
        self._queue = queue
        self.max_retry_count = max_retry_count
        self.task_timeout_hours = task_timeout_hours
        self.task_timeout = timedelta(hours=task_timeout_hours)
        self._clock = clock or _utc_now

    def should_recover(self, report: Report, now: datetime) -> tuple[bool, str]:
        """Decide whether *report* may be resumed.

        Returns ``(True, "")`` or ``(False, reason)`` where *reason* names
        the limit that was hit.
        """
        if report.retry_count >= self.max_retry_count:
            return False, f"max retry count exceeded: {report.retry_count}"
        if report.started_at is not None:
            elapsed = now - report.started_at
            if elapsed > self.task_timeout:
                return False, (
                    f"task timeout: started {format_elapsed(elapsed)} ago "
                    f"(timeout: {self.task_timeout_hours}h)"
                )
        return True, ""

    async def recover_to_queue(self, stop_event: asyncio.Event | None = None) -> RecoverySummary:
        """Run one recovery pass over all unfinished reports.

        Listing failures abort the pass and are logged, not raised.  Rows
        that cannot be read are marked failed.  A failure to mark one report
        failed does not stop the others.
        """
        summary = RecoverySummary()
        try:
            reports = await self._store.list_unfinished()
        except Exception:
            logger.exception("Failed to list unfinished reports, skipping recovery")
            return summary

        summary.total = len(reports)
        if not reports:
            logger.info("No unfinished reports to recover")
            return summary

        logger.info("Found %d unfinished report(s) to recover", len(reports))
        for position, report in enumerate(reports):
            if stop_event is not None and stop_event.is_set():
                summary.skipped = len(reports) - position
                logger.info("Recovery stopped, %d report(s) skipped", summary.skipped)
                break

            if isinstance(report, UnreadableReport):
                logger.warning(
                    "Report %s cannot be recovered: invalid %s %r",
                    report.id, report.field, report.value,
                )
                await self._mark_failed(report, f"invalid {report.field}")
                summary.failed += 1
                continue

            ok, reason = self.should_recover(report, self._clock())
            if not ok:
                logger.warning(
                    "Report %s cannot be recovered: %s (status=%s, retry_count=%d)",
                    report.id, reason, report.status, report.retry_count,
                )
                await self._mark_failed(report, reason)
                summary.failed += 1
                continue

            if self._queue.enqueue(report, self._on_complete):
                logger.info(
                    "Recovered report %s (status=%s, retry_count=%d)",
                    report.id, report.status, report.retry_count,
                )
                summary.recovered += 1
            else:
                logger.error("Failed to enqueue recovered report %s", report.id)
                await self._mark_failed(report, ENQUEUE_FAILED_REASON)
                summary.failed += 1

        logger.info(
            "Report recovery completed: total=%d recovered=%d failed=%d skipped=%d",
            summary.total, summary.recovered, summary.failed, summary.skipped,
        )
        return summary

    async def _mark_failed(self, report: Report | UnreadableReport, reason: str) -> None:
        try:
            await self._store.update_status_with_error(
                report.id, ReportStatus.FAILED, f"recovery failed: {reason}"
            )
        except aiosqlite.Error:
            logger.exception("Failed to mark report %s as failed", report.id)

    @staticmethod
    def _on_complete(report: Report, error: BaseException | None) -> None:
        if error is not None:
            logger.error("Recovered report %s failed: %s", report.id, error)
        else:
            logger.info("Recovered report %s completed", report.id)
