"""Bounded in-memory FIFO of reports waiting for the report worker."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from dbwarden.reports.store import Report

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[Report, BaseException | None], None]


@dataclass
class ReportTask:
    report: Report
    callback: CompletionCallback | None = None


class ReportQueue:
    """Admission-controlled queue shared by recovery and the report worker.

    :meth:`enqueue` never blocks: it returns False when the queue is full or
    the report is already queued.  Items come out of :meth:`get` in
    submission order.
    """

    def __init__(self, capacity: int = 100) -> None:
        self.capacity = capacity
        self._queue: asyncio.Queue[ReportTask] = asyncio.Queue(maxsize=capacity)
        self._queued_ids: set[str] = set()

    def __len__(self) -> int:
        return self._queue.qsize()

    def __contains__(self, report_id: str) -> bool:
        return report_id in self._queued_ids

    def enqueue(self, report: Report, callback: CompletionCallback | None = None) -> bool:
        if report.id in self._queued_ids:
            logger.debug("Report %s already queued, skipping", report.id)
            return False
        try:
            self._queue.put_nowait(ReportTask(report, callback))
        except asyncio.QueueFull:
            logger.warning("Report queue full (capacity %d), rejecting %s", self.capacity, report.id)
            return False
        self._queued_ids.add(report.id)
        return True

    async def get(self) -> ReportTask:
        return await self._queue.get()

    def task_done(self, task: ReportTask, error: BaseException | None = None) -> None:
        """Release *task*'s id and run its completion callback."""
        self._queued_ids.discard(task.report.id)
        self._queue.task_done()
        if task.callback is not None:
            try:
                task.callback(task.report, error)
            except Exception:
                logger.exception("Completion callback failed for report %s", task.report.id)
