"""Tests for the startup report recovery pass."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import aiosqlite
import pytest

from dbwarden.reports.queue import ReportQueue
from dbwarden.reports.recovery import RecoveryService, RecoverySummary, format_elapsed
from dbwarden.reports.store import Report, ReportStatus, ReportStore
from dbwarden.storage.database import Database

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def store(db: Database) -> ReportStore:
    return ReportStore(db)


@pytest.fixture
def queue() -> ReportQueue:
    return ReportQueue(capacity=10)


def _service(store: ReportStore, queue, **kwargs) -> RecoveryService:
    return RecoveryService(store, queue, clock=lambda: NOW, **kwargs)


async def _make(store: ReportStore, report_id: str, **kwargs) -> Report:
    kwargs.setdefault("created_at", NOW - timedelta(days=2))
    return await store.create("https://git.example.com/acme/api", "main", "wiki",
                              report_id=report_id, **kwargs)


# ------------------------------------------------------------------
# Policy
# ------------------------------------------------------------------


def test_format_elapsed():
    assert format_elapsed(timedelta(hours=24, seconds=1)) == "24h0m"
    assert format_elapsed(timedelta(hours=30, minutes=15)) == "30h15m"
    assert format_elapsed(timedelta(minutes=59, seconds=40)) == "1h0m"


async def test_non_positive_limits_fall_back_to_defaults(store: ReportStore, queue: ReportQueue):
    service = RecoveryService(store, queue, max_retry_count=0, task_timeout_hours=-5)
    assert service.max_retry_count == 3
    assert service.task_timeout_hours == 24


async def test_should_recover_never_started(store: ReportStore, queue: ReportQueue):
    report = Report(id="x", repo_url="r", ref="main", report_type="wiki")
    assert _service(store, queue).should_recover(report, NOW) == (True, "")


async def test_timeout_boundary(store: ReportStore, queue: ReportQueue):
    """Exactly the timeout is still recoverable; one second more is not."""
    await _make(store, "at-limit", status=ReportStatus.ANALYZING,
                started_at=NOW - timedelta(hours=24), created_at=NOW - timedelta(hours=25))
    await _make(store, "over-limit", status=ReportStatus.ANALYZING,
                started_at=NOW - timedelta(hours=24, seconds=1))

    summary = await _service(store, queue).recover_to_queue()

    assert summary == RecoverySummary(total=2, recovered=1, failed=1)
    assert "at-limit" in queue
    assert "over-limit" not in queue
    failed = await store.get("over-limit")
    assert failed.status is ReportStatus.FAILED
    assert failed.error_message == (
        "recovery failed: task timeout: started 24h0m ago (timeout: 24h)"
    )
    assert (await store.get("at-limit")).status is ReportStatus.ANALYZING


async def test_retry_boundary(store: ReportStore, queue: ReportQueue):
    await _make(store, "two-retries", retry_count=2)
    await _make(store, "three-retries", retry_count=3)

    summary = await _service(store, queue, max_retry_count=3).recover_to_queue()

    assert summary.recovered == 1
    assert summary.failed == 1
    assert "two-retries" in queue
    failed = await store.get("three-retries")
    assert failed.status is ReportStatus.FAILED
    assert failed.error_message == "recovery failed: max retry count exceeded: 3"


async def test_custom_timeout(store: ReportStore, queue: ReportQueue):
    await _make(store, "slow", status=ReportStatus.GENERATING,
                started_at=NOW - timedelta(hours=2, minutes=30))
    await _service(store, queue, task_timeout_hours=2).recover_to_queue()
    assert (await store.get("slow")).error_message == (
        "recovery failed: task timeout: started 2h30m ago (timeout: 2h)"
    )


# ------------------------------------------------------------------
# Recovery pass
# ------------------------------------------------------------------


async def test_mixed_batch(store: ReportStore, queue: ReportQueue):
    await _make(store, "fresh-pending", created_at=NOW - timedelta(hours=5))
    await _make(store, "running", status=ReportStatus.ANALYZING,
                started_at=NOW - timedelta(hours=1), created_at=NOW - timedelta(hours=4))
    await _make(store, "retried-out", status=ReportStatus.GENERATING, retry_count=3,
                started_at=NOW - timedelta(hours=1), created_at=NOW - timedelta(hours=3))
    await _make(store, "stale", status=ReportStatus.ANALYZING,
                started_at=NOW - timedelta(hours=25), created_at=NOW - timedelta(hours=26))
    await _make(store, "finished", status=ReportStatus.COMPLETED)

    summary = await _service(store, queue).recover_to_queue()

    assert summary == RecoverySummary(total=4, recovered=2, failed=2, skipped=0)
    assert len(queue) == 2
    order = [(await queue.get()).report.id for _ in range(2)]
    assert order == ["fresh-pending", "running"]

    assert (await store.get("fresh-pending")).status is ReportStatus.PENDING
    assert (await store.get("running")).status is ReportStatus.ANALYZING
    assert (await store.get("retried-out")).error_message.startswith(
        "recovery failed: max retry count exceeded"
    )
    assert (await store.get("stale")).error_message.startswith("recovery failed: task timeout")
    finished = await store.get("finished")
    assert finished.status is ReportStatus.COMPLETED
    assert finished.error_message is None


async def test_enqueue_rejection_marks_failed(store: ReportStore):
    queue = ReportQueue(capacity=1)
    await _make(store, "first", created_at=NOW - timedelta(hours=2))
    await _make(store, "second", created_at=NOW - timedelta(hours=1))

    summary = await _service(store, queue).recover_to_queue()

    assert summary.recovered == 1
    assert summary.failed == 1
    rejected = await store.get("second")
    assert rejected.status is ReportStatus.FAILED
    assert rejected.error_message == "recovery failed: could not enqueue task"


async def test_no_unfinished_reports(store: ReportStore, queue: ReportQueue):
    await _make(store, "done", status=ReportStatus.CANCELLED)
    assert await _service(store, queue).recover_to_queue() == RecoverySummary()


async def test_stop_event_skips_remaining(store: ReportStore, queue: ReportQueue):
    await _make(store, "a")
    await _make(store, "b", retry_count=5)
    stop = asyncio.Event()
    stop.set()

    summary = await _service(store, queue).recover_to_queue(stop_event=stop)

    assert summary == RecoverySummary(total=2, skipped=2)
    assert len(queue) == 0
    assert (await store.get("b")).status is ReportStatus.PENDING


async def test_listing_error_aborts_pass(store: ReportStore, queue: ReportQueue):
    with patch.object(
        ReportStore, "list_unfinished",
        side_effect=aiosqlite.OperationalError("database is locked"),
    ):
        summary = await _service(store, queue).recover_to_queue()
    assert summary == RecoverySummary()


async def test_mark_failed_error_does_not_stop_pass(store: ReportStore, queue: ReportQueue):
    await _make(store, "bad-1", retry_count=9, created_at=NOW - timedelta(hours=3))
    await _make(store, "bad-2", retry_count=9, created_at=NOW - timedelta(hours=2))
    await _make(store, "good", created_at=NOW - timedelta(hours=1))

    with patch.object(
        ReportStore, "update_status_with_error",
        side_effect=aiosqlite.OperationalError("disk full"),
    ) as mark:
        summary = await _service(store, queue).recover_to_queue()

    assert mark.await_count == 2
    assert summary.failed == 2
    assert summary.recovered == 1
    assert "good" in queue


async def test_completion_callback_is_attached(store: ReportStore, queue: ReportQueue):
    await _make(store, "a")
    await _service(store, queue).recover_to_queue()
    task = await queue.get()
    assert task.callback is not None
    queue.task_done(task, None)
    assert "a" not in queue


async def test_unreadable_row_is_failed_and_pass_continues(
    store: ReportStore, queue: ReportQueue, db: Database
):
    await _make(store, "garbled", status=ReportStatus.ANALYZING, created_at=NOW - timedelta(hours=3))
    await _make(store, "ok", created_at=NOW - timedelta(hours=2))
    await db.execute("UPDATE reports SET started_at = 'garbage' WHERE id = 'garbled'")

    summary = await _service(store, queue).recover_to_queue()

    assert summary == RecoverySummary(total=2, recovered=1, failed=1)
    assert "ok" in queue
    row = await db.execute_fetchone("SELECT status, error_message FROM reports WHERE id = 'garbled'")
    assert row == {"status": "failed", "error_message": "recovery failed: invalid started_at"}


async def test_unexpected_listing_error_aborts_pass(store: ReportStore, queue: ReportQueue):
    with patch.object(ReportStore, "list_unfinished", side_effect=RuntimeError("closed")):
        summary = await _service(store, queue).recover_to_queue()
    assert summary == RecoverySummary()
