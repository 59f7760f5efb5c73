"""Persistence for report tasks."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import StrEnum

from dbwarden.storage.database import Database, utcnow

logger = logging.getLogger(__name__)


class ReportStatus(StrEnum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


UNFINISHED_STATUSES: tuple[ReportStatus, ...] = (
    ReportStatus.PENDING,
    ReportStatus.ANALYZING,
    ReportStatus.GENERATING,
)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Report:
    """A persisted report task."""

    id: str
    repo_url: str
    ref: str
    report_type: str
    status: ReportStatus = ReportStatus.PENDING
    title: str | None = None
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict) -> Report:
        """Build a report from a ``reports`` row.

        Raises
        ------
        InvalidReportRow
            If a status, counter or timestamp column cannot be parsed.
        """
        names = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in names}
        converters = [("status", ReportStatus), ("retry_count", lambda v: int(v or 0))]
        converters += [
            (key, parse_timestamp)
            for key in ("started_at", "completed_at", "created_at", "updated_at")
        ]
        for key, convert in converters:
            try:
                data[key] = convert(data.get(key))
            except (TypeError, ValueError) as exc:
                raise InvalidReportRow(row.get("id"), key, data.get(key)) from exc
        return cls(**data)


class InvalidReportRow(ValueError):
    """A stored report row holds a value that cannot be parsed."""

    def __init__(self, report_id: str, field: str, value) -> None:
        super().__init__(f"report {report_id}: invalid {field} {value!r}")
        self.report_id = report_id
        self.field = field
        self.value = value


@dataclass
class UnreadableReport:
    """An unfinished report whose row could not be converted."""

    id: str
    field: str
    value: object = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class ReportStore:
    """Read and write report rows.

    The report worker owns status transitions; recovery only lists
    unfinished reports and marks individual ones as failed.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def create(
        self,
        repo_url: str,
        ref: str,
        report_type: str,
        title: str | None = None,
        report_id: str | None = None,
        status: ReportStatus = ReportStatus.PENDING,
        retry_count: int = 0,
        started_at: datetime | None = None,
        created_at: datetime | None = None,
    ) -> Report:
        now = utcnow()
        report_id = report_id or uuid.uuid4().hex[:20]
        created = _iso(created_at) or now
        await self._db.execute(
            "INSERT INTO reports (id, repo_url, ref, report_type, title, status, "
            "retry_count, started_at, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (report_id, repo_url, ref, report_type, title, str(status),
             retry_count, _iso(started_at), created, now),
        )
        report = await self.get(report_id)
        assert report is not None
        return report

    async def get(self, report_id: str) -> Report | None:
        row = await self._db.execute_fetchone(
            "SELECT * FROM reports WHERE id = ? AND deleted_at IS NULL", (report_id,)
        )
        return Report.from_row(row) if row else None

    async def list_unfinished(self) -> list[Report | UnreadableReport]:
        """Reports in a non-terminal status, oldest first.

        Rows are converted one at a time; a row that cannot be parsed comes
        back as an :class:`UnreadableReport` in its place.
        """
        placeholders = ", ".join("?" for _ in UNFINISHED_STATUSES)
        rows = await self._db.execute_fetchall(
            f"SELECT * FROM reports WHERE status IN ({placeholders}) "
            f"AND deleted_at IS NULL ORDER BY created_at ASC, id ASC",
            tuple(str(s) for s in UNFINISHED_STATUSES),
        )
        result: list[Report | UnreadableReport] = []
        for row in rows:
            try:
                result.append(Report.from_row(row))
            except InvalidReportRow as exc:
                logger.warning("Unreadable report row: %s", exc)
                result.append(UnreadableReport(exc.report_id, exc.field, exc.value))
        return result

    async def update_status(self, report_id: str, status: ReportStatus) -> None:
        now = utcnow()
        started = now if status in (ReportStatus.ANALYZING, ReportStatus.GENERATING) else None
        completed = now if status in (
            ReportStatus.COMPLETED, ReportStatus.FAILED, ReportStatus.CANCELLED
        ) else None
        await self._db.execute(
            "UPDATE reports SET status = ?, updated_at = ?, "
            "started_at = COALESCE(started_at, ?), "
            "completed_at = COALESCE(?, completed_at) WHERE id = ?",
            (str(status), now, started, completed, report_id),
        )

    async def update_status_with_error(
        self, report_id: str, status: ReportStatus, message: str
    ) -> None:
        await self._db.execute(
            "UPDATE reports SET status = ?, error_message = ?, updated_at = ? WHERE id = ?",
            (str(status), message, utcnow(), report_id),
        )

    async def increment_retry(self, report_id: str) -> None:
        await self._db.execute(
            "UPDATE reports SET retry_count = retry_count + 1, updated_at = ? WHERE id = ?",
            (utcnow(), report_id),
        )
