"""Schedule, Job, and ExecutionOutcome data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from src.scheduler.errors import ErrorCode


def to_iso(value: datetime | None) -> str | None:
    """Serialize an aware datetime as UTC ISO 8601 (naive is taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="seconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO 8601 timestamp back into an aware UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass
class Schedule:
    """A recurring post definition.

    Attributes:
        id: Unique identifier (UUID hex).
        name: Human-readable name.
        cron_expression: 5-field cron string, e.g. ``"0 9 * * *"``.
        timezone: IANA zone the cron fields are read in.
        content: Post body; may contain ``{{date}}``-style variables.
        target: Destination address on the channel (e.g. a Telegram chat id).
        type: Free-form post category.
        channel: Notification channel name (None → router default).
        is_active: Inactive schedules are never selected for dispatch.
        next_run_at: Next unvisited occurrence; None until initialized.
        created_at: Creation time.
        last_run_at: Time of the last successful execution.
        run_count: Number of successful executions.
        fail_count: Number of failed attempts.
    """

    id: str
    name: str
    cron_expression: str
    timezone: str
    content: str = ""
    target: str = ""
    type: str = "custom"
    channel: str | None = None
    is_active: bool = True
    next_run_at: datetime | None = None
    created_at: datetime | None = None
    last_run_at: datetime | None = None
    run_count: int = 0
    fail_count: int = 0

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = datetime.now(UTC)

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``schedules`` column order."""
        return (
            self.id,
            self.name,
            self.type,
            self.cron_expression,
            self.timezone,
            self.content,
            self.channel,
            self.target,
            int(self.is_active),
            to_iso(self.next_run_at),
            to_iso(self.created_at),
            to_iso(self.last_run_at),
            self.run_count,
            self.fail_count,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Schedule:
        """Deserialize from a SQLite row tuple."""
        return cls(
            id=row[0],
            name=row[1],
            type=row[2],
            cron_expression=row[3],
            timezone=row[4],
            content=row[5] or "",
            channel=row[6],
            target=row[7] or "",
            is_active=bool(row[8]),
            next_run_at=from_iso(row[9]),
            created_at=from_iso(row[10]),
            last_run_at=from_iso(row[11]),
            run_count=row[12] or 0,
            fail_count=row[13] or 0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "is_active": self.is_active,
            "next_run_at": to_iso(self.next_run_at),
        }


def make_schedule_id() -> str:
    """Generate a new schedule ID."""
    return uuid.uuid4().hex


@dataclass
class Job:
    """One claimed occurrence of a schedule waiting to be executed.

    ``occurrence`` is the schedule instant the job stands for; retries keep it
    while ``scheduled_for`` moves forward with each backoff.
    """

    schedule_id: str
    scheduled_for: datetime
    attempt: int = 0
    max_attempts: int = 3
    occurrence: datetime | None = None

    def __post_init__(self) -> None:
        if self.occurrence is None:
            self.occurrence = self.scheduled_for

    @property
    def exhausted(self) -> bool:
        """True once ``max_attempts`` retries have been spent."""
        return self.attempt >= self.max_attempts


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one executor invocation."""

    success: bool
    error_code: ErrorCode | None = None
    message: str = ""
    message_id: str | None = None
    detail: str = ""

    @classmethod
    def ok(cls, message_id: str | None = None, detail: str = "") -> ExecutionOutcome:
        return cls(success=True, message_id=message_id, detail=detail)

    @classmethod
    def failed(cls, error_code: ErrorCode, message: str = "") -> ExecutionOutcome:
        return cls(success=False, error_code=error_code, message=message)


@dataclass
class ExecutionRecord:
    """A row of the execution log."""

    schedule_id: str
    attempt: int
    status: str
    executed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error_code: str | None = None
    error: str | None = None
    message_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_outcome(cls, job: Job, outcome: ExecutionOutcome) -> ExecutionRecord:
        if outcome.success:
            return cls(
                schedule_id=job.schedule_id,
                attempt=job.attempt,
                status="SUCCESS",
                message_id=outcome.message_id,
            )
        return cls(
            schedule_id=job.schedule_id,
            attempt=job.attempt,
            status="FAILED",
            error_code=str(outcome.error_code) if outcome.error_code else None,
            error=outcome.message,
        )

    def to_row(self) -> tuple:
        return (
            self.id,
            self.schedule_id,
            self.attempt,
            self.status,
            self.error_code,
            self.error,
            self.message_id,
            to_iso(self.executed_at),
        )

    @classmethod
    def from_row(cls, row: tuple) -> ExecutionRecord:
        return cls(
            id=row[0],
            schedule_id=row[1],
            attempt=row[2],
            status=row[3],
            error_code=row[4],
            error=row[5],
            message_id=row[6],
            executed_at=from_iso(row[7]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "attempt": self.attempt,
            "status": self.status,
            "error_code": self.error_code,
            "error": self.error,
            "message_id": self.message_id,
            "executed_at": to_iso(self.executed_at),
        }
