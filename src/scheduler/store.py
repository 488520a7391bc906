"""ScheduleStore — aiosqlite persistence for schedules and their execution log."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import aiosqlite

from src.config import settings
from src.scheduler.models import ExecutionRecord, Schedule, to_iso

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_SCHEDULES = """
CREATE TABLE IF NOT EXISTS schedules (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'custom',
    cron_expression TEXT NOT NULL,
    timezone TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    channel TEXT,
    target TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    next_run_at TEXT,
    created_at TEXT NOT NULL,
    last_run_at TEXT,
    run_count INTEGER NOT NULL DEFAULT 0,
    fail_count INTEGER NOT NULL DEFAULT 0
)
"""

_CREATE_EXECUTIONS = """
CREATE TABLE IF NOT EXISTS schedule_executions (
    id TEXT PRIMARY KEY,
    schedule_id TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    status TEXT NOT NULL,
    error_code TEXT,
    error TEXT,
    message_id TEXT,
    executed_at TEXT NOT NULL
)
"""

_CREATE_EXECUTIONS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_schedule_executions_schedule
    ON schedule_executions (schedule_id, executed_at)
"""

_COLUMNS = (
    "id, name, type, cron_expression, timezone, content, channel, target,"
    " is_active, next_run_at, created_at, last_run_at, run_count, fail_count"
)


class ScheduleStore:
    """Persists schedules in SQLite.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            await db.execute(_CREATE_SCHEDULES)
            await db.execute(_CREATE_EXECUTIONS)
            await db.execute(_CREATE_EXECUTIONS_INDEX)
            await db.commit()
            self._initialised = True
        return db

    async def _select(self, where: str, params: tuple = ()) -> list[Schedule]:
        db = await self._connect()
        try:
            cursor = await db.execute(f"SELECT {_COLUMNS} FROM schedules {where}", params)
            rows = await cursor.fetchall()
            return [Schedule.from_row(row) for row in rows]
        finally:
            await db.close()

    async def _update(self, sql: str, params: tuple) -> bool:
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            await db.commit()
            return cursor.rowcount > 0
        finally:
            await db.close()

    # -- Queries used by the scanner -------------------------------------------

    async def find_due(self, now: datetime) -> list[Schedule]:
        """Active schedules whose next_run_at is at or before *now*."""
        return await self._select(
            "WHERE is_active = 1 AND next_run_at IS NOT NULL AND next_run_at <= ?"
            " ORDER BY next_run_at",
            (to_iso(now),),
        )

    async def find_uninitialized(self) -> list[Schedule]:
        """Active schedules that have never had next_run_at computed."""
        return await self._select(
            "WHERE is_active = 1 AND next_run_at IS NULL ORDER BY created_at"
        )

    async def find_by_id(self, schedule_id: str) -> Schedule | None:
        """Fetch a schedule by ID, or None if not found."""
        rows = await self._select("WHERE id = ?", (schedule_id,))
        return rows[0] if rows else None

    async def update_next_run_at(self, schedule_id: str, timestamp: datetime | None) -> None:
        """Set or clear next_run_at."""
        await self._update(
            "UPDATE schedules SET next_run_at = ? WHERE id = ?",
            (to_iso(timestamp), schedule_id),
        )

    # -- CRUD ------------------------------------------------------------------

    async def add_schedule(self, schedule: Schedule) -> Schedule:
        """Insert a new schedule. Returns the same object."""
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO schedules ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                schedule.to_row(),
            )
            await db.commit()
            logger.info("Added schedule: %s (%s)", schedule.name, schedule.id)
            return schedule
        finally:
            await db.close()

    async def set_active(self, schedule_id: str, active: bool) -> bool:
        """Activate or pause a schedule. Activation resets fail_count."""
        if active:
            return await self._update(
                "UPDATE schedules SET is_active = 1, fail_count = 0 WHERE id = ?",
                (schedule_id,),
            )
        return await self._update(
            "UPDATE schedules SET is_active = 0 WHERE id = ?", (schedule_id,)
        )

    async def deactivate(self, schedule_id: str) -> bool:
        """Mark a schedule inactive and clear next_run_at."""
        updated = await self._update(
            "UPDATE schedules SET is_active = 0, next_run_at = NULL WHERE id = ?",
            (schedule_id,),
        )
        if updated:
            logger.info("Deactivated schedule: %s", schedule_id)
        return updated

    async def update_cron(self, schedule_id: str, cron_expression: str, timezone: str) -> bool:
        """Change the cron/timezone pair. Callers must reschedule afterwards."""
        return await self._update(
            "UPDATE schedules SET cron_expression = ?, timezone = ? WHERE id = ?",
            (cron_expression, timezone, schedule_id),
        )

    # -- Execution bookkeeping -------------------------------------------------

    async def mark_run(self, schedule_id: str, timestamp: datetime | None = None) -> None:
        """Record a successful execution (defaults to now UTC)."""
        ts = timestamp or datetime.now(UTC)
        await self._update(
            "UPDATE schedules SET last_run_at = ?, run_count = run_count + 1 WHERE id = ?",
            (to_iso(ts), schedule_id),
        )

    async def mark_failed(self, schedule_id: str) -> None:
        await self._update(
            "UPDATE schedules SET fail_count = fail_count + 1 WHERE id = ?",
            (schedule_id,),
        )

    async def record_execution(self, record: ExecutionRecord) -> None:
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO schedule_executions
                    (id, schedule_id, attempt, status, error_code, error,
                     message_id, executed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                record.to_row(),
            )
            await db.commit()
        finally:
            await db.close()

    async def list_executions(
        self, schedule_id: str, limit: int = 20, offset: int = 0
    ) -> tuple[list[ExecutionRecord], int]:
        """Return a page of execution records (newest first) and the total count."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                SELECT id, schedule_id, attempt, status, error_code, error,
                       message_id, executed_at
                FROM schedule_executions
                WHERE schedule_id = ?
                ORDER BY executed_at DESC, attempt DESC
                LIMIT ? OFFSET ?
                """,
                (schedule_id, limit, offset),
            )
            rows = await cursor.fetchall()
            cursor = await db.execute(
                "SELECT COUNT(*) FROM schedule_executions WHERE schedule_id = ?",
                (schedule_id,),
            )
            (total,) = await cursor.fetchone()
            return [ExecutionRecord.from_row(row) for row in rows], total
        finally:
            await db.close()
