"""DueScanner — periodic tick that claims due schedules and submits jobs."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.config import settings
from src.scheduler.cron import next_occurrence
from src.scheduler.errors import CronError
from src.scheduler.reporting import LoggingReporter, report_breadcrumb, report_failure

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.scheduler.models import Schedule
    from src.scheduler.queue import DispatchQueue
    from src.scheduler.reporting import Reporter
    from src.scheduler.store import ScheduleStore

logger = logging.getLogger(__name__)

_TICK_JOB_ID = "due-scanner"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DueScanner:
    """Finds due schedules on a fixed tick, claims them, and hands them off.

    Claiming means persisting the next occurrence *before* submitting the
    job, so a later tick never re-selects an occurrence already handed off.

    Args:
        store: ScheduleStore for queries and claim writes.
        queue: DispatchQueue that receives the jobs.
        reporter: Observability sink (default: LoggingReporter).
        tick_seconds: Tick interval (default from settings).
        horizon_days: Cron search bound (default from settings).
        clock: Returns the current aware datetime (for tests).
    """

    def __init__(
        self,
        store: ScheduleStore,
        queue: DispatchQueue,
        reporter: Reporter | None = None,
        tick_seconds: int | None = None,
        horizon_days: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._reporter = reporter or LoggingReporter()
        self._tick_seconds = tick_seconds or settings.scanner_tick_seconds
        self._horizon_days = horizon_days or settings.cron_search_horizon_days
        self._clock = clock or _utcnow
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def state(self) -> str:
        return "running" if self._running else "stopped"

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Arm the periodic tick."""
        if self._running:
            return
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._tick_seconds, timezone="UTC"),
            id=_TICK_JOB_ID,
            name="Due schedule scan",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        self._running = True
        logger.info("Due scanner started - checking every %ds", self._tick_seconds)

    async def stop(self) -> None:
        """Cancel the tick. Jobs already in the queue are left alone."""
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Due scanner stopped")

    # -- Tick ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> int:
        """Claim and submit every due schedule. Returns how many were claimed."""
        now = now or self._clock()
        try:
            due = await self._store.find_due(now)
        except Exception as exc:
            report_failure(
                self._reporter, {"component": "DueScanner", "operation": "find_due"}, exc
            )
            return 0

        if not due:
            return 0

        logger.info("Found %d due schedule(s)", len(due))
        report_breadcrumb(
            self._reporter,
            f"Processing {len(due)} due schedules",
            "scheduler.scan",
            {"schedule_ids": [s.id for s in due]},
        )

        claimed = 0
        for schedule in due:
            if await self._claim(schedule, now):
                claimed += 1
        return claimed

    async def _claim(self, schedule: Schedule, now: datetime) -> bool:
        """Advance next_run_at, then submit a job for the occurrence that was due."""
        try:
            next_run = next_occurrence(
                schedule.cron_expression,
                schedule.timezone,
                now,
                horizon_days=self._horizon_days,
            )
            await self._store.update_next_run_at(schedule.id, next_run)
            await self._queue.enqueue(schedule.id, now, occurrence=schedule.next_run_at)
        except CronError as exc:
            await self._quarantine(schedule, exc)
            return False
        except Exception as exc:
            report_failure(
                self._reporter,
                {
                    "component": "DueScanner",
                    "operation": "claim",
                    "schedule_id": schedule.id,
                    "schedule_name": schedule.name,
                },
                exc,
            )
            return False

        logger.info(
            "Enqueued schedule %s (%s), next run: %s",
            schedule.id,
            schedule.name,
            next_run.isoformat(),
        )
        return True

    async def _quarantine(self, schedule: Schedule, exc: CronError) -> None:
        """Deactivate a schedule whose cron/timezone can never fire."""
        report_failure(
            self._reporter,
            {
                "component": "DueScanner",
                "operation": "unschedulable",
                "schedule_id": schedule.id,
                "schedule_name": schedule.name,
                "cron_expression": schedule.cron_expression,
                "alert": True,
            },
            exc,
        )
        try:
            await self._store.deactivate(schedule.id)
            await self._queue.cancel(schedule.id)
            self._queue.forget(schedule.id)
        except Exception:
            logger.exception("Failed to deactivate unschedulable schedule %s", schedule.id)

    # -- Startup and manual entry points ---------------------------------------

    async def initialize_next_run_times(self) -> int:
        """Seed next_run_at for active schedules that never had one.

        Each seeded schedule gets a job for its first occurrence, not for now.
        Returns the number of schedules initialized.
        """
        try:
            schedules = await self._store.find_uninitialized()
        except Exception as exc:
            report_failure(
                self._reporter,
                {"component": "DueScanner", "operation": "find_uninitialized"},
                exc,
            )
            return 0

        if not schedules:
            return 0

        logger.info("Initializing %d schedule(s) without next_run_at", len(schedules))
        now = self._clock()
        initialized = 0
        for schedule in schedules:
            try:
                next_run = next_occurrence(
                    schedule.cron_expression,
                    schedule.timezone,
                    now,
                    horizon_days=self._horizon_days,
                )
                await self._store.update_next_run_at(schedule.id, next_run)
                await self._queue.enqueue(schedule.id, next_run)
            except CronError as exc:
                await self._quarantine(schedule, exc)
                continue
            except Exception as exc:
                report_failure(
                    self._reporter,
                    {
                        "component": "DueScanner",
                        "operation": "initialize",
                        "schedule_id": schedule.id,
                    },
                    exc,
                )
                continue
            initialized += 1
            logger.info("Initialized schedule %s, next run: %s", schedule.id, next_run.isoformat())
        return initialized

    async def reschedule(self, schedule_id: str) -> datetime | None:
        """Re-plan one schedule after an edit, pause, or deletion.

        Cancels any pending job, then (if the schedule still exists and is
        active) recomputes next_run_at from now and submits a job for it.
        Returns the new next_run_at, or None when nothing was scheduled.

        Raises:
            CronError: the schedule's cron expression or timezone is invalid.
        """
        await self._queue.cancel(schedule_id)

        schedule = await self._store.find_by_id(schedule_id)
        if schedule is None or not schedule.is_active:
            self._queue.forget(schedule_id)
            logger.info("Schedule %s missing or inactive; pending job cancelled", schedule_id)
            return None

        next_run = next_occurrence(
            schedule.cron_expression,
            schedule.timezone,
            self._clock(),
            horizon_days=self._horizon_days,
        )
        await self._store.update_next_run_at(schedule_id, next_run)
        await self._queue.enqueue(schedule_id, next_run)
        logger.info("Rescheduled %s, next run: %s", schedule_id, next_run.isoformat())
        return next_run
