"""DispatchQueue — delayed job execution with classified, backed-off retries."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from src.config import settings
from src.scheduler.errors import TERMINAL, ErrorCode, classify
from src.scheduler.models import ExecutionOutcome, ExecutionRecord, Job
from src.scheduler.reporting import LoggingReporter, report_breadcrumb, report_failure

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from src.scheduler.reporting import Reporter
    from src.scheduler.store import ScheduleStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Executor(Protocol):
    """Performs the scheduled action for one schedule."""

    async def execute(self, schedule_id: str) -> ExecutionOutcome: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``min(initial_delay * backoff_multiplier**attempt, max_delay)``.

    ``max_attempts`` is the number of retries allowed after the first run.
    """

    max_attempts: int = 3
    initial_delay: float = 60.0
    backoff_multiplier: float = 2.0
    max_delay: float = 3600.0

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay=settings.retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> timedelta:
        seconds = min(self.initial_delay * self.backoff_multiplier**attempt, self.max_delay)
        return timedelta(seconds=seconds)


class RateLimiter:
    """Allows at most ``rate`` acquisitions in any one-second window."""

    def __init__(
        self,
        rate: int,
        *,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._rate = rate
        self._monotonic = monotonic
        self._sleep = sleep
        self._starts: deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> int:
        return self._rate

    async def acquire(self) -> None:
        """Wait until another dispatch fits in the current window."""
        async with self._lock:
            while True:
                now = self._monotonic()
                while self._starts and now - self._starts[0] >= 1.0:
                    self._starts.popleft()
                if len(self._starts) < self._rate:
                    self._starts.append(now)
                    return
                await self._sleep(1.0 - (now - self._starts[0]))


class DispatchQueue:
    """Runs jobs when they come due and owns every retry decision.

    Jobs are APScheduler date jobs keyed by schedule id, so each schedule has
    at most one pending job; a newer submission replaces the pending one.

    Every submission and every cancel bumps the schedule's generation. A job
    that came due but is still waiting for a worker slot runs only if its
    generation is still current, and an attempt that was cancelled or
    replaced while executing does not resubmit itself for retry.

    Args:
        executor: Performs the action and returns an ExecutionOutcome.
        store: Optional ScheduleStore for the execution log and run counters.
        reporter: Observability sink (default: LoggingReporter).
        policy: Retry policy (default from settings).
        concurrency: Maximum jobs executing at once (default from settings).
        limiter: Dispatch rate limit (default: settings.dispatch_rate_per_second).
        clock: Returns the current aware datetime (for tests).
    """

    def __init__(
        self,
        executor: Executor,
        store: ScheduleStore | None = None,
        reporter: Reporter | None = None,
        policy: RetryPolicy | None = None,
        concurrency: int | None = None,
        limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._executor = executor
        self._store = store
        self._reporter = reporter or LoggingReporter()
        self._policy = policy or RetryPolicy.from_settings()
        self._semaphore = asyncio.Semaphore(concurrency or settings.dispatch_concurrency)
        self._limiter = limiter or RateLimiter(settings.dispatch_rate_per_second)
        self._clock = clock or _utcnow
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._running = False
        # Latest occurrence handed to the executor, per schedule id.
        self._dispatched: dict[str, datetime] = {}
        # Bumped on every submit and cancel; values are never reused.
        self._generations: dict[str, int] = {}
        self._generation_seq = itertools.count(1)
        # Due jobs waiting for a worker slot, keyed by (schedule id, generation).
        self._ready: Counter[tuple[str, int]] = Counter()
        self._active = 0
        self._completed = 0
        self._failed = 0
        self._retried = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Start the worker timer. Jobs enqueued earlier are armed now."""
        if self._running:
            return
        self._scheduler.start()
        self._running = True
        logger.info("Dispatch queue started (policy=%s)", self._policy)

    async def stop(self) -> None:
        """Stop firing jobs. Pending jobs stay in memory until the next start."""
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Dispatch queue stopped")

    # -- Public API ------------------------------------------------------------

    async def enqueue(
        self,
        schedule_id: str,
        when: datetime,
        *,
        occurrence: datetime | None = None,
    ) -> Job | None:
        """Submit a job for *schedule_id* to run at *when*.

        *occurrence* identifies the schedule instant being executed (defaults
        to *when*).  Submitting an occurrence that was already dispatched is a
        no-op and returns None.
        """
        occurrence = occurrence or when
        last = self._dispatched.get(schedule_id)
        if last is not None and occurrence <= last:
            logger.info(
                "Occurrence %s of schedule %s already dispatched; not resubmitting",
                occurrence.isoformat(),
                schedule_id,
            )
            return None

        job = Job(
            schedule_id=schedule_id,
            scheduled_for=when,
            max_attempts=self._policy.max_attempts,
            occurrence=occurrence,
        )
        self._submit(job)
        logger.info("Scheduled job for %s at %s", schedule_id, when.isoformat())
        return job

    async def cancel(self, schedule_id: str) -> bool:
        """Remove any job not yet executing: delayed, backoff-delayed, or due
        and waiting for a worker slot. An attempt already executing finishes
        but is not retried. Idempotent.

        Returns True if a job was removed.
        """
        removed = self._remove(schedule_id)
        if self._ready[(schedule_id, self._generation(schedule_id))]:
            removed = True
        self._bump(schedule_id)
        if removed:
            logger.info("Cancelled pending job for schedule %s", schedule_id)
        return removed

    schedule_post = enqueue
    cancel_post = cancel

    def forget(self, schedule_id: str) -> None:
        """Drop the dispatch history of a deleted or deactivated schedule.

        Call after cancel(). Stale jobs for the schedule are still dropped.
        """
        self._dispatched.pop(schedule_id, None)
        self._generations.pop(schedule_id, None)

    def pending(self, schedule_id: str) -> Job | None:
        """Return the job waiting on its timer for *schedule_id*, if any."""
        aps_job = self._scheduler.get_job(schedule_id)
        return aps_job.args[0] if aps_job else None

    def metrics(self) -> dict[str, int]:
        """Job counts and lifetime outcome counters."""
        now = self._clock()
        jobs = [j.args[0] for j in self._scheduler.get_jobs()]
        due = sum(1 for job in jobs if job.scheduled_for <= now)
        ready = sum(
            count
            for (schedule_id, generation), count in self._ready.items()
            if generation == self._generation(schedule_id)
        )
        return {
            "waiting": due + ready,
            "delayed": len(jobs) - due,
            "active": self._active,
            "completed": self._completed,
            "failed": self._failed,
            "retried": self._retried,
        }

    # -- Processing ------------------------------------------------------------

    async def process(self, job: Job) -> ExecutionOutcome:
        """Execute one attempt of *job* and decide what happens next."""
        generation = self._generations.get(job.schedule_id)
        last = self._dispatched.get(job.schedule_id)
        if last is None or job.occurrence > last:
            self._dispatched[job.schedule_id] = job.occurrence

        report_breadcrumb(
            self._reporter,
            f"Processing schedule {job.schedule_id}",
            "scheduler.job",
            {"schedule_id": job.schedule_id, "attempt": job.attempt},
        )

        try:
            outcome = await self._executor.execute(job.schedule_id)
        except Exception as exc:
            logger.exception("Executor raised for schedule %s", job.schedule_id)
            outcome = ExecutionOutcome.failed(
                ErrorCode.TELEGRAM_API_ERROR, str(exc) or type(exc).__name__
            )

        await self._record(job, outcome)

        if outcome.success:
            self._completed += 1
            logger.info(
                "Job for %s succeeded on attempt %d%s",
                job.schedule_id,
                job.attempt,
                f" ({outcome.detail})" if outcome.detail else "",
            )
            return outcome

        code = outcome.error_code or ErrorCode.TELEGRAM_API_ERROR
        context: dict[str, Any] = {
            "component": "DispatchQueue",
            "schedule_id": job.schedule_id,
            "attempt": job.attempt,
            "error_code": str(code),
        }
        error = f"{code}: {outcome.message}" if outcome.message else str(code)

        if classify(code) == TERMINAL:
            self._failed += 1
            report_failure(
                self._reporter, {**context, "operation": "dispatch.terminal", "alert": True}, error
            )
            return outcome

        if job.exhausted:
            self._failed += 1
            report_failure(
                self._reporter, {**context, "operation": "dispatch.exhausted", "alert": True}, error
            )
            return outcome

        if self._generations.get(job.schedule_id) != generation:
            logger.info(
                "Job for %s was cancelled or replaced while running; not retrying",
                job.schedule_id,
            )
            return outcome

        delay = self._policy.delay_for(job.attempt)
        job.attempt += 1
        job.scheduled_for = self._clock() + delay
        self._submit(job)
        self._retried += 1
        logger.warning(
            "Job for %s failed with %s; retry %d/%d in %ds",
            job.schedule_id,
            code,
            job.attempt,
            job.max_attempts,
            int(delay.total_seconds()),
        )
        return outcome

    async def _run(self, job: Job, generation: int) -> None:
        """APScheduler callback: bounded by the semaphore and the rate limit."""
        if not await self._acquire_slot(job.schedule_id, generation):
            return
        self._active += 1
        try:
            await self.process(job)
        except Exception as exc:
            logger.exception("Unexpected error processing job for %s", job.schedule_id)
            report_failure(
                self._reporter,
                {
                    "component": "DispatchQueue",
                    "operation": "process",
                    "schedule_id": job.schedule_id,
                },
                exc,
            )
        finally:
            self._active -= 1
            self._semaphore.release()

    async def _acquire_slot(self, schedule_id: str, generation: int) -> bool:
        """Take a worker slot. Returns False, holding nothing, for a stale job."""
        key = (schedule_id, generation)
        self._ready[key] += 1
        try:
            await self._semaphore.acquire()
            try:
                await self._limiter.acquire()
            except BaseException:
                self._semaphore.release()
                raise
        finally:
            self._ready[key] -= 1
            if self._ready[key] <= 0:
                del self._ready[key]

        if generation != self._generation(schedule_id):
            self._semaphore.release()
            logger.info("Dropping cancelled or replaced job for %s", schedule_id)
            return False
        return True

    async def _record(self, job: Job, outcome: ExecutionOutcome) -> None:
        if self._store is None:
            return
        try:
            await self._store.record_execution(ExecutionRecord.from_outcome(job, outcome))
            if outcome.success:
                await self._store.mark_run(job.schedule_id, self._clock())
            else:
                await self._store.mark_failed(job.schedule_id)
        except Exception:
            logger.exception("Failed to record execution for %s", job.schedule_id)

    # -- Internal --------------------------------------------------------------

    def _generation(self, schedule_id: str) -> int:
        return self._generations.get(schedule_id, 0)

    def _bump(self, schedule_id: str) -> int:
        generation = next(self._generation_seq)
        self._generations[schedule_id] = generation
        return generation

    def _submit(self, job: Job) -> None:
        if self._remove(job.schedule_id):
            logger.debug("Replaced pending job for %s", job.schedule_id)
        generation = self._bump(job.schedule_id)
        self._scheduler.add_job(
            self._run,
            trigger=DateTrigger(run_date=job.scheduled_for, timezone="UTC"),
            id=job.schedule_id,
            name=f"dispatch:{job.schedule_id}",
            args=[job, generation],
            misfire_grace_time=None,
            # A replacement may come due while the previous attempt is still running.
            max_instances=2,
            replace_existing=True,
        )

    def _remove(self, schedule_id: str) -> bool:
        removed = False
        while True:
            try:
                self._scheduler.remove_job(schedule_id)
            except JobLookupError:
                return removed
            removed = True
