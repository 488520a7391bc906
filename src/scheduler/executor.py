"""PostExecutor — publishes a schedule's post through the notification router."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from src.scheduler.cron import resolve_timezone
from src.scheduler.errors import CronError, DeliveryError, ErrorCode
from src.scheduler.models import ExecutionOutcome

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.notifications.router import NotificationRouter
    from src.scheduler.models import Schedule
    from src.scheduler.store import ScheduleStore

logger = logging.getLogger(__name__)


def render_content(schedule: Schedule, now: datetime) -> str:
    """Substitute ``{{date}}``, ``{{time}}`` and ``{{name}}`` in the post body.

    Date and time are rendered in the schedule's timezone, Italian style
    (``10/3/2024``, ``09:00:00``).
    """
    local = now.astimezone(resolve_timezone(schedule.timezone))
    return (
        schedule.content.replace("{{date}}", f"{local.day}/{local.month}/{local.year}")
        .replace("{{time}}", local.strftime("%H:%M:%S"))
        .replace("{{name}}", schedule.name)
    )


class PostExecutor:
    """Executes one occurrence of a schedule and classifies the result.

    Args:
        store: ScheduleStore used to load the schedule.
        router: NotificationRouter used to deliver the post.
        clock: Returns the current aware datetime (for tests).
    """

    def __init__(
        self,
        store: ScheduleStore,
        router: NotificationRouter,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._router = router
        self._clock = clock or (lambda: datetime.now(UTC))

    async def execute(self, schedule_id: str) -> ExecutionOutcome:
        """Look up and publish a schedule by ID."""
        schedule = await self._store.find_by_id(schedule_id)
        if schedule is None:
            logger.warning("Schedule not found: %s", schedule_id)
            return ExecutionOutcome.failed(ErrorCode.INVALID_SETTINGS, "Schedule not found")
        if not schedule.is_active:
            logger.info("Skipping inactive schedule: %s (%s)", schedule.name, schedule_id)
            return ExecutionOutcome.ok(detail="skipped: inactive")

        if not schedule.content.strip():
            return ExecutionOutcome.failed(ErrorCode.INVALID_SETTINGS, "Schedule has empty content")
        if not schedule.target:
            return ExecutionOutcome.failed(ErrorCode.CHANNEL_NOT_FOUND, "Schedule has no target")

        channel = self._router.resolve_channel(schedule.channel)
        if channel is None:
            return ExecutionOutcome.failed(
                ErrorCode.CHANNEL_NOT_FOUND,
                f"Notification channel '{schedule.channel or 'default'}' is not registered",
            )

        try:
            text = render_content(schedule, self._clock())
        except CronError as exc:
            return ExecutionOutcome.failed(ErrorCode.INVALID_SETTINGS, str(exc))

        logger.info(
            "Publishing schedule '%s' (%s) via %s (%d chars)",
            schedule.name,
            schedule_id,
            channel.name,
            len(text),
        )
        try:
            message_id = await channel.send(schedule.target, text)
        except DeliveryError as exc:
            logger.warning("Delivery failed for '%s' (%s): %s", schedule.name, schedule_id, exc)
            return ExecutionOutcome.failed(exc.code, str(exc))

        logger.info("Published schedule '%s' (%s)", schedule.name, schedule_id)
        return ExecutionOutcome.ok(message_id=message_id)
