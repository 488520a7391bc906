"""Failure reporting and breadcrumbs for the scheduler."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from src.notifications.router import NotificationRouter

logger = logging.getLogger(__name__)


@runtime_checkable
class Reporter(Protocol):
    """Observability sink. Calls are fire-and-forget."""

    def report_failure(self, context: dict[str, Any], error: BaseException | str) -> None: ...

    def report_breadcrumb(
        self, message: str, category: str, data: dict[str, Any] | None = None
    ) -> None: ...


class LoggingReporter:
    """Reports through the ``scheduler.reporting`` logger."""

    def report_failure(self, context: dict[str, Any], error: BaseException | str) -> None:
        component = context.get("component", "scheduler")
        operation = context.get("operation", "unknown")
        details = {k: v for k, v in context.items() if k not in ("component", "operation")}
        if isinstance(error, BaseException):
            logger.error(
                "[%s] %s failed: %s %s",
                component,
                operation,
                error,
                details,
                exc_info=(type(error), error, error.__traceback__),
            )
        else:
            logger.error("[%s] %s failed: %s %s", component, operation, error, details)

    def report_breadcrumb(
        self, message: str, category: str, data: dict[str, Any] | None = None
    ) -> None:
        logger.debug("[%s] %s %s", category, message, data or {})


class OwnerAlertReporter(LoggingReporter):
    """Logs everything and also messages the owner about alert-worthy failures.

    A failure is alert-worthy when its context carries ``alert=True`` (terminal
    dispatch failures, exhausted retries, unschedulable cron expressions).
    """

    def __init__(self, router: NotificationRouter, owner_chat_id: str) -> None:
        self._router = router
        self._owner_chat_id = owner_chat_id
        self._pending: set[asyncio.Task] = set()

    def report_failure(self, context: dict[str, Any], error: BaseException | str) -> None:
        super().report_failure(context, error)
        if not context.get("alert") or not self._owner_chat_id:
            return
        name = context.get("schedule_name") or context.get("schedule_id", "?")
        text = (
            f"[Scheduler Error] Schedule '{name}' "
            f"({context.get('operation', 'unknown')}): {error}"
        )
        task = asyncio.ensure_future(self._send(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, text: str) -> None:
        try:
            await self._router.send(self._owner_chat_id, text)
        except Exception:
            logger.exception("Failed to deliver owner alert")


def report_failure(reporter: Reporter, context: dict[str, Any], error: BaseException | str) -> None:
    """Call ``reporter.report_failure`` without letting it affect control flow."""
    try:
        reporter.report_failure(context, error)
    except Exception:
        logger.exception("Reporter failed while reporting %s", context.get("operation"))


def report_breadcrumb(
    reporter: Reporter, message: str, category: str, data: dict[str, Any] | None = None
) -> None:
    """Call ``reporter.report_breadcrumb`` without letting it affect control flow."""
    try:
        reporter.report_breadcrumb(message, category, data)
    except Exception:
        logger.exception("Reporter failed while recording breadcrumb %s", category)
